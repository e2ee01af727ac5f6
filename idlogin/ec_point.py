"""
idlogin/ec_point.py

Pure-Python P-384 public point derivation.

Given a private scalar d, compute Q = d*G with affine double-and-add and
encode it as an uncompressed SEC1 point:

    0x04 || x (48 bytes, big-endian) || y (48 bytes, big-endian)

This is used on the import path, where the backup carries `d` and the public
coordinates should not be taken on faith.

WARNING: not constant-time. Runtime depends on the bit pattern of d.
"""

from __future__ import annotations

from typing import Optional, Tuple

from .errors import InvalidScalar


# -----------------------------------------------------------------------------
# P-384 (secp384r1) domain parameters
# -----------------------------------------------------------------------------
P = 2**384 - 2**128 - 2**96 + 2**32 - 1
A = P - 3
B = 0xB3312FA7E23EE7E4988E056BE3F82D19181D9C6EFE8141120314088F5013875AC656398D8A2ED19D2A85C8EDD3EC2AEF
N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFC7634D81F4372DDF581A0DB248B0A77AECEC196ACCC52973
GX = 0xAA87CA22BE8B05378EB1C71EF320AD746E1D3B628BA79B9859F741E082542A385502F25DBF55296C3A545E3872760AB7
GY = 0x3617DE4A96262C6F5D9E98BF9292DC29F8F41DBD289A147CE9DA3113B5F0B8C00A60B1CE1D7E819D7A431D7C90EA0E5F
G = (GX, GY)

COORD_LEN = 48
UNCOMPRESSED_TAG = 0x04

Point = Optional[Tuple[int, int]]
INF: Point = None  # point at infinity


# -----------------------------------------------------------------------------
# Field / group arithmetic
# -----------------------------------------------------------------------------
def inv_mod(k: int, p: int = P) -> int:
    """Modular inverse using the extended Euclidean algorithm."""
    if k % p == 0:
        raise ZeroDivisionError("inverse of zero")
    if k < 0:
        return p - inv_mod(-k, p)

    s, old_s = 0, 1
    r, old_r = p, k

    while r != 0:
        q = old_r // r
        old_r, r = r, old_r - q * r
        old_s, s = s, old_s - q * s

    if old_r != 1:
        raise ValueError("inverse does not exist")

    return old_s % p


def is_on_curve(point: Point) -> bool:
    if point is INF:
        return True
    x, y = point
    return (y * y - (x * x * x + A * x + B)) % P == 0


def point_double(point: Point) -> Point:
    if point is INF:
        return INF

    x1, y1 = point
    if y1 % P == 0:
        return INF

    m = ((3 * x1 * x1 + A) * inv_mod(2 * y1)) % P
    x3 = (m * m - 2 * x1) % P
    y3 = (m * (x1 - x3) - y1) % P
    return x3, y3


def point_add(p1: Point, p2: Point) -> Point:
    if p1 is INF:
        return p2
    if p2 is INF:
        return p1

    x1, y1 = p1
    x2, y2 = p2

    # P + (-P) = INF
    if x1 == x2 and (y1 + y2) % P == 0:
        return INF

    if x1 == x2 and y1 == y2:
        return point_double(p1)

    m = ((y2 - y1) * inv_mod((x2 - x1) % P)) % P
    x3 = (m * m - x1 - x2) % P
    y3 = (m * (x1 - x3) - y1) % P
    return x3, y3


def scalar_mult(k: int, point: Point) -> Point:
    """Double-and-add, least significant bit first."""
    result = INF
    addend = point

    while k:
        if k & 1:
            result = point_add(result, addend)
        addend = point_double(addend)
        k >>= 1

    return result


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------
def validate_scalar(d: int) -> int:
    if not isinstance(d, int) or d <= 0:
        raise InvalidScalar("private scalar must be a positive integer")
    if d >= N:
        raise InvalidScalar("private scalar must be below the curve order")
    return d


def derive_public_point(d: int) -> Tuple[int, int]:
    """Q = d*G on P-384."""
    q = scalar_mult(validate_scalar(d), G)
    # unreachable for 0 < d < N, kept as a hard stop
    if q is INF or not is_on_curve(q):
        raise InvalidScalar("derived point is not a valid curve point")
    return q


def _fixed_width(coord: bytes) -> bytes:
    if len(coord) == COORD_LEN:
        return coord
    if len(coord) > COORD_LEN:
        # keep the low-order bytes
        return coord[-COORD_LEN:]
    return coord.rjust(COORD_LEN, b"\x00")


def encode_uncompressed_point(x: bytes, y: bytes) -> bytes:
    """
    Build 0x04 || x || y with both coordinates forced to 48 bytes.

    Short coordinates (minimal big-endian, as JWK allows) are left-padded with
    zeros; over-long ones are truncated to their low 48 bytes.
    """
    return bytes([UNCOMPRESSED_TAG]) + _fixed_width(bytes(x)) + _fixed_width(bytes(y))


def derive_uncompressed_point(d_bytes: bytes) -> bytes:
    """
    Derive the 97-byte uncompressed public point from big-endian `d`.

    Raises:
        InvalidScalar: d is empty, zero, or >= curve order.
    """
    if not d_bytes:
        raise InvalidScalar("private scalar is empty")

    d = int.from_bytes(bytes(d_bytes), "big")
    x, y = derive_public_point(d)
    return encode_uncompressed_point(
        x.to_bytes(COORD_LEN, "big"),
        y.to_bytes(COORD_LEN, "big"),
    )
