"""Unit tests for the pure-Python P-384 point derivation."""

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from idlogin.ec_point import (
    COORD_LEN,
    G,
    INF,
    N,
    P,
    derive_public_point,
    derive_uncompressed_point,
    encode_uncompressed_point,
    inv_mod,
    is_on_curve,
    point_add,
    point_double,
    scalar_mult,
)
from idlogin.errors import InvalidScalar


pytestmark = pytest.mark.unit


def _x962(private_key: ec.EllipticCurvePrivateKey) -> bytes:
    return private_key.public_key().public_bytes(
        serialization.Encoding.X962,
        serialization.PublicFormat.UncompressedPoint,
    )


class TestGroupArithmetic:
    def test_generator_is_on_curve(self):
        assert is_on_curve(G)

    def test_inverse(self):
        for k in (1, 2, 3, 12345, N - 1):
            assert (k * inv_mod(k)) % P == 1

    def test_inverse_of_zero_raises(self):
        with pytest.raises(ZeroDivisionError):
            inv_mod(0)

    def test_double_equals_add_to_self(self):
        assert point_double(G) == point_add(G, G)

    def test_add_identity(self):
        assert point_add(INF, G) == G
        assert point_add(G, INF) == G

    def test_add_negation_is_infinity(self):
        x, y = G
        assert point_add(G, (x, -y)) is INF

    def test_order_times_generator_is_infinity(self):
        assert scalar_mult(N, G) is INF

    def test_small_multiples_stay_on_curve(self):
        for k in (1, 2, 3, 7, 255):
            assert is_on_curve(scalar_mult(k, G))


class TestDerivation:
    def test_one_gives_generator(self):
        assert derive_public_point(1) == G

    @pytest.mark.parametrize("d", [2, 3, 0xDEADBEEF, N - 1])
    def test_matches_cryptography(self, d):
        key = ec.derive_private_key(d, ec.SECP384R1())
        assert derive_uncompressed_point(d.to_bytes(COORD_LEN, "big")) == _x962(key)

    def test_generated_keys_match(self):
        for _ in range(3):
            key = ec.generate_private_key(ec.SECP384R1())
            d = key.private_numbers().private_value
            point = derive_uncompressed_point(d.to_bytes(COORD_LEN, "big"))
            assert len(point) == 97
            assert point[0] == 0x04
            assert point == _x962(key)

    def test_minimal_length_scalar(self):
        # JWK "d" may arrive without leading zero bytes
        key = ec.derive_private_key(5, ec.SECP384R1())
        assert derive_uncompressed_point(b"\x05") == _x962(key)

    @pytest.mark.parametrize("d", [0, N, N + 1])
    def test_out_of_range_scalar_rejected(self, d):
        with pytest.raises(InvalidScalar):
            derive_uncompressed_point(d.to_bytes(COORD_LEN + 1, "big"))

    def test_empty_scalar_rejected(self):
        with pytest.raises(InvalidScalar):
            derive_uncompressed_point(b"")

    def test_negative_scalar_rejected(self):
        with pytest.raises(InvalidScalar):
            derive_public_point(-1)


class TestEncoding:
    def test_short_coordinates_left_padded(self):
        out = encode_uncompressed_point(b"\x01", b"\x02\x03")
        assert len(out) == 1 + 2 * COORD_LEN
        assert out[1:COORD_LEN] == b"\x00" * (COORD_LEN - 1)
        assert out[COORD_LEN] == 0x01
        assert out[-2:] == b"\x02\x03"

    def test_long_coordinates_keep_low_bytes(self):
        x = b"\xff" + b"\x11" * COORD_LEN
        y = b"\xee\xee" + b"\x22" * COORD_LEN
        out = encode_uncompressed_point(x, y)
        assert out == b"\x04" + b"\x11" * COORD_LEN + b"\x22" * COORD_LEN
