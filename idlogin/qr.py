"""
idlogin/qr.py

QR collaborator: pure rendering of backup payloads (no security here) and
the cancellable capture loop used when scanning a backup back in.

Image decoding itself is left to whatever camera/decoder pair is plugged
into ScanLoop.
"""

import time
from typing import Any, Callable, Optional, Union

import qrcode
import qrcode.constants
import qrcode.image.svg
from loguru import logger

from .keywrap import WrappedKeyPayload


def make_qr_svg_bytes(data: str) -> bytes:
    img = qrcode.make(
        data,
        image_factory=qrcode.image.svg.SvgImage,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        border=2,
    )
    return img.to_string()  # bytes, no args


def make_backup_qr_svg_bytes(payload: Union[WrappedKeyPayload, str]) -> bytes:
    """Render a wrapped key payload (object or its JSON) as an SVG QR code."""
    text = payload.to_json() if isinstance(payload, WrappedKeyPayload) else payload
    return make_qr_svg_bytes(text)


def read_backup_payload(text: Union[str, bytes]) -> WrappedKeyPayload:
    """Parse the text decoded from a backup QR code."""
    return WrappedKeyPayload.from_json(text)


class ScanLoop:
    """
    Cancellable polling loop around a camera.

    capture() returns a frame (or None when nothing is ready), decode(frame)
    returns the QR text or None. release() frees the camera and is called
    exactly once, on whichever comes first:

      - a successful decode
      - stop() (user cancellation, may be called from capture/decode)
      - leaving the `with` block (teardown)
    """

    def __init__(
        self,
        capture: Callable[[], Any],
        decode: Callable[[Any], Optional[str]],
        release: Optional[Callable[[], None]] = None,
        interval: float = 0.2,
    ):
        self.capture = capture
        self.decode = decode
        self._release = release
        self.interval = interval
        self.active = False
        self.released = False
        self.iterations = 0

    def run(self) -> Optional[str]:
        """Poll until a QR code is decoded (returns its text) or stopped (None)."""
        self.active = True
        try:
            while self.active:
                self.iterations += 1

                frame = self.capture()
                if frame is not None and self.active:
                    text = self.decode(frame)
                    if text:
                        logger.debug("qr scan succeeded after {} frames", self.iterations)
                        self.stop()
                        return text

                # check again before scheduling the next iteration
                if not self.active:
                    break
                if self.interval:
                    time.sleep(self.interval)
        except Exception:
            self.stop()
            raise

        self.stop()
        return None

    def stop(self) -> None:
        self.active = False
        if not self.released:
            self.released = True
            if self._release is not None:
                self._release()

    def __enter__(self) -> "ScanLoop":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
