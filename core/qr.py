# core/qr.py
import logging

import cv2
try:
    from pyzbar import pyzbar
    from pyzbar.pyzbar import ZBarSymbol
    PYZBAR = True
except ImportError:
    PYZBAR = False

from .frame import PixelFormat
from .results import Decoded, DecodeError, NOT_FOUND
from .utils import hex_dump


def to_gray(frame):
    """Bước xử lý ảnh duy nhất trước khi giải mã: chuyển sang ảnh xám."""
    pixels = frame.pixels
    if frame.pixel_format is PixelFormat.GRAY or pixels.ndim == 2:
        return pixels
    if pixels.shape[2] == 4:
        code = cv2.COLOR_RGBA2GRAY if frame.pixel_format is PixelFormat.RGB else cv2.COLOR_BGRA2GRAY
    else:
        code = cv2.COLOR_RGB2GRAY if frame.pixel_format is PixelFormat.RGB else cv2.COLOR_BGR2GRAY
    return cv2.cvtColor(pixels, code)


class QRDecoder:
    """Giải mã QR cho từng frame. Không giữ trạng thái giữa các lần gọi.

    Ưu tiên Pyzbar, nếu không thấy mã thì thử cv2.QRCodeDetector.
    `decode` không bao giờ ném lỗi: lỗi của 1 frame trả về DecodeError.
    """

    def __init__(self, use_pyzbar=True, dark_threshold=10):
        self.use_pyzbar = bool(use_pyzbar) and PYZBAR
        self.dark_threshold = dark_threshold

    @classmethod
    def from_config(cls, scan_config):
        return cls(use_pyzbar=scan_config.get("use_pyzbar", True),
                   dark_threshold=scan_config.get("dark_threshold", 10))

    @property
    def backend(self):
        return "Pyzbar+CV2" if self.use_pyzbar else "CV2"

    def decode(self, frame):
        if frame is None:
            return NOT_FOUND
        try:
            gray = to_gray(frame)
            if gray.mean() < self.dark_threshold:
                return NOT_FOUND

            if self.use_pyzbar:
                result = self._decode_pyzbar(gray, frame.sequence)
                if result is not NOT_FOUND:
                    return result

            return self._decode_cv2(gray)
        except Exception as e:
            logging.warning(f"[QR_SCAN] Lỗi giải mã frame #{frame.sequence}: {e}")
            return DecodeError(f"{type(e).__name__}: {e}")

    def _decode_pyzbar(self, gray, sequence):
        decoded = pyzbar.decode(gray, symbols=[ZBarSymbol.QRCODE])
        if not decoded:
            return NOT_FOUND
        raw = decoded[0].data
        try:
            text = raw.decode('utf-8').strip('\x00')
        except UnicodeDecodeError as e:
            logging.debug(hex_dump(f"[QR_SCAN] Dữ liệu QR không phải UTF-8 (frame #{sequence}):", raw))
            return DecodeError(f"invalid UTF-8 payload: {e}")
        if not text:
            return DecodeError("empty payload")
        return Decoded(text)

    def _decode_cv2(self, gray):
        detector = cv2.QRCodeDetector()
        retval, points, _ = detector.detectAndDecode(gray)
        if retval:
            return Decoded(retval)
        if points is not None:
            # Tìm thấy vị trí mã nhưng không đọc được nội dung
            return DecodeError("symbol located but payload unreadable")
        return NOT_FOUND
