# core/frame.py
import time
import threading
from dataclasses import dataclass
from enum import Enum

import numpy as np


class PixelFormat(Enum):
    GRAY = "gray"
    BGR = "bgr"   # Thứ tự kênh mặc định của OpenCV
    RGB = "rgb"


@dataclass(frozen=True)
class Frame:
    """Ảnh chụp bất biến từ camera.

    `pixels` luôn là bản sao chỉ-đọc: FrameSource không được sửa frame sau khi
    đã giao đi, và bên nhận cũng không sửa được.
    """
    pixels: np.ndarray
    width: int
    height: int
    pixel_format: PixelFormat
    sequence: int
    timestamp: float

    @classmethod
    def from_array(cls, array, sequence, timestamp=None, pixel_format=None):
        pixels = np.array(array, copy=True)
        pixels.flags.writeable = False
        if pixel_format is None:
            pixel_format = PixelFormat.GRAY if pixels.ndim == 2 else PixelFormat.BGR
        height, width = pixels.shape[:2]
        return cls(
            pixels=pixels, width=int(width), height=int(height),
            pixel_format=pixel_format, sequence=int(sequence),
            timestamp=time.time() if timestamp is None else float(timestamp),
        )


class Mailbox:
    """Hộp thư 1 ô: ghi mới đè lên giá trị chưa đọc, không bao giờ xếp hàng."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._item = None
        self._closed = False
        self.dropped = 0

    def put(self, item):
        """Không chặn người ghi (chỉ giữ lock trong thời gian gán)"""
        with self._cond:
            if self._item is not None:
                self.dropped += 1
            self._item = item
            self._cond.notify_all()

    def take(self, timeout=None):
        """Lấy và xóa giá trị mới nhất; trả về None nếu hết timeout hoặc đã đóng"""
        with self._cond:
            if self._item is None and not self._closed:
                self._cond.wait_for(lambda: self._item is not None or self._closed, timeout)
            item, self._item = self._item, None
            return item

    def peek(self):
        with self._cond:
            return self._item

    def close(self):
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self):
        return self._closed
