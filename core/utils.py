# core/utils.py
import time
import threading


def hex_dump(text, data, offset=0, length=None):
    """Định dạng mảng byte để ghi log: 32 byte mỗi dòng, nhóm 4 byte."""
    if length is None:
        length = len(data) - offset
    out = [text, "\n"]
    for i in range(length):
        if i % 32 == 0:
            out.append(f" {i:14X}  ")
        elif i % 4 == 0:
            out.append(" ")
        out.append(f"{data[offset + i]:02X}")
        if i % 32 == 31:
            out.append("\n")
    if length % 32 != 0:
        out.append("\n")
    return "".join(out)


class FpsCounter:
    """Đếm FPS theo cửa sổ 1 giây (giống luồng camera cũ)"""

    def __init__(self, window=1.0, clock=time.time):
        self._clock = clock
        self._window = window
        self._lock = threading.Lock()
        self._count = 0
        self._start = clock()
        self.value = 0.0

    def tick(self):
        with self._lock:
            self._count += 1
            now = self._clock()
            elapsed = now - self._start
            if elapsed >= self._window:
                self.value = self._count / elapsed
                self._count = 0
                self._start = now
            return self.value
