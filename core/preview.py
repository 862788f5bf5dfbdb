# core/preview.py
import time
import logging
import threading

import cv2
import numpy as np

from .frame import PixelFormat
from .utils import FpsCounter


class PreviewSink:
    """Nơi hiển thị frame cho người dùng. `show` không được chặn luồng quét."""
    def show(self, frame): raise NotImplementedError


class NullPreview(PreviewSink):
    def show(self, frame): pass


class PreviewMailbox(PreviewSink):
    """Giữ frame mới nhất cho luồng hiển thị (MJPEG stream, cửa sổ, ...).

    Luồng quét chỉ thử lấy lock, không chờ: nếu bên đọc đang giữ lock thì frame
    đó bị bỏ qua cho preview. Frame cũ hơn frame đang giữ không bao giờ ghi đè.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._latest_frame = None
        self.fps = FpsCounter()
        self.skipped = 0

    def show(self, frame):
        if not self._lock.acquire(blocking=False):
            self.skipped += 1
            return
        try:
            if self._latest_frame is None or frame.sequence > self._latest_frame.sequence:
                self._latest_frame = frame
        finally:
            self._lock.release()
        self.fps.tick()

    def latest(self):
        with self._lock:
            return self._latest_frame

    def clear(self):
        with self._lock:
            self._latest_frame = None


def render_jpeg(frame, fps=None, message=None, quality=70):
    """Vẽ FPS / thông báo lên bản sao của frame rồi encode JPEG. Trả về bytes hoặc None."""
    if frame is None:
        image = np.zeros((480, 640, 3), dtype=np.uint8)
        cv2.putText(image, message or "NO SIGNAL", (150, 240), cv2.FONT_HERSHEY_SIMPLEX, 1, (0, 0, 255), 2)
    elif frame.pixel_format is PixelFormat.GRAY or frame.pixels.ndim == 2:
        image = cv2.cvtColor(frame.pixels, cv2.COLOR_GRAY2BGR)
    elif frame.pixel_format is PixelFormat.RGB:
        image = cv2.cvtColor(frame.pixels, cv2.COLOR_RGB2BGR)
    else:
        image = frame.pixels.copy()

    if fps is not None:
        cv2.putText(image, f"FPS: {fps:.2f}", (10, 30), cv2.FONT_HERSHEY_SIMPLEX, 1, (0, 128, 0), 2, cv2.LINE_AA)

    ok, buffer = cv2.imencode('.jpg', image, [cv2.IMWRITE_JPEG_QUALITY, int(quality)])
    if not ok:
        logging.error("[CAMERA] Lỗi encode frame preview.")
        return None
    return buffer.tobytes()


def mjpeg_stream(preview, is_active, preview_config=None, status_message=None):
    """Generator cho route /video_feed: multipart JPEG từ PreviewMailbox"""
    preview_config = preview_config or {}
    stream_fps = max(1, int(preview_config.get('stream_fps', 30)))
    quality = preview_config.get('jpeg_quality', 70)
    show_fps = preview_config.get('show_fps', True)

    while is_active():
        frame = preview.latest()
        fps = preview.fps.value if (show_fps and frame is not None) else None
        jpeg = render_jpeg(frame, fps=fps, message=status_message() if status_message else None, quality=quality)
        if jpeg is not None:
            yield (b'--frame\r\n'
                   b'Content-Type: image/jpeg\r\n\r\n' + jpeg + b'\r\n')
        time.sleep(1 / stream_fps if frame is not None else 0.1)
