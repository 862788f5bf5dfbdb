# core/controller.py
import logging
import threading

from .camera import open_camera
from .config import default_config
from .errors import SessionUsageError
from .qr import QRDecoder
from .session import ScanSession, SessionState


class SessionController:
    """Đối tượng mà ứng dụng giữ để điều khiển 1 phiên quét.

    - start(): không chặn, trả về ngay.
    - await_outcome(): điểm chặn duy nhất (kiểu hộp thoại modal), chỉ 1 luồng chờ.
      Khi trả về, camera đã được đóng và luồng quét đã join.
    - cancel(): gọi từ luồng nào cũng được, bao nhiêu lần cũng được.
    """

    def __init__(self, session):
        self._session = session
        self._wait_lock = threading.Lock()

    @property
    def state(self):
        return self._session.state

    @property
    def outcome(self):
        return self._session.outcome

    def add_listener(self, listener):
        self._session.add_listener(listener)
        return self

    def start(self):
        self._session.start()
        return self

    def cancel(self):
        self._session.cancel()

    def await_outcome(self):
        if self._session.state is SessionState.IDLE:
            raise SessionUsageError("await_outcome() called before start()")
        if not self._wait_lock.acquire(blocking=False):
            raise SessionUsageError("await_outcome() already has a waiting thread")
        try:
            self._session.wait()
            self._session.join()
            return self._session.outcome
        finally:
            self._wait_lock.release()


def open_scan_session(open_source=None, decoder=None, preview=None, config=None,
                      device_selector=None, listeners=()):
    """Tạo phiên quét mới (rẻ, không mở camera). Camera chỉ mở khi start()."""
    config = config or default_config()
    if open_source is None:
        open_source = open_camera(config.get('camera_settings', {}))
    if decoder is None:
        decoder = QRDecoder.from_config(config.get('scan_config', {}))
    session = ScanSession(open_source, decoder, preview=preview,
                          scan_config=config.get('scan_config'),
                          device_selector=device_selector, listeners=listeners)
    logging.debug(f"[SESSION] Tạo phiên quét mới (decoder={getattr(decoder, 'backend', type(decoder).__name__)}).")
    return SessionController(session)
