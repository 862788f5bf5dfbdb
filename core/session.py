# core/session.py
import time
import logging
import threading
from enum import Enum
from concurrent.futures import ThreadPoolExecutor, wait

from .config import DEFAULT_SCAN_CONFIG
from .errors import DeviceUnavailable, SessionUsageError
from .preview import NullPreview
from .results import Decoded, DecodeError, DeviceUnavailableOutcome, CANCELLED
from threads.qr_scanner import start_qr_scanner_thread


class SessionState(Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    FINISHING = "finishing"
    TERMINATED = "terminated"


class ScanSession:
    """Một lần quét QR: mở camera, chụp → preview → giải mã, kết thúc đúng 1 lần.

    Camera chỉ tồn tại khi state là STARTING, RUNNING hoặc FINISHING và luôn được
    đóng trước khi sang TERMINATED. Phiên chỉ chạy 1 lần, không dùng lại.

    Chính sách giải mã: mỗi frame đều được đưa lên preview; nếu frame trước vẫn
    đang giải mã thì frame mới thay thế frame đang chờ (frame mới nhất thắng).
    Lần giải mã vượt quá `decode_budget` bị bỏ kết quả. Khi kết thúc, phiên chờ
    luồng giải mã đang chạy tối đa `decode_budget` giây rồi bỏ mặc nó.
    """

    def __init__(self, open_source, decoder, preview=None, scan_config=None,
                 device_selector=None, listeners=()):
        cfg = DEFAULT_SCAN_CONFIG.copy()
        cfg.update(scan_config or {})
        self.open_source = open_source
        self.decoder = decoder
        self.preview = preview or NullPreview()
        self.device_selector = device_selector
        self.frame_timeout = float(cfg['frame_timeout'])
        self.decode_budget = float(cfg['decode_budget'])
        self.decode_workers = max(1, int(cfg['decode_workers']))

        self.state = SessionState.IDLE
        self.source = None
        self._state_lock = threading.Lock()
        self._cancel_event = threading.Event()
        self._terminated = threading.Event()
        self._outcome = None
        self._listeners = list(listeners)
        self._thread = None
        self._executor = None

        # Chỉ luồng quét chạm vào các biến dưới đây
        self._pending_frame = None
        self._in_flight = None
        self._abandoned = []
        self.stats = {"frames": 0, "superseded": 0, "abandoned": 0, "decode_errors": 0}

    # ===========================================
    # API cho SessionController
    # ===========================================

    def start(self):
        with self._state_lock:
            if self.state is not SessionState.IDLE:
                raise SessionUsageError(f"session already started (state={self.state.value})")
            self.state = SessionState.STARTING
        self._notify(SessionState.STARTING)
        self._thread = threading.Thread(target=start_qr_scanner_thread, args=(self,),
                                        name="QRScannerThread", daemon=True)
        self._thread.start()

    def cancel(self):
        if self._terminated.is_set() or self._cancel_event.is_set():
            return
        self._cancel_event.set()
        logging.info("[SESSION] Đã yêu cầu hủy phiên quét.")

    @property
    def cancel_requested(self):
        return self._cancel_event.is_set()

    @property
    def outcome(self):
        return self._outcome if self._terminated.is_set() else None

    def wait(self, timeout=None):
        return self._terminated.wait(timeout)

    def join(self, timeout=None):
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def add_listener(self, listener):
        self._listeners.append(listener)

    # ===========================================
    # Các bước chạy trên luồng quét
    # ===========================================

    def acquire_camera(self):
        """STARTING -> RUNNING. Trả về False nếu phiên đã kết thúc ở bước này."""
        if self.cancel_requested:
            self._terminate(CANCELLED)
            return False
        try:
            source = self.open_source(self.device_selector)
        except DeviceUnavailable as e:
            logging.error(f"[SESSION] Không mở được camera: {e}")
            self._terminate(DeviceUnavailableOutcome(str(e)))
            return False
        except Exception as e:
            logging.error(f"[SESSION] Lỗi khi mở camera: {e}", exc_info=True)
            self._terminate(DeviceUnavailableOutcome(f"{type(e).__name__}: {e}"))
            return False

        self.source = source
        self._executor = ThreadPoolExecutor(max_workers=self.decode_workers, thread_name_prefix="QRDecode")
        with self._state_lock:
            self.state = SessionState.RUNNING
        self._notify(SessionState.RUNNING)
        logging.info("[SESSION] Camera đã mở, bắt đầu quét.")
        return True

    def publish_preview(self, frame):
        self.stats["frames"] += 1
        try:
            self.preview.show(frame)
        except Exception as e:
            logging.warning(f"[SESSION] Lỗi preview frame #{frame.sequence}: {e}")

    def offer_for_decode(self, frame):
        if self._pending_frame is not None:
            self.stats["superseded"] += 1
        self._pending_frame = frame

    def pump_decoder(self):
        """Thu kết quả giải mã đã xong và gửi frame đang chờ. Trả về text nếu giải mã được."""
        if self._in_flight is not None:
            frame, future, submitted_at = self._in_flight
            if future.done():
                self._in_flight = None
                result = self._result_of(frame, future)
                if isinstance(result, Decoded):
                    logging.info(f"[QR_SCAN] Giải mã thành công ở frame #{frame.sequence}: '{result.text}'")
                    return result.text
                if isinstance(result, DecodeError):
                    self.stats["decode_errors"] += 1
                    logging.debug(f"[QR_SCAN] Frame #{frame.sequence} lỗi dữ liệu QR: {result.reason}")
            elif time.monotonic() - submitted_at > self.decode_budget:
                self._in_flight = None
                if not future.cancel():
                    self._abandoned.append(future)
                self.stats["abandoned"] += 1
                logging.warning(f"[QR_SCAN] Giải mã frame #{frame.sequence} quá {self.decode_budget}s, bỏ qua.")

        if self._in_flight is None and self._pending_frame is not None:
            frame, self._pending_frame = self._pending_frame, None
            self._in_flight = (frame, self._executor.submit(self.decoder.decode, frame), time.monotonic())
        return None

    def _result_of(self, frame, future):
        try:
            return future.result()
        except Exception as e:
            logging.warning(f"[QR_SCAN] Bộ giải mã lỗi ở frame #{frame.sequence}: {e}")
            return DecodeError(f"{type(e).__name__}: {e}")

    def finish(self, outcome):
        """RUNNING -> FINISHING -> TERMINATED. Release camera đúng 1 lần."""
        with self._state_lock:
            if self.state in (SessionState.FINISHING, SessionState.TERMINATED):
                return
            self.state = SessionState.FINISHING
        self._notify(SessionState.FINISHING)
        self._release()
        self._terminate(outcome)

    def _release(self):
        source, self.source = self.source, None
        if source is not None:
            try:
                source.close()
            except Exception as e:
                logging.error(f"[SESSION] Lỗi khi đóng camera: {e}", exc_info=True)
        executor, self._executor = self._executor, None
        if executor is not None:
            running = list(self._abandoned)
            if self._in_flight is not None:
                running.append(self._in_flight[1])
            executor.shutdown(wait=False, cancel_futures=True)
            # Không chờ lâu hơn decode_budget cho một lần giải mã đang chạy
            _, not_done = wait(running, timeout=self.decode_budget)
            if not_done:
                logging.warning(f"[SESSION] Còn {len(not_done)} luồng giải mã chưa dừng; "
                                f"kết quả của chúng sẽ bị bỏ.")
        self._pending_frame = None
        self._in_flight = None
        self._abandoned = []

    def _terminate(self, outcome):
        with self._state_lock:
            if self.state is SessionState.TERMINATED:
                return
            self._outcome = outcome
            self.state = SessionState.TERMINATED
        logging.info(f"[SESSION] Kết thúc phiên quét: {outcome.kind} "
                     f"(frames={self.stats['frames']}, superseded={self.stats['superseded']}, "
                     f"abandoned={self.stats['abandoned']})")
        # Listener chạy xong trước khi luồng đang chờ được đánh thức
        self._notify(SessionState.TERMINATED)
        self._terminated.set()

    def _notify(self, state):
        for listener in list(self._listeners):
            try:
                listener(self, state)
            except Exception as e:
                logging.warning(f"[SESSION] Listener lỗi khi chuyển sang {state.value}: {e}")
