# core/camera.py
import time
import logging
import threading

import cv2

from .config import DEFAULT_CAMERA_SETTINGS
from .errors import DeviceUnavailable, DeviceLost, FrameTimeout
from .frame import Frame, Mailbox
from .utils import FpsCounter
from threads.camera import start_camera_thread


class FrameSource:
    """Nguồn frame (camera). Chỉ 1 phiên quét sở hữu tại một thời điểm."""
    def next_frame(self, timeout): raise NotImplementedError
    def close(self): raise NotImplementedError


class CameraFrameSource(FrameSource):
    """Camera OpenCV.

    `cv2.VideoCapture.read()` chặn không có timeout, nên một luồng chụp riêng
    (threads/camera.py) đọc liên tục và đẩy frame vào hộp thư 1 ô; `next_frame`
    chỉ chờ trên hộp thư đó với timeout. Handle camera chỉ do luồng chụp chạm
    vào, và luồng đó release camera khi thoát.
    """

    def __init__(self, camera_index, settings, capture_factory=cv2.VideoCapture):
        self.camera_index = camera_index
        self.settings = settings
        self.capture_factory = capture_factory
        self.capture = None
        self.fps = FpsCounter()
        self._mailbox = Mailbox()
        self._stop_event = threading.Event()
        self._close_lock = threading.Lock()
        self._release_lock = threading.Lock()
        self._closed = False
        self._lost_reason = None
        self._sequence = 0
        self._thread = None
        self.release_count = 0

    @classmethod
    def open(cls, device_selector=None, settings=None, capture_factory=None):
        """Mở camera; ném DeviceUnavailable nếu không mở được"""
        cam_settings = DEFAULT_CAMERA_SETTINGS.copy()
        cam_settings.update(settings or {})
        camera_index = cam_settings['camera_index'] if device_selector is None else device_selector

        source = cls(camera_index, cam_settings, capture_factory or cv2.VideoCapture)
        first_frame = source._open_device()
        source.publish(first_frame)
        source._start_capture_thread()
        return source

    @property
    def running(self):
        return not self._stop_event.is_set()

    def _open_device(self):
        capture = self.capture_factory(self.camera_index)
        if not capture.isOpened():
            capture.release()
            logging.error(f"[ERROR] Không mở được camera index {self.camera_index}.")
            raise DeviceUnavailable(f"cannot open camera index {self.camera_index}")

        try:
            self.configure(capture)
            # Camera đang bị chiếm thường vẫn "mở" được nhưng không trả frame
            ret, frame = capture.read()
        except Exception as e:
            capture.release()
            logging.error(f"[ERROR] Lỗi khi khởi động camera index {self.camera_index}: {e}")
            raise DeviceUnavailable(f"camera index {self.camera_index} failed to start: {e}") from e
        if not ret or frame is None:
            capture.release()
            logging.error(f"[ERROR] Camera index {self.camera_index} mở được nhưng không đọc được frame.")
            raise DeviceUnavailable(f"camera index {self.camera_index} returned no frame")

        self.capture = capture
        logging.info(f"[CAMERA] Camera (index {self.camera_index}) đã khởi động.")
        return frame

    def configure(self, capture):
        cam_settings = self.settings
        capture.set(cv2.CAP_PROP_FRAME_WIDTH, int(cam_settings.get('frame_width', 640)))
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, int(cam_settings.get('frame_height', 480)))
        capture.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        try:
            auto_exposure_val = 1 if cam_settings.get('auto_exposure', True) else 0
            capture.set(cv2.CAP_PROP_AUTO_EXPOSURE, auto_exposure_val)
            logging.info(f"[CAMERA] Đã đặt Auto Exposure: {'BẬT' if auto_exposure_val == 1 else 'TẮT'}.")

            if auto_exposure_val == 0:
                brightness_val = int(cam_settings.get('brightness', 128))
                contrast_val = int(cam_settings.get('contrast', 32))
                capture.set(cv2.CAP_PROP_BRIGHTNESS, brightness_val)
                capture.set(cv2.CAP_PROP_CONTRAST, contrast_val)
                logging.info(f"[CAMERA] Đã đặt Brightness/Contrast thủ công: {brightness_val}/{contrast_val}")
        except cv2.error as cam_e:
            logging.error(f"[CAMERA] Lỗi khi cài đặt thông số camera: {cam_e}")

    def reopen(self):
        """Đóng rồi mở lại camera sau lỗi đọc. Chỉ gọi từ luồng chụp."""
        self.release_device()
        if self._stop_event.wait(float(self.settings.get('retry_delay', 1.0))):
            return False
        capture = self.capture_factory(self.camera_index)
        if not capture.isOpened():
            capture.release()
            return False
        self.configure(capture)
        with self._release_lock:
            if self.running:
                self.capture = capture
                return True
        capture.release()
        return False

    def release_device(self):
        with self._release_lock:
            capture, self.capture = self.capture, None
        if capture is not None:
            capture.release()
            self.release_count += 1

    def _start_capture_thread(self):
        self._thread = threading.Thread(target=start_camera_thread, args=(self,),
                                        name="CameraThread", daemon=True)
        self._thread.start()

    def publish(self, array):
        """Sao chép frame (copy-on-produce) rồi đặt vào hộp thư, đè frame chưa đọc"""
        self._sequence += 1
        self._mailbox.put(Frame.from_array(array, self._sequence))
        self.fps.tick()

    def mark_lost(self, reason):
        self._lost_reason = reason
        self._mailbox.close()

    def next_frame(self, timeout):
        if self._closed:
            raise DeviceLost("camera closed")
        frame = self._mailbox.take(timeout)
        if frame is not None:
            return frame
        if self._lost_reason:
            raise DeviceLost(self._lost_reason)
        if self._mailbox.closed:
            raise DeviceLost("camera closed")
        raise FrameTimeout(f"no frame within {timeout}s")

    def close(self):
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        self._stop_event.set()
        self._mailbox.close()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=float(self.settings.get('close_timeout', 5.0)))
            if thread.is_alive():
                # read() bị treo: release từ đây để không giữ camera sau khi phiên kết thúc
                logging.error("[CAMERA] Luồng camera chưa dừng sau khi đóng; release camera ngay.")
                self.release_device()
        elif thread is None:
            self.release_device()
        logging.info(f"[CAMERA] Đã đóng camera index {self.camera_index}.")


class ScriptedFrameSource(FrameSource):
    """Nguồn frame giả lập theo kịch bản, dùng cho test.

    Mỗi phần tử của `script` là một mảng ảnh (trả về thành Frame) hoặc một
    exception (bị ném ra ở lần gọi tương ứng). Hết kịch bản: lặp lại frame cuối
    (`repeat_last=True`) hoặc chờ hết timeout rồi ném FrameTimeout.
    """

    def __init__(self, script=(), repeat_last=False, frame_interval=0.0):
        self.script = list(script)
        self.repeat_last = repeat_last
        self.frame_interval = frame_interval
        self.next_frame_calls = 0
        self.close_calls = 0
        self.closed = False
        self._sequence = 0
        self._last_array = None
        self._closed_event = threading.Event()
        self._lock = threading.Lock()

    @classmethod
    def opener(cls, script=(), fail=None, **kwargs):
        """Tạo hàm mở camera cho ScanSession; `fail` là exception khi mở"""
        state = {"opened": []}

        def open_source(device_selector=None):
            if fail is not None:
                raise fail
            source = cls(script, **kwargs)
            state["opened"].append(source)
            return source
        open_source.opened = state["opened"]
        return open_source

    def _emit(self, array):
        self._sequence += 1
        self._last_array = array
        return Frame.from_array(array, self._sequence)

    def next_frame(self, timeout):
        with self._lock:
            self.next_frame_calls += 1
            if self.closed:
                raise DeviceLost("camera closed")
            item = self.script.pop(0) if self.script else None
        if self.frame_interval:
            self._closed_event.wait(self.frame_interval)
        if item is None:
            if self.repeat_last and self._last_array is not None:
                return self._emit(self._last_array)
            self._closed_event.wait(timeout)
            raise FrameTimeout(f"no frame within {timeout}s")
        if isinstance(item, BaseException) or (isinstance(item, type) and issubclass(item, BaseException)):
            raise item
        return self._emit(item)

    def close(self):
        with self._lock:
            self.close_calls += 1
            if self.closed:
                return
            self.closed = True
        self._closed_event.set()


def open_camera(camera_settings):
    """Hàm mở camera mặc định cho ScanSession"""
    def open_source(device_selector=None):
        started = time.time()
        source = CameraFrameSource.open(device_selector, camera_settings)
        logging.info(f"[CAMERA] Mở camera mất {time.time() - started:.2f}s")
        return source
    return open_source
