# core/system.py
import os
import sys
import copy
import json
import time
import getpass
import logging
import platform
import threading
from concurrent.futures import ThreadPoolExecutor

import cv2
import numpy as np

from .camera import open_camera
from .config import load_config, APPLICATION_NAME, APPLICATION_VERSION, CONFIG_FILE, LOG_FILE
from .controller import open_scan_session
from .preview import PreviewMailbox
from .qr import QRDecoder
from .results import Success, Cancelled, outcome_to_json

from threads import broadcast

NO_CODE_TEXT = "No code scanned"


class ScannerSystem:
    """Ứng dụng quét QR: giữ config, preview, text đã quét và các client WS.

    Mỗi lần quét tạo 1 phiên mới qua open_scan_session(); chỉ 1 phiên chạy
    tại một thời điểm.
    """

    def __init__(self, config_path=None, open_source=None, decoder=None):
        logging.info("[SYSTEM] Khởi tạo ScannerSystem...")
        self.main_loop_running = True
        self.config = load_config(config_path)
        self.open_source = open_source
        self.decoder = decoder or QRDecoder.from_config(self.config['scan_config'])
        self.preview = PreviewMailbox()

        self.state_lock = threading.Lock()
        self.scan_lock = threading.Lock()
        self.controller = None

        # Quản lý WebSocket Clients
        self.ws_clients = set()
        self.ws_lock = threading.Lock()
        self.broadcast_lock = threading.Lock()

        self.system_state = {
            "session_state": "idle", "last_text": None, "last_outcome": None,
            "scan_count": 0, "decoder": getattr(self.decoder, "backend", type(self.decoder).__name__),
            "auth_enabled": False,
        }
        self.executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="SysWorker")

    # ===========================================
    # QUÉT QR
    # ===========================================

    def scan(self):
        """Chạy 1 phiên quét và chờ kết quả (chặn luồng gọi). Trả về (data, status_code)."""
        if not self.main_loop_running:
            return ({"error": "Hệ thống đang dừng."}, 503)
        if not self.scan_lock.acquire(blocking=False):
            return ({"error": "Đang có phiên quét khác."}, 409)

        timer = None
        try:
            self.preview.clear()
            controller = open_scan_session(
                open_source=self.open_source or open_camera(self.config['camera_settings']),
                decoder=self.decoder, preview=self.preview, config=self.config,
                listeners=[self._on_session_state])
            with self.state_lock:
                self.controller = controller
            controller.start()

            scan_timeout = float(self.config['scan_config'].get('scan_timeout') or 0)
            if scan_timeout > 0:
                timer = threading.Timer(scan_timeout, controller.cancel)
                timer.daemon = True
                timer.start()

            outcome = controller.await_outcome()
        finally:
            if timer is not None:
                timer.cancel()
            with self.state_lock:
                self.controller = None
            self.scan_lock.release()

        return self._handle_outcome(outcome)

    def _handle_outcome(self, outcome):
        data = outcome_to_json(outcome)
        with self.state_lock:
            self.system_state["last_outcome"] = outcome.kind

        if isinstance(outcome, Success):
            with self.state_lock:
                self.system_state["last_text"] = outcome.text
                self.system_state["scan_count"] += 1
            self.broadcast_log("qr", "Đã quét được mã QR", data={"text": outcome.text})
            return (data, 200)
        if isinstance(outcome, Cancelled):
            self.broadcast_log("info", "Đã hủy quét.")
            return (data, 200)

        message = "Không mở được camera." if outcome.kind == "device_unavailable" else "Mất kết nối camera."
        data["error"] = message
        self.broadcast_log("error", message, data={"reason": outcome.reason})
        return (data, 503)

    def cancel_scan(self):
        with self.state_lock:
            controller = self.controller
        if controller is None:
            return ({"message": "Không có phiên quét nào đang chạy."}, 200)
        controller.cancel()
        return ({"message": "Đã gửi yêu cầu hủy quét."}, 200)

    def _on_session_state(self, session, state):
        with self.state_lock:
            self.system_state["session_state"] = state.value
        logging.info(f"[SESSION] Trạng thái: {state.value}")

    def get_text(self):
        with self.state_lock:
            return self.system_state["last_text"] or NO_CODE_TEXT

    # ===========================================
    # THÔNG TIN / CONFIG
    # ===========================================

    def get_about(self):
        """Thông tin ứng dụng và môi trường chạy"""
        try:
            user_name = getpass.getuser()
        except (KeyError, OSError):
            user_name = "unknown"
        return {
            "application": APPLICATION_NAME, "version": APPLICATION_VERSION,
            "user_name": user_name, "home_directory": os.path.expanduser("~"),
            "os": platform.system(), "os_version": platform.release(), "platform": platform.platform(),
            "python_version": platform.python_version(), "python_executable": sys.executable,
            "opencv_version": cv2.__version__, "numpy_version": np.__version__,
            "decoder": self.system_state["decoder"],
            "config_file": CONFIG_FILE, "log_file": LOG_FILE,
        }

    def get_config_for_json(self):
        return copy.deepcopy(self.config)

    def get_full_state(self):
        """Lấy snapshot của state để gửi qua WS"""
        with self.state_lock:
            state_copy = copy.deepcopy(self.system_state)
        state_copy["preview_fps"] = round(self.preview.fps.value, 2)
        return state_copy

    # ===========================================
    # WEBSOCKET
    # ===========================================

    def add_ws_client(self, ws):
        with self.ws_lock: self.ws_clients.add(ws)
        logging.info(f"[WS] Client kết nối. Tổng: {len(self.ws_clients)}")

    def remove_ws_client(self, ws):
        with self.ws_lock: self.ws_clients.discard(ws)
        logging.info(f"[WS] Client ngắt kết nối. Còn lại: {len(self.ws_clients)}")

    def broadcast_log(self, log_type, message, data=None):
        """Gửi log tới tất cả client"""
        log_data = {
            'timestamp': time.strftime('%H:%M:%S'),
            'log_type': log_type,
            'message': message,
            'data': data or {}
        }
        msg = json.dumps({"type": "log", **log_data})

        clients_to_send = []
        with self.ws_lock: clients_to_send = list(self.ws_clients)
        if not clients_to_send: return

        with self.broadcast_lock:
            for client in clients_to_send:
                try: client.send(msg)
                except Exception: self.remove_ws_client(client) # Xóa client hỏng

    def handle_ws_message(self, data, client_label="guest"):
        """Xử lý tin nhắn đến từ WS"""
        action = data.get('action')
        if action == "scan":
            logging.info(f"[WS] {client_label} yêu cầu quét QR.")
            self.executor.submit(self.scan)
        elif action == "cancel":
            logging.info(f"[WS] {client_label} yêu cầu hủy quét.")
            self.cancel_scan()
        else:
            logging.warning(f"[WS] Action không hợp lệ: {action}")

    # ===========================================
    # VÒNG ĐỜI
    # ===========================================

    def run(self):
        """Khởi động các luồng nền (gọi 1 lần từ app.py)"""
        logging.info("[SYSTEM] Bắt đầu chạy các luồng nền...")
        threading.Thread(target=broadcast.start_broadcast_state_thread, args=(self,),
                         name="BroadcastThread", daemon=True).start()

    def stop(self):
        if not self.main_loop_running: return
        logging.info("[SHUTDOWN] Dừng hệ thống...")
        self.main_loop_running = False
        self.cancel_scan()
        logging.info("[SHUTDOWN] Đang tắt ThreadPoolExecutor...")
        self.executor.shutdown(wait=False)
        logging.info("[SHUTDOWN] Tạm biệt!")
