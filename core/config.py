# core/config.py
import os
import json
import copy
import logging
import threading

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
CONFIG_DIR = os.path.join(BASE_DIR, "config")
LOG_DIR = os.path.join(BASE_DIR, "logs")
CONFIG_FILE = os.environ.get("QR_SCANNER_CONFIG", os.path.join(CONFIG_DIR, "config.json"))
LOG_FILE = os.path.join(LOG_DIR, "qr_scanner.log")

APPLICATION_NAME = "QR Scanner"
APPLICATION_VERSION = "1.0.0"

# Cấu hình mặc định
DEFAULT_CAMERA_SETTINGS = {
    "camera_index": 0, "frame_width": 640, "frame_height": 480,
    "auto_exposure": True, "brightness": 128, "contrast": 32,
    "max_read_retries": 5, "retry_delay": 1.0,
}
DEFAULT_SCAN_CONFIG = {
    "frame_timeout": 0.2,    # Thời gian chờ frame = chu kỳ kiểm tra hủy
    "decode_budget": 0.5,    # Quá thời gian này thì bỏ kết quả giải mã của frame đó
    "decode_workers": 2,
    "dark_threshold": 10,    # Độ sáng trung bình dưới mức này: bỏ qua frame
    "use_pyzbar": True,
    "scan_timeout": 0,       # 0 = không giới hạn (chỉ tầng web dùng)
}
DEFAULT_PREVIEW_CONFIG = {"stream_fps": 30, "jpeg_quality": 70, "show_fps": True}

DEFAULT_CONFIG = {
    "camera_settings": DEFAULT_CAMERA_SETTINGS,
    "scan_config": DEFAULT_SCAN_CONFIG,
    "preview_config": DEFAULT_PREVIEW_CONFIG,
}

_config_file_lock = threading.Lock()


def default_config():
    return copy.deepcopy(DEFAULT_CONFIG)


def load_config(path=None):
    """Tải config từ file JSON, trộn với giá trị mặc định.

    File không tồn tại: tạo file mới với giá trị mặc định.
    File lỗi JSON: ghi log và dùng mặc định (không ghi đè file lỗi).
    """
    path = path or CONFIG_FILE
    loaded_config = default_config()

    with _config_file_lock:
        if os.path.exists(path):
            try:
                with open(path, 'r', encoding='utf-8') as f: file_content = f.read()
                if file_content:
                    loaded_from_file = json.loads(file_content)
                    for section, defaults in DEFAULT_CONFIG.items():
                        merged = defaults.copy(); merged.update(loaded_from_file.get(section) or {})
                        loaded_config[section] = merged
            except (OSError, ValueError, AttributeError) as e:
                logging.error(f"[CONFIG] Lỗi đọc/parse file config ({e}), dùng mặc định.")
                loaded_config = default_config()
        else:
            logging.warning(f"[CONFIG] Không có file config {path}, dùng mặc định và tạo mới.")
            _save_config_to_file(loaded_config, path)

    logging.info(f"[CONFIG] Camera index: {loaded_config['camera_settings']['camera_index']}, "
                 f"frame_timeout={loaded_config['scan_config']['frame_timeout']}s, "
                 f"decode_budget={loaded_config['scan_config']['decode_budget']}s")
    return loaded_config


def save_config(config_data, path=None):
    with _config_file_lock:
        return _save_config_to_file(config_data, path or CONFIG_FILE)


def _save_config_to_file(config_data, path):
    """Hàm trợ giúp để lưu file config"""
    try:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(config_data, f, indent=4)
        return True
    except OSError as e:
        logging.error(f"[CONFIG] Không thể tạo/lưu file config: {e}")
        return False
