# threads/camera.py
import logging


def start_camera_thread(source):
    """Luồng chụp camera: đọc liên tục và đẩy frame mới nhất vào hộp thư của source.

    Lỗi đọc được thử lại (mở lại camera) tối đa `max_read_retries` lần liên tiếp;
    quá số lần đó thì đánh dấu mất camera (DeviceLost). Camera luôn được release
    khi luồng dừng.
    """
    retries = 0
    max_retries = int(source.settings.get('max_read_retries', 5))

    try:
        while source.running:
            capture = source.capture
            if capture is None:
                ret, frame = False, None
            else:
                ret, frame = capture.read()

            if not source.running:
                break

            if not ret or frame is None:
                retries += 1
                logging.warning(f"[WARN] Mất camera (lần {retries}/{max_retries}), thử khởi động lại...")
                if retries > max_retries:
                    logging.critical("[ERROR] Camera lỗi vĩnh viễn (mất kết nối).")
                    source.mark_lost(f"camera index {source.camera_index} stopped delivering frames")
                    break
                source.reopen()
                continue
            retries = 0

            source.publish(frame)

    except Exception as e:
        logging.error(f"[CAMERA] Lỗi trong luồng camera: {e}", exc_info=True)
        source.mark_lost(f"camera error: {e}")
    finally:
        source.release_device()
        logging.info("[CAMERA] Luồng camera đã dừng.")
