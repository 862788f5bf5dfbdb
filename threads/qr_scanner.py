# threads/qr_scanner.py
import logging

from core.errors import DeviceLost, FrameTimeout
from core.results import Success, DeviceLostOutcome, CANCELLED


def start_qr_scanner_thread(session):
    """Luồng quét QR của 1 phiên: mở camera, chạy vòng lặp, luôn đóng camera khi thoát.

    Không exception nào được thoát ra khỏi luồng này: mọi kết cục (kể cả lỗi bất
    ngờ) đều đi qua session.finish() thành outcome.
    """
    if not session.acquire_camera():
        return

    outcome = CANCELLED
    try:
        outcome = run_scan_loop(session)
    except Exception as e:
        logging.error(f"[QR_SCAN] Lỗi trong luồng QR Scanner: {e}", exc_info=True)
        outcome = DeviceLostOutcome(f"unexpected error: {e}")
    finally:
        session.finish(outcome)


def run_scan_loop(session):
    """Vòng lặp chụp → preview → giải mã. Kiểm tra cờ hủy mỗi vòng.

    Chờ frame tối đa `frame_timeout`, nên camera bị treo cũng không làm trễ
    việc hủy quá 1 chu kỳ.
    """
    source = session.source
    while True:
        if session.cancel_requested:
            logging.info("[QR_SCAN] Phiên quét bị hủy.")
            return CANCELLED

        frame = None
        try:
            frame = source.next_frame(session.frame_timeout)
        except FrameTimeout:
            pass
        except DeviceLost as e:
            logging.warning(f"[QR_SCAN] Mất camera giữa phiên quét: {e}")
            return DeviceLostOutcome(str(e))

        if frame is not None:
            session.publish_preview(frame)
            session.offer_for_decode(frame)

        text = session.pump_decoder()
        if text is not None:
            return Success(text)
