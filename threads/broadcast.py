# threads/broadcast.py
import json
import time
import logging


def start_broadcast_state_thread(system, interval=0.5):
    """Gửi state tới WS khi state thay đổi"""
    last_state_str = ""
    while system.main_loop_running:
        try:
            clients_to_send = []
            with system.ws_lock: clients_to_send = list(system.ws_clients)

            if not clients_to_send:
                last_state_str = ""
                time.sleep(interval); continue

            current_msg = json.dumps({"type": "state_update", "state": system.get_full_state()})
            if current_msg != last_state_str:
                with system.broadcast_lock:
                    for client in clients_to_send:
                        try: client.send(current_msg)
                        except Exception:
                            system.remove_ws_client(client) # Xóa client hỏng
                last_state_str = current_msg

            time.sleep(interval)

        except Exception as e:
            logging.error(f"[BROADCAST] Lỗi nghiêm trọng: {e}", exc_info=True)
            time.sleep(1.0)
