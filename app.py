# app.py
import os
import json
import logging
import functools
from logging.handlers import RotatingFileHandler

from flask import Flask, render_template, Response, jsonify, request
from flask_sock import Sock

from core.config import LOG_FILE, CONFIG_FILE, APPLICATION_NAME
from core.preview import mjpeg_stream
from core.system import ScannerSystem

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# ==================================================
# LOGIC XÁC THỰC
# ==================================================
AUTH_ENABLED = os.environ.get("APP_AUTH_ENABLED", "false").strip().lower() in {"1", "true", "yes", "on"}
USERNAME = os.environ.get("APP_USERNAME", "admin")
PASSWORD = os.environ.get("APP_PASSWORD", "123")


def setup_logging():
    os.makedirs(os.path.dirname(LOG_FILE), exist_ok=True)
    handler = RotatingFileHandler(LOG_FILE, maxBytes=2_000_000, backupCount=5, encoding="utf-8")
    logging.basicConfig(
        handlers=[handler, logging.StreamHandler()],
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] (%(threadName)s) %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    logging.info("[SYSTEM] Log system initialized ✅")
    logging.info(f"[PATH] CONFIG_FILE: {CONFIG_FILE}")
    logging.info(f"[PATH] LOG_FILE: {LOG_FILE}")


def check_auth(username, password):
    if not AUTH_ENABLED: return True
    return username == USERNAME and password == PASSWORD


def authenticate():
    return Response('Yêu cầu đăng nhập.', 401, {'WWW-Authenticate': 'Basic realm="Login Required"'})


def requires_auth(f):
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        if not AUTH_ENABLED: return f(*args, **kwargs)
        auth = request.authorization
        if not auth or not check_auth(auth.username, auth.password):
            return authenticate()
        return f(*args, **kwargs)
    return decorated


def create_app(system):
    app = Flask(__name__, template_folder=os.path.join(BASE_DIR, 'templates'))
    sock = Sock(app)
    system.system_state["auth_enabled"] = AUTH_ENABLED

    # ==================================================
    # CÁC ROUTE CỦA FLASK
    # ==================================================

    @app.route('/')
    @requires_auth
    def index():
        return render_template('index.html', app_name=APPLICATION_NAME, text=system.get_text())

    @app.route('/video_feed')
    @requires_auth
    def video_feed():
        def status_message():
            return "SCANNING..." if system.controller is not None else "NO SIGNAL"
        stream = mjpeg_stream(system.preview, lambda: system.main_loop_running,
                              system.config.get('preview_config'), status_message)
        return Response(stream, mimetype='multipart/x-mixed-replace; boundary=frame')

    @app.route('/api/scan', methods=['POST'])
    @requires_auth
    def api_scan():
        response_data, status_code = system.scan()
        return jsonify(response_data), status_code

    @app.route('/api/scan/cancel', methods=['POST'])
    @requires_auth
    def api_scan_cancel():
        response_data, status_code = system.cancel_scan()
        return jsonify(response_data), status_code

    @app.route('/api/text')
    @requires_auth
    def api_text():
        return jsonify({"text": system.get_text()})

    @app.route('/api/state')
    @requires_auth
    def api_state():
        return jsonify(system.get_full_state())

    @app.route('/api/about')
    @requires_auth
    def api_about():
        return jsonify(system.get_about())

    @app.route('/config')
    @requires_auth
    def get_config():
        return jsonify(system.get_config_for_json())

    # ==================================================
    # ROUTE WEBSOCKET
    # ==================================================
    @sock.route('/ws')
    @requires_auth
    def ws_route(ws):
        auth_user = "guest"
        if AUTH_ENABLED:
            auth_user = request.authorization.username
        client_label = f"{auth_user}-{id(ws):x}"

        system.add_ws_client(ws)
        try:
            ws.send(json.dumps({"type": "state_update", "state": system.get_full_state()}))
        except Exception as e:
            logging.warning(f"[WS] Lỗi gửi state ban đầu: {e}")
            system.remove_ws_client(ws); return

        try:
            while True:
                message = ws.receive()
                if message:
                    try:
                        system.handle_ws_message(json.loads(message), client_label)
                    except json.JSONDecodeError: pass
                    except Exception as ws_loop_e: logging.error(f"[WS] Lỗi xử lý message: {ws_loop_e}")
        except Exception as ws_conn_e:
            logging.warning(f"[WS] Kết nối WebSocket bị đóng hoặc lỗi: {ws_conn_e}")
        finally:
            system.remove_ws_client(ws)

    return app


# ==================================================
# KHỞI CHẠY HỆ THỐNG
# ==================================================
if __name__ == "__main__":
    setup_logging()
    system = ScannerSystem()
    try:
        system.run()
        port = int(os.environ.get("APP_PORT", "3000"))
        logging.info("=========================================")
        logging.info(f"    {APPLICATION_NAME} SẴN SÀNG")
        logging.info(f"    Decoder: {system.system_state['decoder']}")
        if AUTH_ENABLED:
            logging.info(f"    Truy cập: http://<IP>:{port} (User: {USERNAME})")
        else:
            logging.info(f"    Truy cập: http://<IP>:{port} (KHÔNG yêu cầu đăng nhập)")
        logging.info("=========================================")

        create_app(system).run(host='0.0.0.0', port=port, debug=False, use_reloader=False, threaded=True)

    except KeyboardInterrupt:
        logging.info("[MAIN] Dừng hệ thống (Ctrl+C)...")
    except Exception as main_e:
        logging.critical(f"[CRITICAL] Lỗi khởi động hệ thống: {main_e}", exc_info=True)
    finally:
        system.stop()
