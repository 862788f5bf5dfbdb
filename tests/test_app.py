# tests/test_app.py
import os
import tempfile
import unittest

from app import create_app
from core.camera import ScriptedFrameSource
from core.config import save_config
from core.errors import DeviceUnavailable
from core.qr import QRDecoder
from core.system import ScannerSystem, NO_CODE_TEXT
from qr_fixtures import qr_image


class TestApp(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.config_path = os.path.join(self.tmp.name, "config.json")
        save_config({"scan_config": {"frame_timeout": 0.05}}, self.config_path)

    def tearDown(self):
        self.tmp.cleanup()

    def client_for(self, opener):
        system = ScannerSystem(self.config_path, open_source=opener, decoder=QRDecoder())
        self.addCleanup(system.stop)
        app = create_app(system)
        app.testing = True
        return app.test_client()

    def test_scan_then_text(self):
        client = self.client_for(ScriptedFrameSource.opener([qr_image("FROM-API")]))
        self.assertEqual(client.get("/api/text").get_json(), {"text": NO_CODE_TEXT})
        resp = client.post("/api/scan")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json(), {"outcome": "success", "text": "FROM-API"})
        self.assertEqual(client.get("/api/text").get_json(), {"text": "FROM-API"})
        self.assertIn(b"FROM-API", client.get("/").data)

    def test_scan_without_camera(self):
        client = self.client_for(ScriptedFrameSource.opener(fail=DeviceUnavailable("none")))
        resp = client.post("/api/scan")
        self.assertEqual(resp.status_code, 503)
        self.assertEqual(resp.get_json()["outcome"], "device_unavailable")

    def test_info_routes(self):
        client = self.client_for(ScriptedFrameSource.opener())
        self.assertEqual(client.post("/api/scan/cancel").status_code, 200)
        self.assertEqual(client.get("/api/state").get_json()["session_state"], "idle")
        self.assertIn("version", client.get("/api/about").get_json())
        self.assertEqual(client.get("/config").get_json()["scan_config"]["frame_timeout"], 0.05)


if __name__ == "__main__":
    unittest.main()
