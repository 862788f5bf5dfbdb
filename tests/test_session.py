# tests/test_session.py
import time
import threading
import unittest

from core.camera import ScriptedFrameSource
from core.controller import open_scan_session
from core.errors import DeviceLost, DeviceUnavailable, SessionUsageError
from core.qr import QRDecoder
from core.results import (Decoded, DecodeError, Success, Cancelled, DeviceLostOutcome,
                          DeviceUnavailableOutcome, CANCELLED)
from core.session import SessionState
from qr_fixtures import ScriptedDecoder, RecordingPreview, qr_image, blank, marker

SCAN_CONFIG = {"frame_timeout": 0.05, "decode_budget": 5.0, "decode_workers": 2}


def make_controller(script=(), decoder=None, preview=None, scan_config=None, fail=None, **source_kwargs):
    opener = ScriptedFrameSource.opener(script, fail=fail, **source_kwargs)
    config = {"scan_config": dict(SCAN_CONFIG, **(scan_config or {}))}
    controller = open_scan_session(open_source=opener, decoder=decoder or ScriptedDecoder(),
                                   preview=preview, config=config)
    return controller, opener


class TestScanSessionEndToEnd(unittest.TestCase):
    def test_fourth_frame_decodes(self):
        script = [blank(), blank(), blank(), qr_image("HELLO-QR")]
        preview = RecordingPreview()
        controller, opener = make_controller(script, decoder=QRDecoder(), preview=preview)

        outcome = controller.start().await_outcome()

        self.assertEqual(outcome, Success("HELLO-QR"))
        source = opener.opened[0]
        self.assertTrue(source.closed)
        self.assertEqual(source.close_calls, 1)
        self.assertEqual(controller.state, SessionState.TERMINATED)
        self.assertEqual(preview.frames, [1, 2, 3, 4])

    def test_open_failure_never_reads_frames(self):
        controller, opener = make_controller(fail=DeviceUnavailable("camera busy"))
        outcome = controller.start().await_outcome()
        self.assertIsInstance(outcome, DeviceUnavailableOutcome)
        self.assertIn("busy", outcome.reason)
        self.assertEqual(opener.opened, [])

    def test_unexpected_open_error_is_device_unavailable(self):
        controller, _ = make_controller(fail=PermissionError("denied"))
        outcome = controller.start().await_outcome()
        self.assertIsInstance(outcome, DeviceUnavailableOutcome)
        self.assertIn("PermissionError", outcome.reason)


class TestCancellation(unittest.TestCase):
    def test_cancel_with_stalled_device(self):
        controller, opener = make_controller([])
        controller.start()
        time.sleep(0.15)
        started = time.monotonic()
        controller.cancel()
        outcome = controller.await_outcome()
        self.assertLess(time.monotonic() - started, 1.0)
        self.assertIs(outcome, CANCELLED)
        self.assertEqual(opener.opened[0].close_calls, 1)

    def test_cancel_while_frames_stream(self):
        preview = RecordingPreview()
        controller, opener = make_controller([blank()], repeat_last=True, frame_interval=0.01,
                                             preview=preview)
        controller.start()
        time.sleep(0.1)
        controller.cancel()
        self.assertIsInstance(controller.await_outcome(), Cancelled)
        self.assertEqual(opener.opened[0].close_calls, 1)
        self.assertGreater(len(preview.frames), 1)

    def test_cancel_is_idempotent(self):
        controller, opener = make_controller([])
        controller.start()
        time.sleep(0.1)
        for _ in range(3):
            controller.cancel()
        self.assertIs(controller.await_outcome(), CANCELLED)
        controller.cancel()
        controller.cancel()
        self.assertIs(controller.await_outcome(), CANCELLED)
        self.assertEqual(opener.opened[0].close_calls, 1)

    def test_cancel_during_slow_decode_is_bounded(self):
        decoder = ScriptedDecoder(delays={1: 2.0})
        controller, opener = make_controller([marker(1)], decoder=decoder,
                                             scan_config={"decode_budget": 0.1})
        controller.start()
        time.sleep(0.2)
        started = time.monotonic()
        controller.cancel()
        self.assertIs(controller.await_outcome(), CANCELLED)
        self.assertLess(time.monotonic() - started, 0.5)
        self.assertEqual(opener.opened[0].close_calls, 1)

    def test_cancel_while_decode_within_budget_waits_at_most_budget(self):
        decoder = ScriptedDecoder(delays={1: 2.0})
        controller, _ = make_controller([marker(1)], decoder=decoder,
                                        scan_config={"decode_budget": 0.3})
        controller.start()
        time.sleep(0.1)
        started = time.monotonic()
        controller.cancel()
        self.assertIs(controller.await_outcome(), CANCELLED)
        self.assertLess(time.monotonic() - started, 1.0)

    def test_cancel_after_success_keeps_outcome(self):
        decoder = ScriptedDecoder(results={5: Decoded("DONE")})
        controller, _ = make_controller([marker(5)], decoder=decoder)
        self.assertEqual(controller.start().await_outcome(), Success("DONE"))
        controller.cancel()
        self.assertEqual(controller.outcome, Success("DONE"))

    def test_cancel_before_start_skips_camera(self):
        controller, opener = make_controller([blank()])
        controller.cancel()
        self.assertIs(controller.start().await_outcome(), CANCELLED)
        self.assertEqual(opener.opened, [])


class TestDeviceLost(unittest.TestCase):
    def test_lost_on_third_call(self):
        script = [blank(), blank(), DeviceLost("unplugged"), blank(), blank()]
        controller, opener = make_controller(script)
        outcome = controller.start().await_outcome()
        self.assertEqual(outcome, DeviceLostOutcome("unplugged"))
        source = opener.opened[0]
        self.assertEqual(source.next_frame_calls, 3)
        self.assertEqual(source.close_calls, 1)

    def test_unexpected_source_error_becomes_device_lost(self):
        controller, opener = make_controller([blank(), RuntimeError("driver crashed")])
        outcome = controller.start().await_outcome()
        self.assertIsInstance(outcome, DeviceLostOutcome)
        self.assertIn("driver crashed", outcome.reason)
        self.assertEqual(opener.opened[0].close_calls, 1)


class TestDecodeCadence(unittest.TestCase):
    def test_latest_frame_wins(self):
        # F1 giải mã chậm; F2 (cũ) bị F3 thay thế trước khi F1 xong
        decoder = ScriptedDecoder(results={2: Decoded("STALE"), 3: Decoded("FRESH")}, delays={1: 0.3})
        controller, _ = make_controller([marker(1), marker(2), marker(3)], decoder=decoder)
        outcome = controller.start().await_outcome()
        self.assertEqual(outcome, Success("FRESH"))
        self.assertEqual(decoder.calls, [1, 3])

    def test_pending_frame_decodes_after_slow_frame(self):
        decoder = ScriptedDecoder(results={2: Decoded("F2")}, delays={1: 0.2})
        controller, _ = make_controller([marker(1), marker(2)], decoder=decoder)
        self.assertEqual(controller.start().await_outcome(), Success("F2"))
        self.assertEqual(decoder.calls, [1, 2])

    def test_decode_over_budget_is_abandoned(self):
        decoder = ScriptedDecoder(results={1: Decoded("LATE"), 2: Decoded("F2")}, delays={1: 0.6})
        controller, _ = make_controller([marker(1), marker(2)], decoder=decoder,
                                        scan_config={"decode_budget": 0.1})
        self.assertEqual(controller.start().await_outcome(), Success("F2"))
        self.assertEqual(controller._session.stats["abandoned"], 1)

    def test_decode_errors_do_not_stop_session(self):
        decoder = ScriptedDecoder(results={1: DecodeError("truncated"), 3: Decoded("OK")},
                                  errors={2: ValueError("bad frame")})
        controller, _ = make_controller([marker(1), marker(2), marker(3)], decoder=decoder,
                                        frame_interval=0.05)
        self.assertEqual(controller.start().await_outcome(), Success("OK"))
        self.assertEqual(controller._session.stats["decode_errors"], 2)

    def test_decoder_sees_non_decreasing_sequences(self):
        decoder = ScriptedDecoder(delays={1: 0.02}, results={9: Decoded("END")})
        script = [marker(1)] * 10 + [marker(9)]
        controller, _ = make_controller(script, decoder=decoder, frame_interval=0.005)
        self.assertEqual(controller.start().await_outcome(), Success("END"))
        self.assertEqual(decoder.calls, sorted(decoder.calls))

    def test_broken_preview_does_not_stop_session(self):
        decoder = ScriptedDecoder(results={2: Decoded("X")})
        controller, _ = make_controller([marker(1), marker(2)], decoder=decoder,
                                        preview=RecordingPreview(fail=True))
        self.assertEqual(controller.start().await_outcome(), Success("X"))


class TestSessionController(unittest.TestCase):
    def test_state_transitions(self):
        states = []
        decoder = ScriptedDecoder(results={1: Decoded("A")})
        controller, _ = make_controller([marker(1)], decoder=decoder)
        controller.add_listener(lambda session, state: states.append((state, session.source is not None)))
        controller.start().await_outcome()
        self.assertEqual(states, [(SessionState.STARTING, False), (SessionState.RUNNING, True),
                                  (SessionState.FINISHING, True), (SessionState.TERMINATED, False)])

    def test_open_failure_transitions(self):
        states = []
        controller, _ = make_controller(fail=DeviceUnavailable("none"))
        controller.add_listener(lambda session, state: states.append(state))
        controller.start().await_outcome()
        self.assertEqual(states, [SessionState.STARTING, SessionState.TERMINATED])

    def test_worker_joined_after_await(self):
        controller, _ = make_controller([])
        controller.start()
        controller.cancel()
        controller.await_outcome()
        self.assertFalse(controller._session._thread.is_alive())
        self.assertIsNone(controller._session.source)

    def test_start_is_non_blocking(self):
        decoder = ScriptedDecoder(delays={1: 0.5})
        controller, _ = make_controller([marker(1)], decoder=decoder)
        started = time.monotonic()
        controller.start()
        self.assertLess(time.monotonic() - started, 0.3)
        controller.cancel()
        controller.await_outcome()

    def test_start_twice_raises(self):
        controller, _ = make_controller([])
        controller.start()
        with self.assertRaises(SessionUsageError):
            controller.start()
        controller.cancel()
        controller.await_outcome()

    def test_await_before_start_raises(self):
        controller, _ = make_controller([])
        with self.assertRaises(SessionUsageError):
            controller.await_outcome()

    def test_second_concurrent_waiter_raises(self):
        controller, _ = make_controller([])
        controller.start()
        waiter = threading.Thread(target=controller.await_outcome)
        waiter.start()
        time.sleep(0.1)
        with self.assertRaises(SessionUsageError):
            controller.await_outcome()
        controller.cancel()
        waiter.join(2.0)
        self.assertFalse(waiter.is_alive())

    def test_outcome_none_until_terminated(self):
        controller, _ = make_controller([])
        self.assertIsNone(controller.outcome)
        controller.start()
        self.assertIsNone(controller.outcome)
        controller.cancel()
        controller.await_outcome()
        self.assertIs(controller.outcome, CANCELLED)


if __name__ == "__main__":
    unittest.main()
