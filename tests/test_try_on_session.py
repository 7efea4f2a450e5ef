"""Tests for the try-on session lifecycle."""

import threading
import time

import numpy as np
import pytest

from camera_async import CameraError
from detector_backends import DetectorInitError
from try_on_session import TryOnSession


@pytest.fixture
def make_session(events, fake_camera_cls, fake_detector_cls, make_detection):
    sessions = []

    def _make(detections="face", fail_load=None, camera_error=None, load_delay=0.0):
        if detections == "face":
            face = make_detection()
            detections = lambda n: face  # noqa: E731

        def camera_factory():
            if camera_error is not None:
                raise camera_error
            return fake_camera_cls(events)

        detector = fake_detector_cls(events, detections=detections, fail_load=fail_load,
                                     load_delay=load_delay)
        session = TryOnSession(camera_factory=camera_factory, detector_factory=lambda: detector)
        session.fake_detector = detector
        sessions.append(session)
        return session

    yield _make
    for s in sessions:
        s.stop()


class TestStart:
    def test_tracks_face_and_streams(self, make_session, wait_for):
        session = make_session()
        assert session.start() is True

        assert wait_for(lambda: session.snapshot_state()["faceDetected"])
        assert wait_for(lambda: session.latest_jpeg()[0] is not None)
        state = session.snapshot_state()
        assert state["permission"] == "granted"
        assert state["loading"] is False
        assert state["trackingError"] is None
        assert session.latest_jpeg()[0][:2] == b"\xff\xd8"

    def test_start_twice_is_noop(self, make_session, events, wait_for):
        session = make_session()
        assert session.start()
        assert session.start()
        assert wait_for(lambda: "detector.load" in events)
        assert events.count("detector.load") == 1

    def test_camera_denied_is_not_fatal(self, make_session):
        session = make_session(camera_error=CameraError("denied"))

        assert session.start() is False
        state = session.snapshot_state()
        assert state["permission"] == "denied"
        assert "denied" in state["error"]
        assert state["running"] is False

    def test_retry_after_denial(self, make_session, events, fake_camera_cls):
        session = make_session(camera_error=CameraError("not_found"))
        assert session.start() is False
        assert session.snapshot_state()["permission"] == "not_found"

        session.camera_factory = lambda: fake_camera_cls(events)
        assert session.start() is True
        assert session.snapshot_state()["permission"] == "granted"
        assert session.snapshot_state()["error"] is None

    def test_detector_failure_degrades_to_raw_video(self, make_session, wait_for):
        session = make_session(fail_load=DetectorInitError("model missing"))
        session.start()

        assert wait_for(lambda: session.latest_jpeg()[0] is not None)
        state = session.snapshot_state()
        assert state["loading"] is False
        assert state["trackingError"] == "model missing"
        assert state["faceDetected"] is False
        assert session.fake_detector.calls == 0


class TestStop:
    def test_teardown_order(self, make_session, events, wait_for):
        session = make_session()
        session.start()
        assert wait_for(lambda: session.fake_detector.calls > 3)

        session.stop()

        assert session.running is False
        assert events.index("detector.close") < events.index("camera.release")
        assert "camera.read_after_release" not in events
        assert "detect_after_close" not in events
        calls = session.fake_detector.calls
        time.sleep(0.05)
        assert session.fake_detector.calls == calls

    def test_stop_is_idempotent(self, make_session, events):
        session = make_session()
        session.start()
        session.stop()
        session.stop()
        assert events.count("camera.release") == 1

    def test_stop_without_start(self, make_session):
        make_session().stop()

    def test_context_manager(self, make_session, events):
        session = make_session()
        with session:
            assert session.running
        assert "camera.release" in events

    def test_stop_clears_face_state(self, make_session, wait_for):
        session = make_session()
        session.start()
        assert wait_for(lambda: session.snapshot_state()["faceDetected"])
        session.stop()
        assert session.snapshot_state()["faceDetected"] is False

    def test_stop_while_detector_loading(self, make_session, events, wait_for):
        session = make_session(load_delay=0.3)
        session.start()
        assert wait_for(lambda: "detector.load" in events)

        assert session.stop() is True

        assert events.index("detector.load_done") < events.index("detector.close")
        assert events.index("detector.close") < events.index("camera.release")
        assert session.fake_detector.closed
        assert session.fake_detector.calls == 0

    def test_timed_out_stop_never_runs_two_loops(self, make_session, events, wait_for):
        session = make_session(load_delay=0.3)
        session.start()
        assert wait_for(lambda: "detector.load" in events)

        assert session.stop(timeout=0.01) is False
        assert "camera.release" not in events
        assert session.running is False
        assert session.start() is False

        assert session.stop() is True
        assert events.index("detector.close") < events.index("camera.release")

        assert session.start() is True
        loops = [t for t in threading.enumerate() if t.name == "detection-loop" and t.is_alive()]
        assert len(loops) == 1


class TestTrackingThroughSession:
    def test_missed_frames_report_no_face(self, make_session, make_detection, wait_for):
        face = make_detection()
        session = make_session(detections=lambda n: face if n <= 2 else None)
        session.start()

        assert wait_for(lambda: session.fake_detector.calls > 5)
        assert wait_for(lambda: not session.snapshot_state()["faceDetected"])
        # smoothing state is kept across the miss
        assert session.tracker.last_record is not None

    def test_detector_exception_counts_as_miss(self, make_session, wait_for):
        def flaky(n):
            raise RuntimeError("inference failed")

        session = make_session(detections=flaky)
        session.start()
        assert wait_for(lambda: session.fake_detector.calls > 2)
        assert session.snapshot_state()["faceDetected"] is False
        assert session.running


class TestControls:
    def test_select_style(self, make_session):
        session = make_session()
        session.select_style("round")
        state = session.snapshot_state()
        assert state["frameId"] == "round"
        assert state["frameName"] == "Visionary"

    def test_select_unknown_style(self, make_session):
        session = make_session()
        with pytest.raises(KeyError):
            session.select_style("monocle")
        assert session.snapshot_state()["frameId"] == "aviator"

    def test_style_switch_keeps_smoothing(self, make_session, make_detection):
        session = make_session()
        session.tracker.process(make_detection())
        before = session.tracker.last_record

        session.select_style("oversized")
        assert session.tracker.last_record is before

    def test_reset(self, make_session, make_detection):
        session = make_session()
        session.tracker.process(make_detection())
        session.select_style("round")

        session.reset()

        assert session.tracker.last_record is None
        assert session.snapshot_state()["frameId"] == "aviator"
        assert session.snapshot_state()["faceDetected"] is False

    def test_reset_waits_for_frame_in_flight(self, make_session, make_detection, events,
                                             fake_detector_cls):
        session = make_session()
        face = make_detection()
        session._detector = fake_detector_cls(events, detections=lambda n: face)

        entered, release = threading.Event(), threading.Event()
        process = session.tracker.process

        def slow_process(detection):
            entered.set()
            release.wait(2.0)
            return process(detection)

        session.tracker.process = slow_process
        frame = np.full((120, 160, 3), 90, np.uint8)
        worker = threading.Thread(target=session.process_frame, args=(frame,))
        worker.start()
        assert entered.wait(2.0)

        resetter = threading.Thread(target=session.reset)
        resetter.start()
        time.sleep(0.05)
        assert resetter.is_alive()

        release.set()
        worker.join(2.0)
        resetter.join(2.0)
        assert session.tracker.last_record is None
        assert session.snapshot_state()["faceDetected"] is False

    def test_unknown_default_style(self):
        with pytest.raises(KeyError):
            TryOnSession(style_id="monocle")


class TestProcessFrame:
    def test_overlay_centred_on_mirrored_eyes(self, make_session, make_detection, events,
                                              fake_detector_cls):
        session = make_session()
        face = make_detection(left_eye=(0.30, 0.45), right_eye=(0.50, 0.45),
                              nose_bridge=(0.40, 0.46),
                              left_temple=(0.20, 0.46), right_temple=(0.60, 0.46))
        session._detector = fake_detector_cls(events, detections=lambda n: face)

        display = session.process_frame(np.full((240, 320, 3), 200, np.uint8))

        changed = np.abs(display.astype(np.int16) - 200).max(axis=2) > 20
        cols = np.flatnonzero(changed.any(axis=0))
        assert cols.size > 0
        # eyes at x=0.30 and 0.50 land at mirrored pixels 224 and 160
        assert abs((cols[0] + cols[-1]) / 2.0 - 192) <= 4
        assert session.latest_jpeg()[0] is not None
