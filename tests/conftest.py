import threading
import time

import numpy as np
import pytest

from face_landmarks import IBUG68_INDEX_MAP, MESH_INDEX_MAP, Detection

NEUTRAL_FACE = {
    "left_eye": (0.40, 0.45),
    "right_eye": (0.60, 0.45),
    "nose_bridge": (0.50, 0.46),
    "left_temple": (0.30, 0.46),
    "right_temple": (0.70, 0.46),
}


def _points_for(index_map, n_points, face, scale=(1.0, 1.0)):
    pts = np.full((n_points, 2), 0.5, np.float32) * np.array(scale, np.float32)
    for region in ("left_eye", "right_eye", "nose_bridge", "left_temple", "right_temple"):
        x, y = face[region]
        for idx in getattr(index_map, region):
            pts[idx] = (x * scale[0], y * scale[1])
    return pts


@pytest.fixture
def make_detection():
    """Build a mesh detection whose eye clusters collapse onto the given points."""
    def _make(**overrides):
        face = dict(NEUTRAL_FACE, **overrides)
        return Detection(points=_points_for(MESH_INDEX_MAP, 478, face), index_map=MESH_INDEX_MAP)
    return _make


@pytest.fixture
def make_pixel_detection():
    """Build an iBUG-68 detection in pixel coordinates for a WxH image."""
    def _make(width, height, **overrides):
        face = dict(NEUTRAL_FACE, **overrides)
        pts = _points_for(IBUG68_INDEX_MAP, 68, face, scale=(width, height))
        return Detection(points=pts, index_map=IBUG68_INDEX_MAP, image_size=(width, height))
    return _make


class FakeCamera:
    def __init__(self, events, shape=(120, 160, 3)):
        self.events = events
        self.frame = np.full(shape, 90, np.uint8)
        self.released = False

    def read(self):
        if self.released:
            self.events.append("camera.read_after_release")
            return False, None
        time.sleep(0.002)
        return True, self.frame.copy()

    def release(self):
        self.released = True
        self.events.append("camera.release")


class FakeDetector:
    def __init__(self, events, detections=None, fail_load=None, load_delay=0.0):
        self.events = events
        self.detections = detections
        self.fail_load = fail_load
        self.load_delay = load_delay
        self.closed = False
        self.calls = 0
        self.lock = threading.Lock()

    def load(self):
        self.closed = False
        self.events.append("detector.load")
        if self.load_delay:
            time.sleep(self.load_delay)
            self.events.append("detector.load_done")
        if self.fail_load is not None:
            raise self.fail_load

    def detect(self, frame, timestamp_ms):
        with self.lock:
            self.calls += 1
            if self.closed:
                self.events.append("detect_after_close")
        if self.detections is None:
            return None
        return self.detections(self.calls)

    def close(self):
        self.closed = True
        self.events.append("detector.close")


@pytest.fixture
def events():
    return []


@pytest.fixture
def fake_camera_cls():
    return FakeCamera


@pytest.fixture
def fake_detector_cls():
    return FakeDetector


def wait_until(predicate, timeout=3.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def wait_for():
    return wait_until
