"""
Face landmark detector backends.

Both backends share one contract:
    load()                          -> may raise DetectorInitError
    detect(frame_bgr, timestamp_ms) -> Detection | None
    close()

and report their point layout through ``index_map`` so the tracker can pick
eyes, nose bridge and temples out of the raw points.
"""
import logging
import os
from typing import Optional

import cv2
import numpy as np

from face_landmarks import IBUG68_INDEX_MAP, MESH_INDEX_MAP, Detection

logger = logging.getLogger(__name__)

DEFAULT_FACE_LANDMARKER_MODEL = os.path.join("models", "face_landmarker.task")
DEFAULT_LBF_MODEL = os.path.join("models", "lbfmodel.yaml")


class DetectorInitError(RuntimeError):
    """The detector model could not be loaded."""


class FaceMeshDetector:
    """MediaPipe Face Landmarker (478-point mesh), normalized output."""

    index_map = MESH_INDEX_MAP

    def __init__(self, model_path=DEFAULT_FACE_LANDMARKER_MODEL,
                 min_detection_confidence=0.5, min_tracking_confidence=0.5):
        self.model_path = model_path
        self.min_detection_confidence = min_detection_confidence
        self.min_tracking_confidence = min_tracking_confidence
        self._landmarker = None
        self._last_ts = -1

    def load(self):
        if self._landmarker is not None:
            return
        if not os.path.exists(self.model_path):
            raise DetectorInitError(
                f"Face landmarker model not found: {self.model_path}. "
                "Download face_landmarker.task and set FACE_LANDMARKER_MODEL.")
        try:
            import mediapipe as mp
            from mediapipe.tasks.python.core.base_options import BaseOptions
            from mediapipe.tasks.python.vision import face_landmarker
            from mediapipe.tasks.python.vision.core.vision_task_running_mode import (
                VisionTaskRunningMode,
            )

            options = face_landmarker.FaceLandmarkerOptions(
                base_options=BaseOptions(model_asset_path=self.model_path),
                running_mode=VisionTaskRunningMode.VIDEO,
                num_faces=1,
                min_face_detection_confidence=self.min_detection_confidence,
                min_face_presence_confidence=self.min_detection_confidence,
                min_tracking_confidence=self.min_tracking_confidence,
            )
            self._landmarker = face_landmarker.FaceLandmarker.create_from_options(options)
        except (ImportError, RuntimeError, ValueError) as e:
            raise DetectorInitError(f"Failed to initialize face landmarker: {e}") from e
        self._mp = mp
        logger.info("Face landmarker loaded from %s", self.model_path)

    def detect(self, frame_bgr: np.ndarray, timestamp_ms: int) -> Optional[Detection]:
        if self._landmarker is None:
            raise RuntimeError("FaceMeshDetector.detect() called before load()")

        # VIDEO mode rejects non-increasing timestamps
        ts = max(int(timestamp_ms), self._last_ts + 1)
        self._last_ts = ts

        rgb = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGB)
        image = self._mp.Image(image_format=self._mp.ImageFormat.SRGB, data=rgb)
        result = self._landmarker.detect_for_video(image, ts)
        if not result or not result.face_landmarks:
            return None

        lm = result.face_landmarks[0]
        pts = np.array([[p.x, p.y] for p in lm], np.float32)
        return Detection(points=pts, index_map=self.index_map)

    def close(self):
        if self._landmarker is not None:
            self._landmarker.close()
            self._landmarker = None
            logger.info("Face landmarker closed")


class CascadeDetector:
    """Haar cascade face box + OpenCV LBF facemark (iBUG 68), pixel output."""

    index_map = IBUG68_INDEX_MAP

    def __init__(self, lbf_model_path=DEFAULT_LBF_MODEL, cascade_path=None,
                 scale_factor=1.1, min_neighbors=5, min_size=(60, 60)):
        self.lbf_model_path = lbf_model_path
        self.cascade_path = cascade_path or os.path.join(
            cv2.data.haarcascades, "haarcascade_frontalface_default.xml")
        self.scale_factor = scale_factor
        self.min_neighbors = min_neighbors
        self.min_size = min_size
        self._cascade = None
        self._facemark = None

    def load(self):
        if self._facemark is not None:
            return
        try:
            cascade = cv2.CascadeClassifier(self.cascade_path)
        except cv2.error as e:
            raise DetectorInitError(f"Failed to load Haar cascade: {e}") from e
        if cascade.empty():
            raise DetectorInitError(f"Failed to load Haar cascade: {self.cascade_path}")
        if not hasattr(cv2, "face"):
            raise DetectorInitError("cv2.face is unavailable; install opencv-contrib-python")
        if not os.path.exists(self.lbf_model_path):
            raise DetectorInitError(f"LBF facemark model not found: {self.lbf_model_path}")
        try:
            facemark = cv2.face.createFacemarkLBF()
            facemark.loadModel(self.lbf_model_path)
        except cv2.error as e:
            raise DetectorInitError(f"Failed to load LBF facemark model: {e}") from e
        self._cascade = cascade
        self._facemark = facemark
        logger.info("Cascade detector loaded (%s, %s)", self.cascade_path, self.lbf_model_path)

    def detect(self, frame_bgr: np.ndarray, timestamp_ms: int = 0) -> Optional[Detection]:
        if self._facemark is None:
            raise RuntimeError("CascadeDetector.detect() called before load()")

        gray = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2GRAY)
        faces = self._cascade.detectMultiScale(
            gray, scaleFactor=self.scale_factor,
            minNeighbors=self.min_neighbors, minSize=self.min_size)
        if len(faces) == 0:
            return None

        # single face: keep the largest box
        largest = max(faces, key=lambda r: int(r[2]) * int(r[3]))
        ok, landmarks = self._facemark.fit(gray, np.array([largest], np.int32))
        if not ok or len(landmarks) == 0:
            return None

        pts = np.asarray(landmarks[0], np.float32).reshape(-1, 2)
        H, W = frame_bgr.shape[:2]
        return Detection(points=pts, index_map=self.index_map, image_size=(W, H))

    def close(self):
        self._cascade = None
        self._facemark = None


BACKENDS = {
    "mesh": FaceMeshDetector,
    "cascade": CascadeDetector,
}


def create_detector(name: str, **kwargs):
    try:
        cls = BACKENDS[name]
    except KeyError:
        raise ValueError(f"unknown detector backend {name!r}; choose from {sorted(BACKENDS)}") from None
    return cls(**kwargs)
