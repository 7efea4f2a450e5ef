"""Landmark point layouts and the per-frame landmark record.

A detector backend yields an (N, 2) array of points in its own layout. A
``LandmarkIndexMap`` names which indices make up each facial region, so the
same record extraction works for every backend.
"""
import math
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

# Face width (normalized) of a face at neutral distance from the camera
BASELINE_FACE_WIDTH = 0.4


class LandmarkLayoutError(ValueError):
    """Detection does not match the point layout it claims to use."""


@dataclass(frozen=True)
class LandmarkIndexMap:
    name: str
    left_eye: Tuple[int, ...]
    right_eye: Tuple[int, ...]
    nose_bridge: Tuple[int, ...]
    left_temple: Tuple[int, ...]
    right_temple: Tuple[int, ...]

    @property
    def min_points(self) -> int:
        return 1 + max(self.left_eye + self.right_eye + self.nose_bridge
                       + self.left_temple + self.right_temple)


# MediaPipe face mesh (468 points, 478 with refined irises)
#   eye corners 33/133 and 263/362, nose bridge top 6, temples 127/356
MESH_INDEX_MAP = LandmarkIndexMap(
    name="mesh",
    left_eye=(33, 133),
    right_eye=(263, 362),
    nose_bridge=(6,),
    left_temple=(127,),
    right_temple=(356,),
)

# iBUG 68-point layout (dlib / OpenCV LBF facemark)
#   eye corners 36/39 and 45/42, nose bridge 27, jaw ends 0/16
IBUG68_INDEX_MAP = LandmarkIndexMap(
    name="ibug68",
    left_eye=(36, 39),
    right_eye=(45, 42),
    nose_bridge=(27,),
    left_temple=(0,),
    right_temple=(16,),
)


@dataclass(frozen=True)
class Detection:
    """One face worth of detector points.

    ``image_size`` is ``(width, height)`` when ``points`` are in pixels, and
    ``None`` when they are already normalized to the image.
    """
    points: np.ndarray
    index_map: LandmarkIndexMap
    image_size: Optional[Tuple[int, int]] = None

    def normalized_points(self) -> np.ndarray:
        pts = np.asarray(self.points, dtype=np.float64).reshape(-1, 2)
        if self.image_size is not None:
            w, h = self.image_size
            pts = pts / np.array([float(w), float(h)])
        return np.clip(pts, 0.0, 1.0)


@dataclass(frozen=True)
class LandmarkRecord:
    left_eye: Tuple[float, float]
    right_eye: Tuple[float, float]
    nose_bridge: Tuple[float, float]
    left_temple: Tuple[float, float]
    right_temple: Tuple[float, float]
    face_width: float
    face_angle: float
    scale: float

    POINT_FIELDS = ("left_eye", "right_eye", "nose_bridge", "left_temple", "right_temple")
    SCALAR_FIELDS = ("face_width", "face_angle", "scale")

    def values(self):
        """All scalar values of the record, points flattened."""
        out = []
        for name in self.POINT_FIELDS:
            out.extend(getattr(self, name))
        out.extend(getattr(self, name) for name in self.SCALAR_FIELDS)
        return out

    def is_finite(self) -> bool:
        return all(math.isfinite(v) for v in self.values())


def normalize_angle(a: float) -> float:
    """Wrap an angle into (-pi, pi]."""
    if -math.pi < a <= math.pi:
        return a
    a = math.fmod(a + math.pi, 2 * math.pi)
    if a <= 0:
        a += 2 * math.pi
    return a - math.pi


def _cluster_center(pts: np.ndarray, indices) -> Tuple[float, float]:
    c = pts[list(indices)].mean(axis=0)
    return float(c[0]), float(c[1])


def extract_landmarks(detection: Detection) -> LandmarkRecord:
    """Raw (unsmoothed) landmark record for one detection."""
    imap = detection.index_map
    pts = detection.normalized_points()
    if len(pts) < imap.min_points:
        raise LandmarkLayoutError(
            f"{imap.name} layout needs {imap.min_points} points, got {len(pts)}")

    left_eye = _cluster_center(pts, imap.left_eye)
    right_eye = _cluster_center(pts, imap.right_eye)
    nose_bridge = _cluster_center(pts, imap.nose_bridge)
    left_temple = _cluster_center(pts, imap.left_temple)
    right_temple = _cluster_center(pts, imap.right_temple)

    face_width = math.hypot(right_temple[0] - left_temple[0],
                            right_temple[1] - left_temple[1])
    face_angle = normalize_angle(math.atan2(right_eye[1] - left_eye[1],
                                            right_eye[0] - left_eye[0]))

    return LandmarkRecord(
        left_eye=left_eye,
        right_eye=right_eye,
        nose_bridge=nose_bridge,
        left_temple=left_temple,
        right_temple=right_temple,
        face_width=face_width,
        face_angle=face_angle,
        scale=face_width / BASELINE_FACE_WIDTH,
    )
