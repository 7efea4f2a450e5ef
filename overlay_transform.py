import logging
import math
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

from face_landmarks import LandmarkRecord
from glasses_catalog import SPRITE_PIVOT_Y, OverlayAsset

logger = logging.getLogger(__name__)

# A typical frame spans ~2.8x the distance between eye centers
GLASSES_WIDTH_FACTOR = 2.8
# Lift from eye level toward the nose bridge, as a fraction of eye distance
BRIDGE_LIFT = 0.08
MIN_SCALE = 0.5
MAX_SCALE = 2.5


@dataclass(frozen=True)
class PlacementTransform:
    x: float
    y: float
    rotation_degrees: float
    scale: float
    eye_distance_px: float


def clamp(x, a, b):
    return a if x < a else (b if x > b else x)


def mirror_to_pixels(point, viewport_width, viewport_height):
    """Normalized camera point to pixels on the mirrored display."""
    return (1.0 - point[0]) * viewport_width, point[1] * viewport_height


def compute_placement(landmarks: Optional[LandmarkRecord],
                      asset: OverlayAsset,
                      viewport_width: float,
                      viewport_height: float) -> Optional[PlacementTransform]:
    """
    Where to draw ``asset`` for the current landmarks, in mirrored pixel space.

    Returns ``None`` when there is nothing to draw: no face, or inputs that
    cannot produce a sensible placement (non-finite landmarks, an empty
    viewport).
    """
    if landmarks is None:
        return None
    if not landmarks.is_finite():
        logger.debug("Skipping placement: non-finite landmarks")
        return None
    if not (viewport_width > 0 and viewport_height > 0):
        logger.debug("Skipping placement: empty viewport %sx%s", viewport_width, viewport_height)
        return None
    if not asset.base_width > 0:
        logger.debug("Skipping placement: %s has no base width", asset.id)
        return None

    # front camera is shown as a mirror, so flip x
    left_x, left_y = mirror_to_pixels(landmarks.left_eye, viewport_width, viewport_height)
    right_x, right_y = mirror_to_pixels(landmarks.right_eye, viewport_width, viewport_height)

    eye_distance = math.hypot(right_x - left_x, right_y - left_y)
    center_x = (left_x + right_x) / 2.0
    center_y = (left_y + right_y) / 2.0

    target_width = eye_distance * GLASSES_WIDTH_FACTOR
    scale = target_width / float(asset.base_width)

    return PlacementTransform(
        x=center_x,
        y=center_y - eye_distance * BRIDGE_LIFT,
        rotation_degrees=-(landmarks.face_angle * 180.0 / math.pi),
        scale=clamp(scale, MIN_SCALE, MAX_SCALE),
        eye_distance_px=eye_distance,
    )


def placement_matrix(placement: PlacementTransform, sprite_shape) -> np.ndarray:
    """2x3 affine map from sprite pixels to frame pixels."""
    h, w = sprite_shape[:2]
    pivot = np.array([w / 2.0, h * SPRITE_PIVOT_Y], np.float32)

    theta = math.radians(placement.rotation_degrees)
    c, s = math.cos(theta), math.sin(theta)
    M2 = np.array([[c, -s], [s, c]], np.float32) * np.float32(placement.scale)
    t = np.array([placement.x, placement.y], np.float32) - (M2 @ pivot)

    M = np.zeros((2, 3), np.float32)
    M[:, :2] = M2
    M[:, 2] = t
    return M


def render_overlay(frame: np.ndarray,
                   placement: Optional[PlacementTransform],
                   sprite: np.ndarray) -> np.ndarray:
    """Alpha-blend the BGRA ``sprite`` onto a BGR ``frame`` at ``placement``."""
    if placement is None:
        return frame

    H_out, W_out = frame.shape[:2]
    M = placement_matrix(placement, sprite.shape)
    warped = cv2.warpAffine(sprite, M, (W_out, H_out),
                            flags=cv2.INTER_LINEAR,
                            borderMode=cv2.BORDER_CONSTANT,
                            borderValue=(0, 0, 0, 0))

    fg = warped[..., :3].astype(np.float32)
    alpha = warped[..., 3:4].astype(np.float32) / 255.0
    return (frame * (1 - alpha) + fg * alpha).astype(np.uint8)
