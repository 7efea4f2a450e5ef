import logging
import math
from typing import Callable, Optional, Tuple

from face_landmarks import (Detection, LandmarkRecord, extract_landmarks,
                            normalize_angle)

logger = logging.getLogger(__name__)

POSITION_SMOOTHING = 0.3
ANGLE_SMOOTHING = 0.2
MIN_FACE_WIDTH = 0.02

LandmarkConsumer = Callable[[Optional[LandmarkRecord], bool], None]


def smooth_value(current, previous, factor=POSITION_SMOOTHING):
    return previous + (current - previous) * factor


def smooth_angle(current, previous, factor=ANGLE_SMOOTHING):
    delta = (current - previous + math.pi) % (2 * math.pi) - math.pi
    return normalize_angle(previous + delta * factor)


def _smooth_point(cur, prev, factor):
    return (smooth_value(cur[0], prev[0], factor),
            smooth_value(cur[1], prev[1], factor))


class LandmarkTracker:
    """
    Turns per-frame detections into a temporally smoothed landmark record.

    The tracker keeps exactly one piece of state: the last smoothed record.
    A frame without a face (or a rejected, degenerate one) reports
    ``(None, False)`` but leaves that record in place, so the next good
    detection is blended against it instead of starting cold.
    """

    def __init__(self,
                 on_update: Optional[LandmarkConsumer] = None,
                 position_factor: float = POSITION_SMOOTHING,
                 angle_factor: float = ANGLE_SMOOTHING,
                 min_face_width: float = MIN_FACE_WIDTH):
        for name, f in (("position_factor", position_factor), ("angle_factor", angle_factor)):
            if not 0.0 < f <= 1.0:
                raise ValueError(f"{name} must be in (0, 1], got {f}")
        if min_face_width < 0:
            raise ValueError(f"min_face_width must be >= 0, got {min_face_width}")

        self.on_update = on_update
        self.position_factor = position_factor
        self.angle_factor = angle_factor
        self.min_face_width = min_face_width

        self._previous: Optional[LandmarkRecord] = None
        self._face_detected = False

    @property
    def last_record(self) -> Optional[LandmarkRecord]:
        return self._previous

    @property
    def face_detected(self) -> bool:
        return self._face_detected

    def reset(self):
        self._previous = None
        self._face_detected = False
        logger.info("Landmark tracking state cleared")

    def process(self, detection: Optional[Detection]) -> Tuple[Optional[LandmarkRecord], bool]:
        """Handle one detector result and notify the consumer."""
        record = None
        if detection is not None:
            raw = extract_landmarks(detection)
            if self._is_degenerate(raw):
                logger.debug("Rejected degenerate detection: face_width=%.4f", raw.face_width)
            else:
                record = raw if self._previous is None else self._smooth(raw, self._previous)
                self._previous = record

        self._face_detected = record is not None
        if self.on_update is not None:
            self.on_update(record, self._face_detected)
        return record, self._face_detected

    def _is_degenerate(self, raw: LandmarkRecord) -> bool:
        if not raw.is_finite():
            return True
        if raw.face_width < self.min_face_width:
            return True
        return raw.left_eye == raw.right_eye

    def _smooth(self, cur: LandmarkRecord, prev: LandmarkRecord) -> LandmarkRecord:
        f = self.position_factor
        return LandmarkRecord(
            left_eye=_smooth_point(cur.left_eye, prev.left_eye, f),
            right_eye=_smooth_point(cur.right_eye, prev.right_eye, f),
            nose_bridge=_smooth_point(cur.nose_bridge, prev.nose_bridge, f),
            left_temple=_smooth_point(cur.left_temple, prev.left_temple, f),
            right_temple=_smooth_point(cur.right_temple, prev.right_temple, f),
            face_width=smooth_value(cur.face_width, prev.face_width, f),
            face_angle=smooth_angle(cur.face_angle, prev.face_angle, self.angle_factor),
            scale=smooth_value(cur.scale, prev.scale, f),
        )
