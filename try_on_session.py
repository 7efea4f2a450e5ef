import logging
import threading
import time
from typing import Callable, Dict, Optional

import cv2
import numpy as np

from camera_async import AsyncVideoCapture, CameraError
from detector_backends import DetectorInitError, create_detector
from face_landmarks import LandmarkLayoutError, LandmarkRecord
from glasses_catalog import DEFAULT_STYLE_ID, get_style, load_sprite
from landmark_tracker import MIN_FACE_WIDTH, LandmarkTracker
from overlay_transform import compute_placement, render_overlay

logger = logging.getLogger(__name__)

PERF_LOG_EVERY = 120


class TryOnSession:
    """
    One live try-on: camera -> detector -> tracker -> overlay.

    Lifecycle:
        start()  acquire the camera and launch the detection loop
        stop()   cancel the loop and wait for it to exit

    The loop thread owns the camera and detector: when it exits it closes
    the detector, then releases the camera. Tracker updates and resets are
    serialized through ``_tracker_lock``.

    Camera and detector failures are reported through ``snapshot_state()``
    instead of raised, so the HTTP layer can keep serving.
    """

    def __init__(self,
                 camera_factory: Optional[Callable] = None,
                 detector_factory: Optional[Callable] = None,
                 style_id: str = DEFAULT_STYLE_ID,
                 art_dir: Optional[str] = None,
                 min_face_width: float = MIN_FACE_WIDTH,
                 jpeg_quality: int = 80):
        get_style(style_id)
        self.camera_factory = camera_factory or AsyncVideoCapture
        self.detector_factory = detector_factory or (lambda: create_detector("mesh"))
        self.default_style_id = style_id
        self.art_dir = art_dir
        self.jpeg_quality = jpeg_quality

        self.tracker = LandmarkTracker(on_update=self._on_landmarks,
                                       min_face_width=min_face_width)
        self._tracker_lock = threading.Lock()

        self.state_lock = threading.Lock()
        self.style_id = style_id
        self.permission: Optional[str] = None
        self.error: Optional[str] = None
        self.loading = False
        self.tracking_error: Optional[str] = None
        self.face_detected = False
        self.landmarks: Optional[LandmarkRecord] = None
        self.last_jpeg: Optional[bytes] = None
        self.last_ts = 0.0

        self._detector = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @property
    def running(self) -> bool:
        return self._thread is not None and not self._stop_event.is_set()

    # ------------------------------------------------------------------ lifecycle

    def start(self) -> bool:
        """
        Acquire the camera and start tracking.

        False if the camera is unavailable, or if a previous loop is still
        shutting down after a timed-out stop().
        """
        if self.running:
            return True
        if self._thread is not None:
            if self._thread.is_alive():
                logger.warning("Previous detection loop is still shutting down")
                return False
            self._thread = None

        try:
            camera = self.camera_factory()
        except CameraError as e:
            logger.warning("Camera unavailable (%s): %s", e.reason, e.detail or e)
            with self.state_lock:
                self.permission = e.reason
                self.error = e.user_message
            return False

        with self.state_lock:
            self.permission = "granted"
            self.error = None
            self.loading = True
            self.tracking_error = None

        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run, args=(camera, self._stop_event),
                                        name="detection-loop", daemon=True)
        self._thread.start()
        return True

    def stop(self, timeout: Optional[float] = None) -> bool:
        """
        Cancel the detection loop and wait for it to tear down.

        The loop closes the detector and then releases the camera on its way
        out. Returns False if ``timeout`` expired first; the loop still
        finishes its teardown, and start() is refused until it has.
        """
        thread = self._thread
        if thread is not None:
            self._stop_event.set()
            if thread is not threading.current_thread():
                thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Detection loop did not exit within %ss", timeout)
            else:
                self._thread = None

        with self.state_lock:
            self.loading = False
            self.face_detected = False
            self.landmarks = None
        return self._thread is None

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()

    # ------------------------------------------------------------------ loop

    def _load_detector(self):
        detector = self.detector_factory()
        try:
            detector.load()
        except DetectorInitError as e:
            logger.error("Face tracking unavailable, streaming raw video: %s", e)
            with self.state_lock:
                self.tracking_error = str(e)
            detector.close()
            return None
        finally:
            with self.state_lock:
                self.loading = False
        return detector

    def _run(self, camera, stop_event: threading.Event):
        try:
            self._detector = self._load_detector()

            frames = 0
            t_prev = time.perf_counter()
            while not stop_event.is_set():
                ok, frame = camera.read()
                if not ok or frame is None:
                    stop_event.wait(0.01)
                    continue

                self.process_frame(frame)

                frames += 1
                if frames % PERF_LOG_EVERY == 0:
                    t = time.perf_counter()
                    logger.debug("Processed %d frames, %.1f FPS", frames, PERF_LOG_EVERY / (t - t_prev))
                    t_prev = t
        finally:
            self._close_detector()
            camera.release()
            logger.info("Detection loop stopped")

    def _close_detector(self):
        detector, self._detector = self._detector, None
        if detector is not None:
            detector.close()

    def _detect(self, frame):
        if self._detector is None:
            return None
        try:
            return self._detector.detect(frame, int(time.monotonic() * 1000))
        except (cv2.error, RuntimeError, ValueError) as e:
            logger.warning("Detection failed on frame, treating as no face: %s", e)
            return None

    def process_frame(self, frame: np.ndarray) -> np.ndarray:
        """Track one camera frame and return the mirrored frame with the overlay."""
        detection = self._detect(frame)
        with self._tracker_lock:
            try:
                self.tracker.process(detection)
            except LandmarkLayoutError as e:
                logger.error("Detector output does not match its layout, tracking disabled: %s", e)
                with self.state_lock:
                    self.tracking_error = str(e)
                self._close_detector()
                self.tracker.process(None)

        display = cv2.flip(frame, 1)
        H, W = display.shape[:2]
        with self.state_lock:
            style = get_style(self.style_id)
            landmarks = self.landmarks

        placement = compute_placement(landmarks, style, W, H)
        display = render_overlay(display, placement, load_sprite(style, self.art_dir))

        ok, buf = cv2.imencode(".jpg", display, [cv2.IMWRITE_JPEG_QUALITY, self.jpeg_quality])
        if ok:
            with self.state_lock:
                self.last_jpeg = buf.tobytes()
                self.last_ts = time.time()
        return display

    def _on_landmarks(self, landmarks: Optional[LandmarkRecord], face_detected: bool):
        with self.state_lock:
            self.landmarks = landmarks
            self.face_detected = face_detected

    # ------------------------------------------------------------------ controls

    def select_style(self, style_id: str):
        """Switch glasses. Tracking state is kept: it describes the face, not the frame."""
        style = get_style(style_id)
        with self.state_lock:
            self.style_id = style.id
        logger.info("Switched to %s (%s)", style.id, style.name)

    def reset(self):
        """Cold-start tracking and go back to the default style; waits for any frame in flight."""
        with self._tracker_lock:
            self.tracker.reset()
            with self.state_lock:
                self.style_id = self.default_style_id
                self.landmarks = None
                self.face_detected = False

    def latest_jpeg(self):
        with self.state_lock:
            return self.last_jpeg, self.last_ts

    def snapshot_state(self) -> Dict:
        with self.state_lock:
            style = get_style(self.style_id)
            return {
                "permission": self.permission,
                "error": self.error,
                "running": self.running,
                "loading": self.loading,
                "faceDetected": self.face_detected,
                "trackingError": self.tracking_error,
                "frameId": style.id,
                "frameName": style.name,
            }

    def mjpeg_frames(self, poll_interval: float = 0.01):
        """Multipart JPEG chunks for every new frame while the session runs."""
        sent = None
        while self.running:
            jpeg, _ = self.latest_jpeg()
            if jpeg is None or jpeg is sent:
                time.sleep(poll_interval)
                continue
            sent = jpeg
            yield b"--frame\r\nContent-Type: image/jpeg\r\n\r\n" + jpeg + b"\r\n"
