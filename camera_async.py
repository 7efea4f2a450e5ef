# ===== camera_async.py =====
# Threaded camera capture: a reader thread keeps only the newest frame, so a
# slow consumer drops frames instead of queueing them.

import logging
import threading
import time

import cv2

logger = logging.getLogger(__name__)

CAMERA_ERROR_MESSAGES = {
    "denied": "Camera access was denied. Please enable camera permissions and try again.",
    "not_found": "No camera found. Please connect a camera and try again.",
    "other": "Unable to access camera. Please try again.",
}


class CameraError(RuntimeError):
    """Camera could not be acquired. ``reason`` is one of CAMERA_ERROR_MESSAGES."""

    def __init__(self, reason, detail=""):
        if reason not in CAMERA_ERROR_MESSAGES:
            reason = "other"
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason}: {detail}" if detail else reason)

    @property
    def user_message(self):
        return CAMERA_ERROR_MESSAGES[self.reason]


class AsyncVideoCapture:
    """
    Asynchronous video capture - reads frames continuously on a background thread.

    - read() returns the latest frame immediately without waiting on camera IO
    - release() stops the reader thread before releasing the device
    """

    def __init__(self, src=0, width=None, height=None, fps=None, open_timeout=2.0):
        """
        Args:
            src: camera index or video source
            width: capture width
            height: capture height
            fps: target frame rate
            open_timeout: seconds to wait for the first frame

        Raises:
            CameraError: "not_found" if the device cannot be opened,
                "denied" if it opens but never yields a frame.
        """
        self.src = src
        self.running = False
        self.thread = None
        self.lock = threading.Lock()

        try:
            self.cap = cv2.VideoCapture(src)
        except (cv2.error, OSError) as e:
            raise CameraError("other", str(e)) from e

        if not self.cap.isOpened():
            self.cap.release()
            raise CameraError("not_found", f"cannot open camera {src!r}")

        try:
            if width is not None:
                self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
            if height is not None:
                self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
            if fps is not None:
                self.cap.set(cv2.CAP_PROP_FPS, fps)

            # the first frame, retried until the device starts delivering
            deadline = time.monotonic() + open_timeout
            self.ret, self.frame = self.cap.read()
            while not self.ret and time.monotonic() < deadline:
                time.sleep(0.05)
                self.ret, self.frame = self.cap.read()
        except (cv2.error, OSError) as e:
            self.cap.release()
            raise CameraError("other", str(e)) from e

        if not self.ret:
            self.cap.release()
            raise CameraError("denied", f"camera {src!r} opened but delivered no frames")

        self.running = True
        self.thread = threading.Thread(target=self._reader, name="camera-reader", daemon=True)
        self.thread.start()
        logger.info("Camera %r opened (%dx%d)", src,
                    int(self.cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
                    int(self.cap.get(cv2.CAP_PROP_FRAME_HEIGHT)))

    def _reader(self):
        while self.running:
            ret, frame = self.cap.read()
            if ret:
                with self.lock:
                    self.ret = ret
                    self.frame = frame
            else:
                # brief back-off before retrying a failed read
                time.sleep(0.01)

    def read(self):
        """Same return values as cv2.VideoCapture.read(), for the newest frame."""
        with self.lock:
            return self.ret, self.frame.copy() if self.frame is not None else None

    def release(self):
        if self.thread is None:
            return
        self.running = False
        if self.thread.is_alive():
            self.thread.join(timeout=1.0)
        self.thread = None
        self.cap.release()
        logger.info("Camera %r released", self.src)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()

    def __del__(self):
        # __init__ may have failed before the thread existed
        if getattr(self, "thread", None) is not None:
            self.release()
