import logging
import os

from flask import Flask, Response, jsonify, request

from camera_async import AsyncVideoCapture
from detector_backends import (BACKENDS, DEFAULT_FACE_LANDMARKER_MODEL,
                               DEFAULT_LBF_MODEL, create_detector)
from glasses_catalog import DEFAULT_STYLE_ID, GLASSES_STYLES
from landmark_tracker import MIN_FACE_WIDTH as DEFAULT_MIN_FACE_WIDTH
from try_on_session import TryOnSession

logger = logging.getLogger(__name__)


def env_bool(name, default="0"):
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


CAM_INDEX = int(os.environ.get("CAM_INDEX", "0"))
W_CAP = int(os.environ.get("CAP_W", "1280"))
H_CAP = int(os.environ.get("CAP_H", "720"))
DETECTOR_BACKEND = os.environ.get("DETECTOR_BACKEND", "mesh")
FACE_LANDMARKER_MODEL = os.environ.get("FACE_LANDMARKER_MODEL", DEFAULT_FACE_LANDMARKER_MODEL)
LBF_MODEL = os.environ.get("LBF_MODEL", DEFAULT_LBF_MODEL)
MIN_FACE_WIDTH = float(os.environ.get("MIN_FACE_WIDTH", str(DEFAULT_MIN_FACE_WIDTH)))
JPEG_QUALITY = int(os.environ.get("JPEG_QUALITY", "80"))
GLASSES_ART_DIR = os.environ.get("GLASSES_ART_DIR") or None
DEFAULT_STYLE = os.environ.get("DEFAULT_STYLE", DEFAULT_STYLE_ID)
AUTO_START = env_bool("AUTO_START", "0")
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "5000"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

INDEX_HTML = """<!doctype html>
<html>
<head><title>Glasses Virtual Try-On</title></head>
<body style="margin:0;background:#000">
<img src="/stream.mjpg" style="width:100%;height:auto" alt="try-on stream">
</body>
</html>
"""


def build_detector():
    if DETECTOR_BACKEND == "cascade":
        return create_detector("cascade", lbf_model_path=LBF_MODEL)
    return create_detector(DETECTOR_BACKEND, model_path=FACE_LANDMARKER_MODEL)


def build_session():
    if DETECTOR_BACKEND not in BACKENDS:
        raise ValueError(f"DETECTOR_BACKEND must be one of {sorted(BACKENDS)}, got {DETECTOR_BACKEND!r}")
    return TryOnSession(
        camera_factory=lambda: AsyncVideoCapture(src=CAM_INDEX, width=W_CAP, height=H_CAP),
        detector_factory=build_detector,
        style_id=DEFAULT_STYLE,
        art_dir=GLASSES_ART_DIR,
        min_face_width=MIN_FACE_WIDTH,
        jpeg_quality=JPEG_QUALITY,
    )


def create_app(session):
    app = Flask(__name__)
    app.config["TRY_ON_SESSION"] = session

    @app.route("/")
    def root():
        return Response(INDEX_HTML, mimetype="text/html")

    @app.route("/stream.mjpg")
    def stream_jpg():
        return Response(session.mjpeg_frames(),
                        mimetype="multipart/x-mixed-replace; boundary=frame")

    @app.route("/snapshot")
    def snapshot():
        jpeg, ts = session.latest_jpeg()
        if jpeg is None:
            return "no frame yet", 503
        return Response(jpeg, headers={
            "Content-Type": "image/jpeg",
            "Content-Disposition": f'attachment; filename="snapshot_{int(ts)}.jpg"',
        })

    @app.route("/api/styles")
    def api_styles():
        return jsonify(styles=[g.to_dict() for g in GLASSES_STYLES])

    @app.route("/api/state")
    def api_state():
        return jsonify(session.snapshot_state())

    @app.route("/api/start", methods=["POST"])
    def api_start():
        ok = session.start()
        return jsonify(ok=ok, state=session.snapshot_state())

    @app.route("/api/stop", methods=["POST"])
    def api_stop():
        session.stop()
        return jsonify(ok=True, state=session.snapshot_state())

    @app.route("/api/switch_frame", methods=["POST"])
    def api_switch_frame():
        data = request.get_json(force=True, silent=True) or {}
        fid = (data.get("frameId") or data.get("id") or data.get("frame") or "").lower()
        try:
            session.select_style(fid)
        except KeyError:
            return jsonify(ok=False, err="unknown frame id"), 400
        return jsonify(ok=True, frameId=fid)

    @app.route("/api/reset", methods=["POST"])
    def api_reset():
        session.reset()
        return jsonify(ok=True, state=session.snapshot_state())

    return app


def main():
    logging.basicConfig(level=LOG_LEVEL.upper(),
                        format="[%(levelname)s] %(name)s: %(message)s")
    logger.info("Glasses virtual try-on: camera %d at %dx%d, detector=%s",
                CAM_INDEX, W_CAP, H_CAP, DETECTOR_BACKEND)

    session = build_session()
    app = create_app(session)
    if AUTO_START and not session.start():
        logger.warning("Camera not started: %s", session.snapshot_state()["error"])
    try:
        app.run(host=HOST, port=PORT, threaded=True)
    finally:
        session.stop()


if __name__ == "__main__":
    main()
