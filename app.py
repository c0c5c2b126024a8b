"""
Document Auto-Capture Service
Thin coordinator for the layered auto-capture system.

Provides REST API for:
- Starting / stopping the camera-driven capture session
- Polling detection status and retrieving the captured still
- One-shot framing check of an uploaded image
"""
from flask import Flask, jsonify, request
from flask_cors import CORS
import cv2
import logging
import numpy as np
import os

# Import layers
from layer1_capture import CameraHandler, compute_scale
from layer2_detection import DetectionConfig, DetectionPipeline
from layer3_autocapture import CaptureSession

# Import error handling
from error_handlers import (
    ScannerError,
    CameraError,
    SessionError,
    handle_error
)

# Setup logging
logging.basicConfig(
    level=getattr(logging, os.environ.get('LOG_LEVEL', 'INFO').upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

app = Flask(__name__)

# Enable CORS for the capture page served elsewhere
CORS(app, origins=["*"])

# Configuration
CAMERA_INDEX = int(os.environ.get('CAMERA_INDEX', 0))
TICK_INTERVAL_MS = int(os.environ.get('AUTOCAPTURE_INTERVAL_MS', 500))
MAX_TICKS = int(os.environ.get('AUTOCAPTURE_MAX_TICKS', 12000)) or None


def create_session():
    """Build the capture session from environment configuration."""
    config = DetectionConfig.from_env()
    logger.info(f"Detection config: {config.to_dict()}")
    return CaptureSession(
        camera=CameraHandler(camera_index=CAMERA_INDEX),
        config=config,
        interval=TICK_INTERVAL_MS / 1000.0,
        max_ticks=MAX_TICKS,
    )


logger.info("Starting application initialization")
session = create_session()


# ============================================================================
# Session Routes
# ============================================================================

@app.route('/start_camera', methods=['POST'])
def start_camera():
    """Open the camera and start the detection loop"""
    logger.info("Start camera request received")

    try:
        session.start()
        return jsonify({"success": True, "session": session.to_dict()})
    except SessionError as e:
        return jsonify(handle_error(e)), 409
    except CameraError as e:
        return jsonify(handle_error(e)), 503
    except Exception as e:
        return jsonify(handle_error(e)), 500


@app.route('/stop_camera', methods=['POST'])
def stop_camera():
    """Stop the detection loop and release the camera"""
    logger.info("Stop camera request received")
    session.stop()
    return jsonify({"success": True})


@app.route('/detection_status', methods=['GET'])
def detection_status():
    """Current detection state (for feedback display)"""
    return jsonify({
        "success": True,
        "session": session.to_dict(),
        "feedback": session.feedback.messages()
    })


@app.route('/api/capture', methods=['GET'])
def api_capture():
    """Return the captured still once the session has finalized"""
    if session.capture is None:
        return jsonify({
            "success": False,
            "error": "No document captured yet",
            "error_code": "NO_CAPTURE"
        }), 404

    return jsonify({
        "success": True,
        "capture": session.capture.to_dict()
    })


# ============================================================================
# API Endpoints for Microservice Communication
# ============================================================================

@app.route("/health", methods=["GET"])
def health_check():
    """Health check endpoint for service discovery and load balancers"""
    return jsonify({
        "status": "healthy",
        "service": "autocapture-service",
        "version": "1.0.0"
    })


@app.route("/api/detect", methods=["POST"])
def api_detect():
    """
    Run one framing check on an uploaded image.

    Request:
        - multipart/form-data with 'image' field containing the frame

    Response:
        {
            "success": true,
            "detection": { "status": "accepted", "rect": {...}, ... }
        }
    """
    logger.info("API detect request received")

    if 'image' not in request.files:
        return jsonify({
            "success": False,
            "error": "No image file provided",
            "error_code": "NO_IMAGE"
        }), 400

    data = np.frombuffer(request.files['image'].read(), dtype=np.uint8)
    frame = cv2.imdecode(data, cv2.IMREAD_COLOR) if data.size else None
    if frame is None:
        return jsonify({
            "success": False,
            "error": "Could not read image file",
            "error_code": "INVALID_IMAGE"
        }), 400

    try:
        height, width = frame.shape[:2]
        config = session.config
        scale_x, scale_y = compute_scale(
            (width, height),
            (config.container_width, config.container_height)
        )
        # Fresh pipeline: a single upload never builds a stability streak
        pipeline = DetectionPipeline(config=config, scale_x=scale_x, scale_y=scale_y)
        result = pipeline.process(frame)

        return jsonify({
            "success": True,
            "detection": result.to_dict()
        })

    except ScannerError as e:
        return jsonify(handle_error(e)), 422

    except Exception as e:
        return jsonify(handle_error(e)), 500


@app.route("/api/status", methods=["GET"])
def api_status():
    """Get service status and capabilities"""
    return jsonify({
        "success": True,
        "camera_index": CAMERA_INDEX,
        "tick_interval_ms": TICK_INTERVAL_MS,
        "session": session.to_dict(),
        "config": session.config.to_dict(),
        "endpoints": {
            "health": "/health",
            "detect": "/api/detect",
            "capture": "/api/capture",
            "start_camera": "/start_camera",
            "stop_camera": "/stop_camera",
            "detection_status": "/detection_status"
        }
    })


# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == '__main__':
    logger.info("Flask server starting")
    app.run(host='0.0.0.0', port=int(os.environ.get('PORT', 5000)), threaded=True)
