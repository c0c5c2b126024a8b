"""
Tests for the auto-capture service: Flask endpoints, capture session,
tick scheduler, sinks and the camera handler.
"""
import base64
import json
import threading
import time

import cv2
import numpy as np
import pytest

from error_handlers import (
    CameraInitError,
    CameraNotFoundError,
    CameraNotInitializedError,
    CaptureEncodeError,
    FrameCaptureError,
    ScannerError,
    SessionAlreadyRunningError,
    handle_error,
)
from layer1_capture import CameraHandler, compute_scale
from layer2_detection import DetectionConfig, Rect
from layer3_autocapture import (
    CaptureSession,
    FeedbackLog,
    OverlayCaptureSink,
    RecurringTask,
    SessionStatus,
)


class FakeCamera:
    """Frame source replaying a list of frames (or exceptions)."""

    def __init__(self, frames=None, resolution=(384, 272), init_error=None):
        self.frames = list(frames or [])
        self.resolution = resolution
        self.init_error = init_error
        self.initialized = False
        self.released = 0
        self.reads = 0

    def initialize(self):
        if self.init_error is not None:
            raise self.init_error
        self.initialized = True
        return True

    def get_frame(self):
        self.reads += 1
        item = self.frames[min(self.reads - 1, len(self.frames) - 1)]
        if isinstance(item, Exception):
            raise item
        return item.copy()

    def get_resolution(self):
        return self.resolution

    def release(self):
        self.initialized = False
        self.released += 1


class GatedCamera(FakeCamera):
    """FakeCamera whose reads block until the gate opens."""

    def __init__(self, frames=None):
        super().__init__(frames=frames)
        self.reading = threading.Event()
        self.gate = threading.Event()
        self.events = []

    def get_frame(self):
        self.reading.set()
        self.gate.wait(timeout=5)
        self.events.append('read')
        return super().get_frame()

    def release(self):
        self.events.append('release')
        super().release()


@pytest.fixture
def loose_config():
    return DetectionConfig()


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_returns_ok(self, client):
        response = client.get('/health')
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['status'] == 'healthy'
        assert data['service'] == 'autocapture-service'

    def test_status_lists_config(self, client):
        response = client.get('/api/status')
        data = json.loads(response.data)
        assert data['success'] is True
        assert data['config']['stability_threshold'] >= 1
        assert '/api/detect' in data['endpoints'].values()


class TestDetectEndpoint:
    """One-shot framing check of uploaded images."""

    def test_detect_requires_image(self, client):
        response = client.post('/api/detect', json={}, content_type='application/json')
        assert response.status_code == 400
        data = json.loads(response.data)
        assert data['error_code'] == 'NO_IMAGE'

    def test_detect_rejects_undecodable_image(self, client):
        from io import BytesIO
        response = client.post(
            '/api/detect',
            data={'image': (BytesIO(b'not an image'), 'frame.png')},
            content_type='multipart/form-data'
        )
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'INVALID_IMAGE'

    def test_detect_accepts_framed_document(self, client, document_frame, png_bytes):
        from io import BytesIO
        response = client.post(
            '/api/detect',
            data={'image': (BytesIO(png_bytes(document_frame())), 'frame.png')},
            content_type='multipart/form-data'
        )
        assert response.status_code == 200
        detection = json.loads(response.data)['detection']
        assert detection['status'] == 'accepted'
        assert detection['stable_frames'] == 1
        assert detection['captured'] is False

    def test_detect_reports_blurry(self, client, blank_frame, png_bytes):
        from io import BytesIO
        response = client.post(
            '/api/detect',
            data={'image': (BytesIO(png_bytes(blank_frame)), 'frame.png')},
            content_type='multipart/form-data'
        )
        detection = json.loads(response.data)['detection']
        assert detection['status'] == 'rejected'
        assert detection['reason'] == 'blurry'

    def test_missing_endpoint_returns_404(self, client):
        response = client.get('/api/nonexistent')
        assert response.status_code == 404


class TestSessionEndpoints:
    """Camera-driven session over HTTP."""

    def test_capture_not_ready(self, client, monkeypatch):
        import app as app_module
        monkeypatch.setattr(app_module, 'session', CaptureSession(camera=FakeCamera()))
        response = client.get('/api/capture')
        assert response.status_code == 404

    def test_start_camera_failure(self, client, monkeypatch):
        import app as app_module
        camera = FakeCamera(init_error=CameraInitError(0, reason="permission denied"))
        monkeypatch.setattr(app_module, 'session', CaptureSession(camera=camera))

        response = client.post('/start_camera')
        assert response.status_code == 503
        data = json.loads(response.data)
        assert data['error_code'] == 'CAMERA_INIT_FAILED'

        status = json.loads(client.get('/detection_status').data)
        assert status['session']['status'] == 'failed'

    def test_full_session_captures(self, client, monkeypatch, document_frame):
        import app as app_module
        camera = FakeCamera(frames=[document_frame()])
        session = CaptureSession(camera=camera, interval=0.01)
        monkeypatch.setattr(app_module, 'session', session)

        assert client.post('/start_camera').status_code == 200

        deadline = time.time() + 5
        while session.status is not SessionStatus.CAPTURED and time.time() < deadline:
            time.sleep(0.02)

        response = client.get('/api/capture')
        assert response.status_code == 200
        capture = json.loads(response.data)['capture']
        assert capture['image'].startswith('data:image/png;base64,')

        status = json.loads(client.get('/detection_status').data)
        assert status['session']['status'] == 'captured'
        assert status['session']['stable_frames'] == 5

        assert client.post('/stop_camera').status_code == 200
        assert camera.released == 1


class TestCaptureSession:
    """Tick driver between camera, pipeline and sinks."""

    def test_captures_after_five_steady_ticks(self, document_frame, loose_config):
        session = CaptureSession(camera=FakeCamera(frames=[document_frame()]), config=loose_config)
        session.open()

        keep_going = [session.tick() for _ in range(5)]

        assert keep_going == [True, True, True, True, False]
        assert session.status is SessionStatus.CAPTURED
        assert session.capture is not None
        assert session.feedback.latest == "Document captured!"

    def test_capture_rect_scaled_to_native(self, document_frame, loose_config):
        # 768x544 camera, container 384x272
        frame = cv2.resize(document_frame(), (768, 544), interpolation=cv2.INTER_NEAREST)
        camera = FakeCamera(frames=[frame], resolution=(768, 544))
        session = CaptureSession(camera=camera, config=loose_config)
        session.open()

        while session.tick():
            pass

        assert session.pipeline.scale_x == pytest.approx(2.0)
        assert session.capture.rect.x == pytest.approx(120, abs=6)
        assert session.capture.rect.width == pytest.approx(460, abs=8)

    def test_frame_failure_skips_tick(self, document_frame, loose_config):
        frames = [document_frame(), FrameCaptureError(), document_frame()]
        session = CaptureSession(camera=FakeCamera(frames=frames), config=loose_config)
        session.open()

        assert session.tick()
        assert session.tick()
        assert session.skipped_ticks == 1
        # Skipped tick never reached the pipeline, so the streak continues
        assert session.tick()
        assert session.pipeline.state.consecutive_stable_frames == 2

    def test_camera_start_failure_is_fatal(self, loose_config):
        camera = FakeCamera(init_error=CameraNotFoundError(7))
        session = CaptureSession(camera=camera, config=loose_config)

        with pytest.raises(CameraNotFoundError):
            session.start()

        assert session.status is SessionStatus.FAILED
        assert session.scheduler is None
        assert session.error['error_code'] == 'CAMERA_NOT_FOUND'
        assert "Camera error" in session.feedback.latest

    def test_tick_after_capture_is_noop(self, document_frame, loose_config):
        camera = FakeCamera(frames=[document_frame()])
        session = CaptureSession(camera=camera, config=loose_config.with_overrides(stability_threshold=1))
        session.open()
        assert session.tick() is False
        reads = camera.reads
        assert session.tick() is False
        assert camera.reads == reads

    def test_reopen_resets_state(self, document_frame, loose_config):
        session = CaptureSession(camera=FakeCamera(frames=[document_frame()]),
                                 config=loose_config.with_overrides(stability_threshold=1))
        session.open()
        session.tick()
        assert session.status is SessionStatus.CAPTURED

        session.open()
        assert session.status is SessionStatus.RUNNING
        assert session.capture is None
        assert session.pipeline.state.consecutive_stable_frames == 0

    def test_start_twice_is_rejected(self, document_frame, loose_config):
        session = CaptureSession(camera=FakeCamera(frames=[document_frame()]),
                                 config=loose_config, interval=5.0)
        session.start()
        try:
            with pytest.raises(SessionAlreadyRunningError):
                session.start()
        finally:
            session.stop()
        assert session.status is SessionStatus.IDLE

    def test_sink_failure_retries_on_next_tick(self, document_frame, loose_config):
        attempts = []
        real_sink = OverlayCaptureSink()

        def flaky_sink(frame, rect):
            attempts.append(rect)
            if len(attempts) == 1:
                raise CaptureEncodeError("disk full")
            return real_sink(frame, rect)

        session = CaptureSession(camera=FakeCamera(frames=[document_frame()]),
                                 config=loose_config.with_overrides(stability_threshold=2),
                                 capture_sink=flaky_sink)
        session.open()
        assert session.tick() is True
        with pytest.raises(CaptureEncodeError):
            session.tick()

        assert session.status is SessionStatus.RUNNING
        assert not session.pipeline.captured
        assert session.capture is None

        assert session.tick() is False
        assert session.status is SessionStatus.CAPTURED
        assert session.capture is not None
        assert len(attempts) == 2

    def test_resolution_fallback_read_failure_is_fatal(self, document_frame, loose_config):
        camera = FakeCamera(frames=[document_frame()])
        session = CaptureSession(camera=camera, config=loose_config.with_overrides(stability_threshold=1))
        session.open()
        session.tick()
        assert session.status is SessionStatus.CAPTURED

        # Driver reports no mode and the first read fails
        camera.resolution = (0, 0)
        camera.frames = [FrameCaptureError(reason="timeout")]
        camera.reads = 0
        with pytest.raises(FrameCaptureError):
            session.start()

        assert session.status is SessionStatus.FAILED
        assert session.scheduler is None
        assert session.pipeline is None
        assert session.capture is None
        assert session.error['error_code'] == 'FRAME_CAPTURE_FAILED'
        assert "Camera error" in session.feedback.latest
        assert camera.released == 1
        assert 'capture' not in session.to_dict()

    def test_stop_waits_for_tick_in_flight(self, document_frame, loose_config):
        camera = GatedCamera(frames=[document_frame()])
        session = CaptureSession(camera=camera, config=loose_config, interval=0.01)
        session.start()
        assert camera.reading.wait(timeout=5)

        stopper = threading.Thread(target=session.stop)
        stopper.start()
        time.sleep(0.1)
        assert camera.released == 0

        camera.gate.set()
        stopper.join(timeout=5)
        assert not stopper.is_alive()
        assert camera.events == ['read', 'release']


class TestRecurringTask:
    """Single-flight fixed-interval scheduler."""

    def test_overlapping_tick_is_dropped(self):
        inner = []

        def callback():
            # Simulate the timer firing while this pass is still running
            inner.append(task.fire())
            return True

        task = RecurringTask(callback, period=1.0)
        assert task.fire() is True
        assert inner == [False]
        assert task.ticks == 1
        assert task.dropped_ticks == 1

    def test_callback_false_stops_once(self):
        task = RecurringTask(lambda: False, period=1.0)
        task.fire()
        assert task.stopped
        assert task.fire() is False
        assert task.stop() is False

    def test_tick_cap(self):
        task = RecurringTask(lambda: True, period=1.0, max_ticks=3)
        for _ in range(5):
            task.fire()
        assert task.ticks == 3
        assert task.stopped

    def test_failing_tick_does_not_stop(self):
        def callback():
            raise RuntimeError("transient")

        task = RecurringTask(callback, period=1.0, max_ticks=None)
        task.fire()
        task.fire()
        assert task.ticks == 2
        assert not task.stopped

    def test_background_thread_runs_until_stop(self):
        done = threading.Event()
        calls = []

        def callback():
            calls.append(1)
            if len(calls) >= 3:
                done.set()
                return False
            return True

        task = RecurringTask(callback, period=0.01)
        task.start()
        assert done.wait(timeout=5)
        task.join(timeout=1)
        assert task.stopped
        assert len(calls) == 3

    def test_no_tick_runs_after_stop_and_wait_idle(self):
        started = threading.Event()
        gate = threading.Event()
        calls = []

        def callback():
            calls.append(1)
            started.set()
            gate.wait(timeout=5)
            return True

        task = RecurringTask(callback, period=0.01, max_ticks=None)
        task.start()
        assert started.wait(timeout=5)
        task.stop()
        assert task.wait_idle(timeout=0.05) is False

        gate.set()
        assert task.wait_idle(timeout=5) is True
        task.join(timeout=1)
        assert task.fire() is False
        assert len(calls) == 1

    def test_invalid_period(self):
        with pytest.raises(ValueError):
            RecurringTask(lambda: True, period=0)


class TestSinks:
    """Capture overlay/encoding and feedback feed."""

    def test_capture_record(self, document_frame):
        frame = document_frame()
        sink = OverlayCaptureSink()
        record = sink(frame, Rect(60, 40, 230, 180))

        assert sink.last_capture is record
        assert np.array_equal(record.image, frame)
        assert not np.array_equal(record.overlay, frame)
        # Green outline on the top edge
        assert tuple(record.overlay[40, 150]) == (0, 255, 0)

        payload = base64.b64decode(record.data_url.split(',', 1)[1])
        decoded = cv2.imdecode(np.frombuffer(payload, np.uint8), cv2.IMREAD_COLOR)
        assert np.array_equal(decoded, frame)

    def test_capture_does_not_touch_source(self, document_frame):
        frame = document_frame()
        before = frame.copy()
        OverlayCaptureSink()(frame, Rect(60, 40, 230, 180))
        assert np.array_equal(frame, before)

    def test_record_to_dict(self, document_frame):
        record = OverlayCaptureSink()(document_frame(), Rect(60, 40, 230, 180))
        data = record.to_dict(include_image=False)
        assert data['rect'] == {'x': 60, 'y': 40, 'width': 230, 'height': 180}
        assert data['size'] == (384, 272)
        assert 'image' not in data

    def test_feedback_keeps_latest(self):
        feedback = FeedbackLog(maxlen=2)
        assert feedback.latest is None
        for message in ("a", "b", "c"):
            feedback(message)
        assert feedback.messages() == ["b", "c"]
        assert feedback.latest == "c"


class TestCameraHandler:
    """Camera initialization errors and scale factors."""

    def test_missing_device(self):
        camera = CameraHandler(camera_index=99)
        with pytest.raises(CameraNotFoundError):
            camera.initialize()

    def test_frame_before_init(self):
        with pytest.raises(CameraNotInitializedError):
            CameraHandler(camera_index=99).get_frame()

    def test_release_without_init(self):
        camera = CameraHandler(camera_index=99)
        camera.release()
        assert not camera.is_opened()

    def test_compute_scale(self):
        assert compute_scale((1920, 1080), (384, 272)) == (5.0, 1080 / 272)

    def test_compute_scale_rejects_unknown_resolution(self):
        with pytest.raises(ValueError):
            compute_scale((0, 0), (384, 272))


class TestErrorHandling:
    """Consistent error bodies."""

    def test_scanner_error_dict(self):
        body = handle_error(FrameCaptureError(reason="timeout"))
        assert body['success'] is False
        assert body['error_code'] == 'FRAME_CAPTURE_FAILED'
        assert body['details']['reason'] == 'timeout'

    def test_unexpected_error_dict(self):
        body = handle_error(ValueError("bad"))
        assert body['error_code'] == 'UNEXPECTED_ERROR'
        assert body['details']['error_type'] == 'ValueError'

    def test_camera_errors_point_at_service_fixes(self):
        not_started = CameraNotInitializedError().to_dict()
        assert '/start_camera' in not_started['details']['suggestion']

        busy = CameraInitError(2, reason="device busy").to_dict()
        assert busy['details']['device'] == '/dev/video2'
        assert busy['details']['reason'] == 'device busy'
        assert '/dev/video2' in busy['error']

    def test_hierarchy(self):
        assert isinstance(CameraInitError(0), ScannerError)
