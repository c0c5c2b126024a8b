"""
Tests for the detection core: sharpness, geometry, selection,
stability and the per-tick pipeline.
"""
import numpy as np
import pytest

from error_handlers import ConfigError, InvalidFrameError
from layer2_detection import (
    CandidateSelector,
    ContourGeometryValidator,
    DetectionConfig,
    DetectionPipeline,
    DetectionStatus,
    FrameScope,
    OpenCVVisionOps,
    Phase,
    Rect,
    RejectReason,
    SharpnessEvaluator,
    StabilityState,
    StabilityTracker,
    STRICT,
    are_rects_similar,
)


class TestSharpness:
    """Laplacian-variance focus score."""

    def test_deterministic(self, document_frame):
        vision = OpenCVVisionOps()
        gray = vision.to_grayscale(document_frame())
        evaluator = SharpnessEvaluator(vision)
        assert evaluator.evaluate(gray) == evaluator.evaluate(gray)

    def test_flat_frame_scores_zero(self, blank_frame):
        vision = OpenCVVisionOps()
        gray = vision.to_grayscale(blank_frame)
        assert SharpnessEvaluator(vision).evaluate(gray) == 0.0

    def test_empty_frame_scores_zero(self):
        gray = np.zeros((0, 0), np.uint8)
        assert SharpnessEvaluator().evaluate(gray) == 0.0

    def test_population_variance(self, scripted_vision):
        # Response [-10, 10]: mean 0, population variance 100 (sample variance would be 200)
        vision = scripted_vision(sharpness=100.0)
        assert SharpnessEvaluator(vision).evaluate(object()) == pytest.approx(100.0)

    def test_edges_are_sharper_than_blur(self, document_frame):
        import cv2
        vision = OpenCVVisionOps()
        frame = document_frame()
        blurred = cv2.GaussianBlur(frame, (31, 31), 0)
        evaluator = SharpnessEvaluator(vision)
        assert evaluator.evaluate(vision.to_grayscale(frame)) > evaluator.evaluate(vision.to_grayscale(blurred))


class TestGeometryValidator:
    """Containment, area fraction and aspect ratio checks."""

    @pytest.fixture
    def square_config(self):
        return DetectionConfig(container_width=100, container_height=100,
                               min_area_fraction=0.3, max_area_fraction=0.9,
                               min_aspect_ratio=0.1, max_aspect_ratio=4.0)

    def _validate(self, config, scripted_vision, fake_contour, rect, scale=(1.0, 1.0)):
        vision = scripted_vision()
        validator = ContourGeometryValidator(config, vision)
        polygon = vision.approx_polygon(fake_contour(rect=rect), 0, True)
        return validator.validate(polygon, *scale)

    def test_area_at_lower_bound_is_accepted(self, square_config, scripted_vision, fake_contour):
        result = self._validate(square_config, scripted_vision, fake_contour, (0, 0, 30, 100))
        assert result == Rect(0, 0, 30, 100)

    def test_area_above_upper_bound_is_rejected(self, square_config, scripted_vision, fake_contour):
        result = self._validate(square_config, scripted_vision, fake_contour, (0, 0, 90.01, 100))
        assert result is RejectReason.AREA_OUT_OF_RANGE

    def test_area_at_upper_bound_is_accepted(self, square_config, scripted_vision, fake_contour):
        result = self._validate(square_config, scripted_vision, fake_contour, (0, 0, 90, 100))
        assert isinstance(result, Rect)

    def test_outside_container(self, scenario_config, scripted_vision, fake_contour):
        result = self._validate(scenario_config, scripted_vision, fake_contour, (200, 40, 230, 180))
        assert result is RejectReason.OUTSIDE_CONTAINER

    def test_negative_origin_is_outside(self, scenario_config, scripted_vision, fake_contour):
        result = self._validate(scenario_config, scripted_vision, fake_contour, (-1, 40, 230, 180))
        assert result is RejectReason.OUTSIDE_CONTAINER

    def test_aspect_ratio(self, scenario_config, scripted_vision, fake_contour):
        # 180x230 is portrait: area fine, aspect 0.78 < 1.0
        result = self._validate(scenario_config, scripted_vision, fake_contour, (50, 20, 180, 230))
        assert result is RejectReason.ASPECT_OUT_OF_RANGE

    def test_containment_reported_before_area(self, scenario_config, scripted_vision, fake_contour):
        result = self._validate(scenario_config, scripted_vision, fake_contour, (-10, -10, 10, 10))
        assert result is RejectReason.OUTSIDE_CONTAINER

    def test_rescaled_to_container_space(self, scenario_config, scripted_vision, fake_contour):
        # 768x544 camera on a 384x272 container
        result = self._validate(scenario_config, scripted_vision, fake_contour,
                                (100, 80, 460, 360), scale=(2.0, 2.0))
        assert result == Rect(50, 40, 230, 180)

    def test_report_describes_values(self, scenario_config, scripted_vision, fake_contour):
        vision = scripted_vision()
        validator = ContourGeometryValidator(scenario_config, vision)
        polygon = vision.approx_polygon(fake_contour(rect=(50, 40, 200, 150)), 0, True)
        report = validator.describe(polygon, 1.0, 1.0)
        assert report.inside
        assert report.area_ratio == pytest.approx(30000 / 104448)
        assert "area_out_of_range" in report.describe(0)


class TestCandidateSelector:
    """Largest accepted quadrilateral wins."""

    @pytest.fixture
    def config(self):
        return DetectionConfig(container_width=100, container_height=100,
                               min_area_fraction=0.0, max_area_fraction=1.0,
                               min_aspect_ratio=0.1, max_aspect_ratio=10.0)

    def test_picks_largest_regardless_of_order(self, config, scripted_vision, fake_contour):
        small = fake_contour(rect=(0, 0, 10, 10))     # area 100
        large = fake_contour(rect=(20, 20, 10, 15))   # area 150
        vision = scripted_vision()
        selector = CandidateSelector(config, vision)

        assert selector.select_best([small, large], 1.0, 1.0) == Rect(20, 20, 10, 15)
        assert selector.select_best([large, small], 1.0, 1.0) == Rect(20, 20, 10, 15)

    def test_tie_keeps_first(self, config, scripted_vision, fake_contour):
        first = fake_contour(rect=(0, 0, 10, 10))
        second = fake_contour(rect=(50, 50, 10, 10))
        selector = CandidateSelector(config, scripted_vision())
        assert selector.select_best([first, second], 1.0, 1.0) == Rect(0, 0, 10, 10)

    def test_non_quads_never_reach_validation(self, config, scripted_vision, fake_contour):
        triangle = fake_contour(rect=(0, 0, 50, 50), vertices=3)
        concave = fake_contour(rect=(0, 0, 60, 60), convex=False)
        selection = CandidateSelector(config, scripted_vision()).select([triangle, concave], 1.0, 1.0)
        assert selection.best is None
        assert selection.quads == 0
        assert len(selection.debug) == 2

    def test_rejected_quads_are_reported(self, scenario_config, scripted_vision, fake_contour):
        selection = CandidateSelector(scenario_config, scripted_vision()).select(
            [fake_contour(rect=(50, 40, 200, 150))], 1.0, 1.0
        )
        assert selection.best is None
        assert selection.rejections[0].reason is RejectReason.AREA_OUT_OF_RANGE

    def test_tolerance_proportional_to_perimeter(self, config, scripted_vision, fake_contour):
        tolerances = []
        vision = scripted_vision()
        original = vision.approx_polygon

        def spy(contour, tolerance, closed):
            tolerances.append((tolerance, closed))
            return original(contour, tolerance, closed)

        vision.approx_polygon = spy
        CandidateSelector(config, vision).select([fake_contour(rect=(0, 0, 10, 10))], 1.0, 1.0)
        # arc_length is 100 in the double
        assert tolerances == [(pytest.approx(2.0), True)]

    def test_empty(self, config, scripted_vision):
        assert CandidateSelector(config, scripted_vision()).select_best([], 1.0, 1.0) is None


class TestStabilityTracker:
    """State machine over successive accepted rects."""

    def _run(self, tracker, candidates):
        state = StabilityState()
        captures = []
        for candidate in candidates:
            state, captured_now = tracker.transition(state, candidate)
            captures.append(captured_now)
        return state, captures

    def test_similarity_is_strict(self):
        base = Rect(0, 0, 100, 100)
        assert are_rects_similar(base, Rect(9.9, 9.9, 119.9, 119.9))
        assert not are_rects_similar(base, Rect(10, 0, 100, 100))
        assert not are_rects_similar(base, Rect(0, 0, 120, 100))

    def test_five_similar_rects_capture_once(self, scenario_config):
        tracker = StabilityTracker(scenario_config)
        rects = [Rect(50 + 9 * i, 40 + 9 * i, 230 + 19 * i, 180 + 19 * i) for i in range(5)]

        state = StabilityState()
        counts = []
        captures = []
        for rect in rects:
            state, captured_now = tracker.transition(state, rect)
            counts.append(state.consecutive_stable_frames)
            captures.append(captured_now)

        assert counts == [1, 2, 3, 4, 5]
        assert captures == [False, False, False, False, True]
        assert state.phase is Phase.CAPTURED

    def test_miss_zeroes_streak_but_keeps_previous(self, scenario_config):
        tracker = StabilityTracker(scenario_config)
        rect = Rect(50, 40, 230, 180)

        state, _ = self._run(tracker, [rect, rect])
        state, captured_now = tracker.transition(state, None)
        assert state.consecutive_stable_frames == 0
        assert state.previous_rect == rect
        assert state.phase is Phase.SEARCHING
        assert not captured_now

    def test_miss_delays_capture(self, scenario_config):
        tracker = StabilityTracker(scenario_config)
        rect = Rect(50, 40, 230, 180)
        sequence = [rect, rect, None, rect, rect, rect, rect, rect]

        _, captures = self._run(tracker, sequence)
        assert captures == [False] * 7 + [True]

    def test_dissimilar_restarts_at_one(self, scenario_config):
        tracker = StabilityTracker(scenario_config)
        state, _ = self._run(tracker, [Rect(50, 40, 230, 180)] * 3)
        state, _ = tracker.transition(state, Rect(100, 40, 230, 180))
        assert state.consecutive_stable_frames == 1
        assert state.previous_rect == Rect(100, 40, 230, 180)
        assert state.phase is Phase.STABILIZING

    def test_captured_is_terminal(self, scenario_config):
        tracker = StabilityTracker(scenario_config)
        rect = Rect(50, 40, 230, 180)
        state, captures = self._run(tracker, [rect] * 7 + [None, Rect(0, 0, 10, 10)])
        assert captures.count(True) == 1
        assert state.phase is Phase.CAPTURED
        assert state.previous_rect == rect

    def test_transition_does_not_mutate_input(self, scenario_config):
        tracker = StabilityTracker(scenario_config)
        initial = StabilityState()
        tracker.transition(initial, Rect(0, 0, 10, 10))
        assert initial == StabilityState()


class TestDetectionPipeline:
    """Per-tick orchestration."""

    def test_blurry_frame_skips_contour_search(self, scenario_config, scripted_vision):
        vision = scripted_vision(sharpness=50.0, rects=[(50, 40, 230, 180)])
        pipeline = DetectionPipeline(scenario_config, vision)

        result = pipeline.process(object())

        assert result.status is DetectionStatus.REJECTED
        assert result.reason is RejectReason.BLURRY
        assert vision.calls['gaussian_blur'] == 0
        assert vision.calls['find_external_contours'] == 0

    def test_blurry_frame_resets_streak(self, scenario_config, scripted_vision):
        vision = scripted_vision(rects=[(50, 40, 230, 180)])
        pipeline = DetectionPipeline(scenario_config, vision)
        pipeline.process(object())
        pipeline.process(object())
        assert pipeline.state.consecutive_stable_frames == 2

        vision.sharpness = 10.0
        pipeline.process(object())
        assert pipeline.state.consecutive_stable_frames == 0
        assert pipeline.state.previous_rect == Rect(50, 40, 230, 180)

    def test_undersized_document_never_captures(self, scenario_config, scripted_vision):
        vision = scripted_vision(sharpness=200.0, rects=[(50, 40, 200, 150)])
        sink_calls = []
        pipeline = DetectionPipeline(scenario_config, vision,
                                     capture_sink=lambda frame, rect: sink_calls.append(rect))

        for _ in range(5):
            result = pipeline.process(object())
            assert result.sharpness == pytest.approx(200.0)
            assert result.status is DetectionStatus.REJECTED
            assert result.reason is RejectReason.AREA_OUT_OF_RANGE
            assert pipeline.state.consecutive_stable_frames == 0

        assert sink_calls == []
        assert not pipeline.captured

    def test_well_framed_document_captures_on_fifth_tick(self, scenario_config, scripted_vision):
        vision = scripted_vision(sharpness=200.0, rects=[(50, 40, 230, 180)])
        sink_calls = []
        pipeline = DetectionPipeline(scenario_config, vision,
                                     capture_sink=lambda frame, rect: sink_calls.append(rect) or "record")

        results = [pipeline.process(object()) for _ in range(5)]

        assert [r.status for r in results] == [DetectionStatus.ACCEPTED] * 5
        assert [r.captured for r in results] == [False, False, False, False, True]
        assert results[-1].capture == "record"
        assert sink_calls == [Rect(50, 40, 230, 180)]

    def test_capture_rect_in_native_pixels(self, scenario_config, scripted_vision):
        vision = scripted_vision(rects=[(100, 80, 460, 360)])
        sink_calls = []
        config = scenario_config.with_overrides(stability_threshold=1)
        pipeline = DetectionPipeline(config, vision, scale_x=2.0, scale_y=2.0,
                                     capture_sink=lambda frame, rect: sink_calls.append(rect))

        result = pipeline.process(object())

        assert result.rect == Rect(50, 40, 230, 180)
        assert sink_calls == [Rect(100, 80, 460, 360)]

    def test_no_contours(self, scenario_config, scripted_vision):
        pipeline = DetectionPipeline(scenario_config, scripted_vision(rects=[]))
        result = pipeline.process(object())
        assert result.status is DetectionStatus.NO_CANDIDATE

    @pytest.mark.parametrize("sharpness,rects", [
        (10.0, [(50, 40, 230, 180)]),       # blurry early return
        (200.0, []),                        # no contour
        (200.0, [(50, 40, 200, 150)]),      # rejected
        (200.0, [(50, 40, 230, 180), (60, 50, 100, 100)]),  # accepted
    ])
    def test_every_buffer_released_once(self, scenario_config, scripted_vision, sharpness, rects):
        vision = scripted_vision(sharpness=sharpness, rects=rects)
        pipeline = DetectionPipeline(scenario_config, vision)
        frame = object()

        pipeline.process(frame)

        assert vision.releases[id(frame)] == 1
        assert vision.created
        for handle in vision.created:
            assert vision.releases[id(handle)] == 1, handle

    def test_buffers_released_on_capture(self, scenario_config, scripted_vision):
        vision = scripted_vision(rects=[(50, 40, 230, 180)])
        pipeline = DetectionPipeline(scenario_config.with_overrides(stability_threshold=1), vision,
                                     capture_sink=lambda frame, rect: None)
        frame = object()
        result = pipeline.process(frame)

        assert result.captured
        assert vision.releases[id(frame)] == 1
        assert all(vision.releases[id(h)] == 1 for h in vision.created)

    def test_buffers_released_when_sink_fails(self, scenario_config, scripted_vision):
        vision = scripted_vision(rects=[(50, 40, 230, 180)])

        def broken_sink(frame, rect):
            raise RuntimeError("encoder down")

        pipeline = DetectionPipeline(scenario_config.with_overrides(stability_threshold=1), vision,
                                     capture_sink=broken_sink)
        frame = object()
        with pytest.raises(RuntimeError):
            pipeline.process(frame)

        assert vision.releases[id(frame)] == 1
        assert all(vision.releases[id(h)] == 1 for h in vision.created)

    def test_capture_not_committed_when_sink_fails(self, scenario_config, scripted_vision):
        calls = []

        def flaky_sink(frame, rect):
            calls.append(rect)
            if len(calls) == 1:
                raise RuntimeError("encoder down")
            return "stored"

        pipeline = DetectionPipeline(scenario_config.with_overrides(stability_threshold=3),
                                     scripted_vision(rects=[(50, 40, 230, 180)]),
                                     capture_sink=flaky_sink)
        pipeline.process(object())
        pipeline.process(object())
        with pytest.raises(RuntimeError):
            pipeline.process(object())

        assert not pipeline.captured
        assert pipeline.state.phase is Phase.STABILIZING
        assert pipeline.state.consecutive_stable_frames == 2

        # Next tick retries the capture
        result = pipeline.process(object())
        assert result.captured
        assert result.capture == "stored"
        assert pipeline.captured
        assert len(calls) == 2

    def test_reset_restores_initial_state(self, scenario_config, scripted_vision):
        pipeline = DetectionPipeline(scenario_config.with_overrides(stability_threshold=1),
                                     scripted_vision(rects=[(50, 40, 230, 180)]))
        pipeline.process(object())
        assert pipeline.captured

        pipeline.reset()
        assert pipeline.state == StabilityState()

    def test_feedback_messages(self, scenario_config, scripted_vision):
        messages = []
        pipeline = DetectionPipeline(scenario_config, scripted_vision(sharpness=50.0),
                                     feedback=messages.append)
        pipeline.process(object())
        assert messages == ["Sharpness: 50.00", "Image is blurry. Sharpness: 50.00"]

    def test_real_frame_with_opencv(self, scenario_config, document_frame):
        pipeline = DetectionPipeline(scenario_config)
        result = pipeline.process(document_frame())

        assert result.status is DetectionStatus.ACCEPTED
        assert result.rect.x == pytest.approx(60, abs=3)
        assert result.rect.y == pytest.approx(40, abs=3)
        assert result.rect.width == pytest.approx(230, abs=4)
        assert result.rect.height == pytest.approx(180, abs=4)

    def test_real_blank_frame_is_blurry(self, scenario_config, blank_frame):
        result = DetectionPipeline(scenario_config).process(blank_frame)
        assert result.reason is RejectReason.BLURRY

    def test_invalid_scale(self, scenario_config):
        with pytest.raises(ValueError):
            DetectionPipeline(scenario_config, scale_x=0)


class TestFrameScope:
    """Scoped release of per-tick buffers."""

    def test_release_once_even_if_closed_twice(self, scripted_vision):
        vision = scripted_vision()
        handle = object()
        scope = FrameScope(vision)
        scope.track('frame', handle)
        scope.close()
        scope.close()
        assert vision.releases[id(handle)] == 1

    def test_aliased_handles_released_once(self, scripted_vision):
        vision = scripted_vision()
        handle = object()
        with FrameScope(vision) as scope:
            scope.track('frame', handle)
            scope.track('gray', handle)
        assert vision.releases[id(handle)] == 1

    def test_released_on_exception(self, scripted_vision):
        vision = scripted_vision()
        handle = object()
        with pytest.raises(KeyError):
            with FrameScope(vision) as scope:
                scope.track('frame', handle)
                raise KeyError('boom')
        assert vision.releases[id(handle)] == 1


class TestOpenCVVisionOps:
    """Input handling of the OpenCV backend."""

    def test_grayscale_accepts_bgra(self):
        frame = np.zeros((10, 10, 4), np.uint8)
        assert OpenCVVisionOps().to_grayscale(frame).shape == (10, 10)

    def test_grayscale_rejects_empty(self):
        with pytest.raises(InvalidFrameError):
            OpenCVVisionOps().to_grayscale(np.zeros((0, 0, 3), np.uint8))


class TestDetectionConfig:
    """Configuration validation and presets."""

    def test_strict_preset(self):
        assert STRICT.min_focus_threshold == 180
        assert (STRICT.min_aspect_ratio, STRICT.max_aspect_ratio) == (1.4, 1.7)

    def test_inverted_area_bounds(self):
        with pytest.raises(ConfigError):
            DetectionConfig(min_area_fraction=0.9, max_area_fraction=0.3)

    def test_zero_stability_threshold(self):
        with pytest.raises(ConfigError):
            DetectionConfig(stability_threshold=0)

    def test_immutable(self):
        config = DetectionConfig()
        with pytest.raises(Exception):
            config.min_focus_threshold = 1

    def test_from_env(self):
        config = DetectionConfig.from_env({
            'AUTOCAPTURE_PRESET': 'strict',
            'AUTOCAPTURE_STABILITY_THRESHOLD': '7',
            'AUTOCAPTURE_MIN_FOCUS_THRESHOLD': '150.5',
        })
        assert config.stability_threshold == 7
        assert config.min_focus_threshold == 150.5
        assert config.min_area_fraction == STRICT.min_area_fraction

    def test_from_env_unknown_preset(self):
        with pytest.raises(ConfigError):
            DetectionConfig.from_env({'AUTOCAPTURE_PRESET': 'medium'})

    def test_from_env_bad_value(self):
        with pytest.raises(ConfigError):
            DetectionConfig.from_env({'AUTOCAPTURE_STABILITY_THRESHOLD': 'five'})
