#!/usr/bin/env python3
"""
Capture session tests

Async collaborators are driven with asyncio.run; no event-loop plugin needed.
"""

import asyncio

import numpy as np
import pytest

from meal_volume.artifacts import SegmentationResponse, Viewpoint
from meal_volume.errors import (
    CollaboratorUnavailableError,
    InsufficientDataError,
    MealVolumeError,
    SegmentationMismatchError,
    StagePreconditionError,
    UnknownClassError,
)
from meal_volume.session import CaptureSession, SessionSnapshot, SessionStage, ViewState
from meal_volume.volume_fusion import FusionMethod

from conftest import EXPECTED_VOLUME_ML, make_capture, make_mask


class FakeCaptureSource:

    def __init__(self, captures=None):
        self.captures = captures or {}
        self.calls = 0

    async def capture(self, viewpoint):
        self.calls += 1
        if viewpoint in self.captures:
            return self.captures[viewpoint]
        return make_capture(viewpoint, timestamp=1000.0 + self.calls)


class GatedCaptureSource(FakeCaptureSource):
    """Blocks call number `gated_call` until `gate` is set"""

    def __init__(self, gated_call=1, ignore_cancel=False):
        super().__init__()
        self.gated_call = gated_call
        self.ignore_cancel = ignore_cancel
        self.gate = asyncio.Event()
        self.cancelled = 0

    async def capture(self, viewpoint):
        self.calls += 1
        if self.calls == self.gated_call:
            try:
                await self.gate.wait()
            except asyncio.CancelledError:
                self.cancelled += 1
                if not self.ignore_cancel:
                    raise
        return make_capture(viewpoint, timestamp=1000.0 + self.calls)


class FakeSegmenter:

    def __init__(self, label="rice", confidence=0.9, failures=0):
        self.label = label
        self.confidence = confidence
        self.failures = failures
        self.calls = 0

    async def segment(self, capture):
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("model service unreachable")
        return SegmentationResponse(make_mask(capture.viewpoint), self.label, self.confidence)

    async def classify(self, capture):
        return {
            'class': self.label,
            'confidence': self.confidence,
            'confidence_percentage': self.confidence * 100,
            'threshold_met': self.confidence >= 0.5,
            'message': 'ok'
        }


class PerViewSegmenter(FakeSegmenter):
    """Reports a different label per viewpoint"""

    def __init__(self, labels, **kwargs):
        super().__init__(**kwargs)
        self.labels = labels

    async def segment(self, capture):
        self.calls += 1
        return SegmentationResponse(make_mask(capture.viewpoint), self.labels[capture.viewpoint], self.confidence)


class WrongShapeSegmenter(FakeSegmenter):

    async def segment(self, capture):
        self.calls += 1
        return SegmentationResponse(np.ones((10, 10), dtype=bool), self.label, self.confidence)


class GatedSegmenter(FakeSegmenter):
    """Blocks the first call until `gate` is set"""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.gate = asyncio.Event()
        self.cancelled = 0

    async def segment(self, capture):
        self.calls += 1
        if self.calls == 1:
            try:
                await self.gate.wait()
            except asyncio.CancelledError:
                self.cancelled += 1
                raise
        return SegmentationResponse(make_mask(capture.viewpoint), self.label, self.confidence)


class AsyncLookup:

    def __init__(self, table):
        self.table = table

    async def lookup(self, label):
        await asyncio.sleep(0)
        return self.table.lookup(label)


def make_session(rice_table, segmenter=None, capture_source=None):
    return CaptureSession(
        segmenter=segmenter or FakeSegmenter(),
        capture_source=capture_source or FakeCaptureSource(),
        nutrition_lookup=rice_table
    )


async def run_flow(session):
    for viewpoint in (Viewpoint.TOP, Viewpoint.SIDE):
        await session.capture(viewpoint)
        await session.segment(viewpoint)
    return await session.finalize()


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


def empty_snapshot():
    return SessionSnapshot(SessionStage.IDLE, ViewState(), ViewState())


class TestStageFlow:

    def test_full_flow(self, rice_table):
        session = make_session(rice_table)
        stages = []

        async def scenario():
            stages.append(session.stage)
            await session.capture(Viewpoint.TOP)
            stages.append(session.stage)
            await session.segment(Viewpoint.TOP)
            stages.append(session.stage)
            await session.capture(Viewpoint.SIDE)
            stages.append(session.stage)
            await session.segment(Viewpoint.SIDE)
            stages.append(session.stage)
            return await session.finalize()

        estimate = asyncio.run(scenario())

        assert stages == [
            SessionStage.IDLE,
            SessionStage.TOP_CAPTURED,
            SessionStage.TOP_SEGMENTED,
            SessionStage.SIDE_CAPTURED,
            SessionStage.SIDE_SEGMENTED,
        ]
        assert session.stage is SessionStage.NUTRITION_COMPUTED
        assert estimate.volume.method is FusionMethod.TWO_VIEW
        assert estimate.volume.volume_ml == pytest.approx(EXPECTED_VOLUME_ML, rel=1e-6)
        assert estimate.nutrition.mass_grams == pytest.approx(EXPECTED_VOLUME_ML, rel=1e-6)
        assert estimate.nutrition.calories == pytest.approx(EXPECTED_VOLUME_ML * 1.3, rel=1e-6)
        assert estimate.nutrition.source_confidence == 0.9

        result = estimate.as_dict()
        assert result['sourceClass'] == "rice"
        assert result['method'] == "two_view"

    def test_segment_side_before_capture_side(self, rice_table):
        segmenter = FakeSegmenter()
        session = make_session(rice_table, segmenter=segmenter)

        async def scenario():
            await session.capture(Viewpoint.TOP)
            await session.segment(Viewpoint.TOP)
            with pytest.raises(StagePreconditionError):
                await session.segment(Viewpoint.SIDE)

        asyncio.run(scenario())

        assert session.stage is SessionStage.TOP_SEGMENTED
        assert segmenter.calls == 1

    def test_capture_side_before_top_segmented(self, rice_table):
        session = make_session(rice_table)

        async def scenario():
            await session.capture(Viewpoint.TOP)
            with pytest.raises(StagePreconditionError) as exc_info:
                await session.capture(Viewpoint.SIDE)
            return exc_info.value

        error = asyncio.run(scenario())

        assert error.stage is SessionStage.TOP_CAPTURED
        assert session.view(Viewpoint.SIDE).capture is None

    def test_finalize_requires_both_views(self, rice_table):
        session = make_session(rice_table)

        async def scenario():
            await session.capture(Viewpoint.TOP)
            await session.segment(Viewpoint.TOP)
            await session.finalize()

        with pytest.raises(StagePreconditionError, match="side not segmented"):
            asyncio.run(scenario())

    def test_submit_capture(self, rice_table):
        session = CaptureSession(segmenter=FakeSegmenter(), nutrition_lookup=rice_table)
        session.submit_capture(make_capture(Viewpoint.TOP))

        assert session.stage is SessionStage.TOP_CAPTURED
        with pytest.raises(StagePreconditionError):
            asyncio.run(session.capture(Viewpoint.TOP))

    def test_retake_top_invalidates_results(self, rice_table):
        session = make_session(rice_table)

        async def scenario():
            await run_flow(session)
            side = session.view(Viewpoint.SIDE)
            await session.capture(Viewpoint.TOP)
            return side

        side_before = asyncio.run(scenario())

        assert session.volume is None
        assert session.nutrition is None
        assert session.view(Viewpoint.TOP).segmentation is None
        assert session.view(Viewpoint.SIDE) is side_before
        assert session.stage is SessionStage.TOP_CAPTURED

    def test_resegment_side_recomputes(self, rice_table):
        session = make_session(rice_table)

        async def scenario():
            first = await run_flow(session)
            await session.segment(Viewpoint.SIDE)
            assert session.stage is SessionStage.SIDE_SEGMENTED
            second = await session.finalize()
            return first, second

        first, second = asyncio.run(scenario())

        assert second.volume.volume_ml == pytest.approx(first.volume.volume_ml)


class TestFailures:

    def test_collaborator_failure_keeps_artifacts(self, rice_table):
        segmenter = FakeSegmenter(failures=1)
        session = make_session(rice_table, segmenter=segmenter)

        async def scenario():
            await session.capture(Viewpoint.TOP)
            capture = session.view(Viewpoint.TOP).capture

            with pytest.raises(CollaboratorUnavailableError) as exc_info:
                await session.segment(Viewpoint.TOP)

            assert exc_info.value.viewpoint is Viewpoint.TOP
            assert isinstance(exc_info.value.cause, ConnectionError)
            assert session.stage is SessionStage.TOP_CAPTURED
            assert session.view(Viewpoint.TOP).capture is capture

            # retry succeeds
            await session.segment(Viewpoint.TOP)

        asyncio.run(scenario())

        assert session.stage is SessionStage.TOP_SEGMENTED

    def test_insufficient_depth_needs_retake(self, rice_table):
        source = FakeCaptureSource({Viewpoint.TOP: make_capture(Viewpoint.TOP, invalid_fraction=0.9)})
        session = make_session(rice_table, capture_source=source)

        async def scenario():
            await session.capture(Viewpoint.TOP)
            await session.segment(Viewpoint.TOP)

        with pytest.raises(InsufficientDataError) as exc_info:
            asyncio.run(scenario())

        assert exc_info.value.viewpoint is Viewpoint.TOP
        assert session.stage is SessionStage.TOP_CAPTURED

    def test_unknown_class(self, rice_table):
        session = make_session(rice_table, segmenter=FakeSegmenter(label="pizza"))

        with pytest.raises(UnknownClassError):
            asyncio.run(run_flow(session))

        assert session.stage is SessionStage.VOLUME_COMPUTED
        assert session.volume is not None

    def test_missing_label(self, rice_table):
        session = make_session(rice_table, segmenter=FakeSegmenter(label=None, confidence=None))

        with pytest.raises(UnknownClassError):
            asyncio.run(run_flow(session))

    def test_label_override(self, rice_table):
        session = make_session(rice_table, segmenter=FakeSegmenter(label="pizza"))

        async def scenario():
            for viewpoint in (Viewpoint.TOP, Viewpoint.SIDE):
                await session.capture(viewpoint)
                await session.segment(viewpoint)
            return await session.finalize(food_class="rice")

        estimate = asyncio.run(scenario())

        assert estimate.nutrition.source_class == "rice"
        assert estimate.nutrition.source_confidence is None


    def test_unknown_label_falls_back_to_side(self, rice_table):
        segmenter = PerViewSegmenter({Viewpoint.TOP: "unknown", Viewpoint.SIDE: "rice"})
        session = make_session(rice_table, segmenter=segmenter)

        estimate = asyncio.run(run_flow(session))

        assert estimate.nutrition.source_class == "rice"
        assert estimate.nutrition.source_confidence == 0.9

    def test_only_unknown_labels(self, rice_table):
        segmenter = PerViewSegmenter({Viewpoint.TOP: "unknown", Viewpoint.SIDE: "Unknown_Food"})
        session = make_session(rice_table, segmenter=segmenter)

        with pytest.raises(UnknownClassError) as exc_info:
            asyncio.run(run_flow(session))

        assert exc_info.value.label is None
        assert session.stage is SessionStage.VOLUME_COMPUTED

    def test_mask_shape_mismatch(self, rice_table):
        segmenter = WrongShapeSegmenter()
        session = make_session(rice_table, segmenter=segmenter)

        async def scenario():
            await session.capture(Viewpoint.TOP)
            await session.segment(Viewpoint.TOP)

        with pytest.raises(SegmentationMismatchError) as exc_info:
            asyncio.run(scenario())

        assert isinstance(exc_info.value, MealVolumeError)
        assert exc_info.value.viewpoint is Viewpoint.TOP
        assert isinstance(exc_info.value.__cause__, ValueError)
        assert session.stage is SessionStage.TOP_CAPTURED
        assert session.view(Viewpoint.TOP).segmentation is None


class TestConcurrency:

    def test_segment_while_retake_pending(self, rice_table):
        source = GatedCaptureSource(gated_call=2)
        segmenter = FakeSegmenter()
        session = make_session(rice_table, segmenter=segmenter, capture_source=source)

        async def scenario():
            await session.capture(Viewpoint.TOP)
            first = session.view(Viewpoint.TOP).capture
            retake = asyncio.create_task(session.capture(Viewpoint.TOP))
            await settle()
            assert session.in_flight(Viewpoint.TOP)

            with pytest.raises(StagePreconditionError, match="capture still in progress"):
                await session.segment(Viewpoint.TOP)

            source.gate.set()
            stored = await retake
            observation = await session.segment(Viewpoint.TOP)
            return first, stored, observation

        first, stored, observation = asyncio.run(scenario())

        assert stored is not first
        assert source.cancelled == 0
        assert segmenter.calls == 1
        assert session.view(Viewpoint.TOP).capture is stored
        assert session.view(Viewpoint.TOP).observation is observation
        assert session.stage is SessionStage.TOP_SEGMENTED

    def test_segment_after_failed_capture(self, rice_table):
        class FailingSource(FakeCaptureSource):
            async def capture(self, viewpoint):
                raise ConnectionError("camera disconnected")

        session = make_session(rice_table, capture_source=FailingSource())

        async def scenario():
            with pytest.raises(CollaboratorUnavailableError):
                await session.capture(Viewpoint.TOP)
            with pytest.raises(StagePreconditionError, match="no top capture"):
                await session.segment(Viewpoint.TOP)

        asyncio.run(scenario())

    @pytest.mark.parametrize("ignore_cancel", [False, True])
    def test_capture_completing_after_reset(self, rice_table, ignore_cancel):
        source = GatedCaptureSource(ignore_cancel=ignore_cancel)
        session = make_session(rice_table, capture_source=source)

        async def scenario():
            pending = asyncio.create_task(session.capture(Viewpoint.TOP))
            await settle()
            assert session.in_flight(Viewpoint.TOP)

            session.reset()
            source.gate.set()
            result = await pending

            with pytest.raises(StagePreconditionError, match="no top capture"):
                await session.segment(Viewpoint.TOP)
            return result

        result = asyncio.run(scenario())

        assert result is None
        assert source.cancelled == 1
        assert not session.in_flight(Viewpoint.TOP)
        assert session.snapshot() == empty_snapshot()

    def test_reset_during_segmentation(self, rice_table):
        segmenter = GatedSegmenter()
        session = make_session(rice_table, segmenter=segmenter)

        async def scenario():
            await session.capture(Viewpoint.TOP)
            pending = asyncio.create_task(session.segment(Viewpoint.TOP))
            await settle()
            assert session.in_flight(Viewpoint.TOP)

            session.reset()
            segmenter.gate.set()
            return await pending

        result = asyncio.run(scenario())

        assert result is None
        assert segmenter.cancelled == 1
        assert session.snapshot() == empty_snapshot()

    def test_new_request_supersedes_pending(self, rice_table):
        segmenter = GatedSegmenter()
        session = make_session(rice_table, segmenter=segmenter)

        async def scenario():
            await session.capture(Viewpoint.TOP)
            first = asyncio.create_task(session.segment(Viewpoint.TOP))
            await settle()
            second = await session.segment(Viewpoint.TOP)
            return await first, second

        first, second = asyncio.run(scenario())

        assert first is None
        assert second is not None
        assert segmenter.cancelled == 1
        assert session.view(Viewpoint.TOP).observation is second

    def test_retake_discards_pending_segmentation(self, rice_table):
        segmenter = GatedSegmenter()
        session = make_session(rice_table, segmenter=segmenter)

        async def scenario():
            await session.capture(Viewpoint.TOP)
            pending = asyncio.create_task(session.segment(Viewpoint.TOP))
            await settle()
            await session.capture(Viewpoint.TOP)
            return await pending

        assert asyncio.run(scenario()) is None
        assert session.stage is SessionStage.TOP_CAPTURED
        assert session.view(Viewpoint.TOP).segmentation is None

    def test_reset_is_idempotent_start(self, rice_table):
        session = make_session(rice_table)

        async def scenario():
            first = await run_flow(session)
            session.reset()
            assert session.snapshot() == empty_snapshot()
            second = await run_flow(session)
            return first, second

        first, second = asyncio.run(scenario())

        assert second.volume.volume_ml == pytest.approx(first.volume.volume_ml)
        assert second.nutrition.calories == pytest.approx(first.nutrition.calories)

    def test_async_nutrition_lookup(self, rice_table):
        session = CaptureSession(
            segmenter=FakeSegmenter(),
            capture_source=FakeCaptureSource(),
            nutrition_lookup=AsyncLookup(rice_table)
        )

        estimate = asyncio.run(run_flow(session))

        assert estimate.nutrition.calories == pytest.approx(EXPECTED_VOLUME_ML * 1.3, rel=1e-6)


class TestObservers:

    def test_observers_receive_snapshots(self, rice_table):
        session = make_session(rice_table)
        seen = []
        unsubscribe = session.subscribe(lambda snapshot: seen.append(snapshot.stage))

        asyncio.run(run_flow(session))
        unsubscribe()
        session.reset()

        assert seen[0] is SessionStage.TOP_CAPTURED
        assert seen[-1] is SessionStage.NUTRITION_COMPUTED
        assert SessionStage.VOLUME_COMPUTED in seen

    def test_failing_observer_does_not_break_session(self, rice_table):
        session = make_session(rice_table)

        def broken(snapshot):
            raise RuntimeError("observer bug")

        session.subscribe(broken)
        estimate = asyncio.run(run_flow(session))

        assert estimate is not None


def test_classify_quick_path(rice_table):
    session = make_session(rice_table)

    async def scenario():
        await session.capture(Viewpoint.TOP)
        return await session.classify(Viewpoint.TOP)

    result = asyncio.run(scenario())

    assert result.predicted_class == "rice"
    assert result.threshold_met
    assert session.stage is SessionStage.TOP_CAPTURED


def test_default_nutrition_table():
    session = CaptureSession(segmenter=FakeSegmenter(), capture_source=FakeCaptureSource())
    estimate = asyncio.run(run_flow(session))

    # 0.85 g/mL rice from the packaged table
    assert estimate.nutrition.mass_grams == pytest.approx(EXPECTED_VOLUME_ML * 0.85, rel=1e-6)
    assert np.isfinite(estimate.nutrition.calories)
