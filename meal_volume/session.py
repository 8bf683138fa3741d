#!/usr/bin/env python3
"""
Capture Session

Single mutable aggregate of the two-view workflow:

    IDLE → TOP_CAPTURED → TOP_SEGMENTED → SIDE_CAPTURED → SIDE_SEGMENTED
         → VOLUME_COMPUTED → NUTRITION_COMPUTED

reset() returns to IDLE from any stage and discards everything held.

The stage is derived from what the session holds, so it can never claim an
artifact that is missing. Collaborator calls are asyncio coroutines; each one
is tied to a RequestHandle (viewpoint, generation, epoch). Issuing a new
request for a viewpoint bumps its generation and cancels the previous task;
reset() bumps the epoch and cancels everything. A completion whose handle is
no longer current is dropped without touching the session.

The session is single-writer (the flow driving the capture, on its event
loop). Readers on other threads get consistent snapshots through a lock.
"""

import asyncio
import enum
import inspect
import logging
import threading
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Union

from .artifacts import (
    CaptureArtifact,
    ClassificationResult,
    SegmentationArtifact,
    SegmentationResponse,
    Viewpoint,
)
from .config import PipelineConfig
from .errors import (
    CollaboratorUnavailableError,
    InsufficientDataError,
    SegmentationMismatchError,
    StagePreconditionError,
    StaleResultDiscarded,
    UnknownClassError,
)
from .nutrition import FoodProfile, NutritionEstimate, NutritionProjector, NutritionTable
from .reconstruction import PartialObservation, ViewReconstructor
from .volume_fusion import VolumeEstimate, VolumeFusionEngine

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (ConnectionError, TimeoutError, asyncio.TimeoutError, OSError)

# Placeholder class names that mean "not classified"
UNKNOWN_LABELS = ("unknown", "unknown_food")


class SessionStage(enum.Enum):
    IDLE = 0
    TOP_CAPTURED = 1
    TOP_SEGMENTED = 2
    SIDE_CAPTURED = 3
    SIDE_SEGMENTED = 4
    VOLUME_COMPUTED = 5
    NUTRITION_COMPUTED = 6


# ---------------------------------------------------------------------------
# Collaborator interfaces
# ---------------------------------------------------------------------------

class CaptureSource(Protocol):
    """Camera / AR driver"""

    async def capture(self, viewpoint: Viewpoint) -> CaptureArtifact:
        ...


class Segmenter(Protocol):
    """Segmentation / classification model service"""

    async def segment(self, capture: CaptureArtifact) -> SegmentationResponse:
        ...


class NutritionLookup(Protocol):
    """Food class → density and per-gram macros; may be sync or async"""

    def lookup(self, label: str) -> Union[FoodProfile, Awaitable[FoodProfile]]:
        ...


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RequestHandle:
    """Identity of one in-flight request (viewpoint None = finalize)"""
    viewpoint: Optional[Viewpoint]
    generation: int
    epoch: int

    def __str__(self):
        where = self.viewpoint.value if self.viewpoint else "results"
        return f"request({where}, generation={self.generation}, epoch={self.epoch})"


@dataclass(frozen=True)
class ViewState:
    """Artifacts held for one viewpoint"""
    capture: Optional[CaptureArtifact] = None
    segmentation: Optional[SegmentationArtifact] = None
    observation: Optional[PartialObservation] = None


@dataclass(frozen=True)
class SessionSnapshot:
    stage: SessionStage
    top: ViewState
    side: ViewState
    volume: Optional[VolumeEstimate] = None
    nutrition: Optional[NutritionEstimate] = None


@dataclass(frozen=True)
class MealEstimate:
    """Result handed back to the UI layer"""
    volume: VolumeEstimate
    nutrition: NutritionEstimate

    def as_dict(self) -> Dict[str, Any]:
        return {
            'volumeMl': self.volume.volume_ml,
            'massGrams': self.nutrition.mass_grams,
            'calories': self.nutrition.calories,
            'proteinGrams': self.nutrition.protein_grams,
            'fatGrams': self.nutrition.fat_grams,
            'carbGrams': self.nutrition.carb_grams,
            'confidence': self.volume.confidence,
            'method': self.volume.method.value,
            'sourceClass': self.nutrition.source_class
        }


class CaptureSession:
    """
    Sequences the two-view capture workflow for one meal-logging flow

    Args:
        segmenter: segmentation collaborator
        capture_source: capture collaborator (optional when captures are
            submitted directly with submit_capture)
        nutrition_lookup: nutrition collaborator (defaults to the packaged
            NutritionTable)
        config: pipeline configuration
    """

    def __init__(
        self,
        segmenter: Segmenter,
        capture_source: Optional[CaptureSource] = None,
        nutrition_lookup: Optional[NutritionLookup] = None,
        config: Optional[PipelineConfig] = None
    ):
        self.config = config or PipelineConfig()
        self.segmenter = segmenter
        self.capture_source = capture_source
        self.nutrition_lookup = nutrition_lookup if nutrition_lookup is not None else NutritionTable.default()

        self.reconstructor = ViewReconstructor(self.config.reconstruction)
        self.fusion_engine = VolumeFusionEngine(self.config.fusion, up_axis=self.config.reconstruction.up_axis)
        self.projector = NutritionProjector()

        self._lock = threading.RLock()
        self._views: Dict[Viewpoint, ViewState] = {Viewpoint.TOP: ViewState(), Viewpoint.SIDE: ViewState()}
        self._volume: Optional[VolumeEstimate] = None
        self._nutrition: Optional[NutritionEstimate] = None

        self._epoch = 0
        self._generations = {Viewpoint.TOP: 0, Viewpoint.SIDE: 0}
        self._results_generation = 0
        self._tasks: Dict[Optional[Viewpoint], asyncio.Future] = {}
        self._pending_captures: Dict[Viewpoint, RequestHandle] = {}
        self._observers: List[Callable[[SessionSnapshot], None]] = []

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def stage(self) -> SessionStage:
        with self._lock:
            return self._derive_stage()

    @property
    def volume(self) -> Optional[VolumeEstimate]:
        with self._lock:
            return self._volume

    @property
    def nutrition(self) -> Optional[NutritionEstimate]:
        with self._lock:
            return self._nutrition

    def view(self, viewpoint: Viewpoint) -> ViewState:
        with self._lock:
            return self._views[Viewpoint(viewpoint)]

    def snapshot(self) -> SessionSnapshot:
        with self._lock:
            return SessionSnapshot(
                stage=self._derive_stage(),
                top=self._views[Viewpoint.TOP],
                side=self._views[Viewpoint.SIDE],
                volume=self._volume,
                nutrition=self._nutrition
            )

    def in_flight(self, viewpoint: Optional[Viewpoint] = None) -> bool:
        """Whether a request for `viewpoint` (None: finalize) is pending"""
        with self._lock:
            task = self._tasks.get(viewpoint)
            return task is not None and not task.done()

    def subscribe(self, callback: Callable[[SessionSnapshot], None]) -> Callable[[], None]:
        """
        Register an observer called with a snapshot after every change

        Returns:
            unsubscribe: callable removing the observer
        """
        with self._lock:
            self._observers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._observers:
                    self._observers.remove(callback)

        return unsubscribe

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    def submit_capture(self, artifact: CaptureArtifact):
        """
        Store a capture produced outside the session

        Re-capturing a viewpoint replaces only that viewpoint's artifacts,
        cancels its in-flight request and invalidates any computed volume and
        nutrition.

        Raises:
            StagePreconditionError: SIDE capture before TOP is segmented
        """
        with self._lock:
            self._require_capture_allowed(artifact.viewpoint)
            handle = self._begin(artifact.viewpoint)
            self._store_capture(artifact, handle)
        self._notify()

    async def capture(self, viewpoint: Viewpoint) -> Optional[CaptureArtifact]:
        """
        Ask the capture collaborator for a frame and store it

        Returns:
            artifact: the stored capture, or None if the request was
                superseded before it completed
        """
        viewpoint = Viewpoint(viewpoint)
        if self.capture_source is None:
            raise StagePreconditionError(f"capture {viewpoint.value}", self.stage, "no capture source configured")

        with self._lock:
            self._require_capture_allowed(viewpoint)
            handle = self._begin(viewpoint)
            self._pending_captures[viewpoint] = handle

        try:
            artifact = await self._call(handle, "capture", self.capture_source.capture(viewpoint))
            if artifact.viewpoint is not viewpoint:
                raise ValueError(
                    f"capture source returned a {artifact.viewpoint.value} artifact "
                    f"for a {viewpoint.value} request"
                )
            with self._lock:
                self._require_current(handle)
                self._store_capture(artifact, handle)
        except StaleResultDiscarded as e:
            logger.debug("%s", e)
            return None
        finally:
            with self._lock:
                if self._pending_captures.get(viewpoint) == handle:
                    del self._pending_captures[viewpoint]

        self._notify()
        return artifact

    # ------------------------------------------------------------------
    # Segmentation
    # ------------------------------------------------------------------

    async def segment(self, viewpoint: Viewpoint) -> Optional[PartialObservation]:
        """
        Segment the latest capture of `viewpoint` and reconstruct it

        Returns:
            observation: the new PartialObservation, or None if the request
                was superseded (retake or reset) before it completed

        Raises:
            StagePreconditionError: no capture held for the viewpoint, or a
                capture of it is still in flight
            CollaboratorUnavailableError: segmentation service failed; retry
            SegmentationMismatchError: mask does not fit the capture
            InsufficientDataError: too little valid depth; retake the photo
        """
        viewpoint = Viewpoint(viewpoint)

        with self._lock:
            if viewpoint in self._pending_captures:
                raise StagePreconditionError(
                    f"segment {viewpoint.value}",
                    self._derive_stage(),
                    f"{viewpoint.value} capture still in progress"
                )
            capture = self._views[viewpoint].capture
            if capture is None:
                raise StagePreconditionError(
                    f"segment {viewpoint.value}",
                    self._derive_stage(),
                    f"no {viewpoint.value} capture"
                )
            handle = self._begin(viewpoint)

        try:
            response = await self._call(handle, "segmentation", self.segmenter.segment(capture))
            self._require_current(handle)

            try:
                segmentation = SegmentationArtifact.for_capture(
                    capture,
                    response.mask,
                    predicted_class=response.predicted_class,
                    confidence=response.confidence
                )
            except ValueError as e:
                raise SegmentationMismatchError(viewpoint, str(e)) from e
            try:
                observation = self.reconstructor.reconstruct(capture, segmentation)
            except InsufficientDataError:
                self._require_current(handle)
                logger.warning("%s view needs a retake: insufficient depth coverage", viewpoint.value)
                raise

            with self._lock:
                self._require_current(handle)
                self._views[viewpoint] = ViewState(capture, segmentation, observation)
                self._invalidate_results()
        except StaleResultDiscarded as e:
            logger.debug("%s", e)
            return None

        self._notify()
        return observation

    async def classify(self, viewpoint: Viewpoint) -> Optional[ClassificationResult]:
        """
        Quick-path classification of the latest capture of `viewpoint`

        Does not change the stage or cancel a pending segmentation.
        """
        viewpoint = Viewpoint(viewpoint)
        classify = getattr(self.segmenter, 'classify', None)
        if classify is None:
            raise StagePreconditionError(f"classify {viewpoint.value}", self.stage, "segmenter has no classify()")

        with self._lock:
            capture = self._views[viewpoint].capture
            if capture is None:
                raise StagePreconditionError(
                    f"classify {viewpoint.value}",
                    self._derive_stage(),
                    f"no {viewpoint.value} capture"
                )
            handle = RequestHandle(viewpoint, self._generations[viewpoint], self._epoch)

        try:
            result = await self._call(handle, "classification", classify(capture), track=False)
            self._require_current(handle)
        except StaleResultDiscarded as e:
            logger.debug("%s", e)
            return None

        if isinstance(result, dict):
            result = ClassificationResult.from_response(result)
        return result

    # ------------------------------------------------------------------
    # Volume and nutrition
    # ------------------------------------------------------------------

    async def finalize(self, food_class: Optional[str] = None) -> Optional[MealEstimate]:
        """
        Fuse both views and project mass / nutrition

        Args:
            food_class: override for the predicted class

        Returns:
            estimate: MealEstimate, or None if the session changed while the
                nutrition lookup was pending

        Raises:
            StagePreconditionError: a view is not segmented yet
            InsufficientDataError: neither view is usable for fusion
            UnknownClassError: no nutrition entry for the class
            CollaboratorUnavailableError: nutrition lookup failed; retry
        """
        with self._lock:
            top = self._views[Viewpoint.TOP]
            side = self._views[Viewpoint.SIDE]
            if top.observation is None or side.observation is None:
                missing = [v.value for v, s in ((Viewpoint.TOP, top), (Viewpoint.SIDE, side))
                           if s.observation is None]
                raise StagePreconditionError(
                    "finalize",
                    self._derive_stage(),
                    f"{' and '.join(missing)} not segmented"
                )

            label, confidence = self._select_label(top, side, food_class)
            volume = self.fusion_engine.fuse(top.observation, side.observation, label)
            self._invalidate_results()
            self._volume = volume
            handle = RequestHandle(None, self._results_generation, self._epoch)
        self._notify()

        if label is None:
            raise UnknownClassError(None)

        try:
            profile = await self._lookup(handle, label)
            nutrition = self.projector.project(volume, profile, confidence)
            with self._lock:
                self._require_current(handle)
                self._nutrition = nutrition
        except StaleResultDiscarded as e:
            logger.debug("%s", e)
            return None

        logger.info(
            "meal estimate: %.1f mL, %.1f g, %.1f kcal (%s, confidence %.2f)",
            volume.volume_ml, nutrition.mass_grams, nutrition.calories,
            nutrition.source_class, volume.confidence
        )
        self._notify()
        return MealEstimate(volume, nutrition)

    # ------------------------------------------------------------------
    # Reset
    # ------------------------------------------------------------------

    def reset(self):
        """
        Discard all artifacts and results

        Safe while requests are in flight: their completions become no-ops.
        """
        with self._lock:
            self._epoch += 1
            tasks = list(self._tasks.values())
            self._tasks.clear()
            self._pending_captures.clear()
            self._views = {Viewpoint.TOP: ViewState(), Viewpoint.SIDE: ViewState()}
            self._invalidate_results()

        for task in tasks:
            task.cancel()

        logger.info("capture session reset (epoch %d, %d request(s) cancelled)", self._epoch, len(tasks))
        self._notify()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _derive_stage(self) -> SessionStage:
        top = self._views[Viewpoint.TOP]
        side = self._views[Viewpoint.SIDE]

        if self._nutrition is not None:
            return SessionStage.NUTRITION_COMPUTED
        if self._volume is not None:
            return SessionStage.VOLUME_COMPUTED
        if top.segmentation is not None and side.segmentation is not None:
            return SessionStage.SIDE_SEGMENTED
        if top.segmentation is not None and side.capture is not None:
            return SessionStage.SIDE_CAPTURED
        if top.segmentation is not None:
            return SessionStage.TOP_SEGMENTED
        if top.capture is not None:
            return SessionStage.TOP_CAPTURED
        return SessionStage.IDLE

    def _require_capture_allowed(self, viewpoint: Viewpoint):
        if viewpoint is Viewpoint.SIDE and self._views[Viewpoint.TOP].segmentation is None:
            raise StagePreconditionError("capture side", self._derive_stage(), "top view not segmented")

    def _begin(self, viewpoint: Viewpoint) -> RequestHandle:
        """New request for `viewpoint`: supersede and cancel the previous one"""
        self._generations[viewpoint] += 1
        self._pending_captures.pop(viewpoint, None)
        previous = self._tasks.pop(viewpoint, None)
        if previous is not None and not previous.done():
            logger.debug("cancelling superseded %s request", viewpoint.value)
            previous.cancel()
        return RequestHandle(viewpoint, self._generations[viewpoint], self._epoch)

    def _is_current(self, handle: RequestHandle) -> bool:
        with self._lock:
            if handle.epoch != self._epoch:
                return False
            if handle.viewpoint is None:
                return handle.generation == self._results_generation
            return handle.generation == self._generations[handle.viewpoint]

    def _require_current(self, handle: RequestHandle):
        if not self._is_current(handle):
            raise StaleResultDiscarded(handle)

    def _store_capture(self, artifact: CaptureArtifact, handle: RequestHandle):
        self._views[artifact.viewpoint] = ViewState(capture=artifact)
        self._invalidate_results()
        logger.info(
            "%s capture stored (%dx%d, %.1f%% valid depth)",
            artifact.viewpoint.value, artifact.frame_size[1], artifact.frame_size[0],
            artifact.valid_depth_fraction() * 100
        )

    def _invalidate_results(self):
        self._volume = None
        self._nutrition = None
        self._results_generation += 1
        pending = self._tasks.pop(None, None)
        if pending is not None and not pending.done():
            pending.cancel()

    @staticmethod
    def _select_label(top: ViewState, side: ViewState, override: Optional[str]):
        if override:
            return override, None
        for view in (top, side):
            if view.segmentation is None:
                continue
            label = view.segmentation.predicted_class
            if label and label.lower() not in UNKNOWN_LABELS:
                return label, view.segmentation.confidence
        return None, None

    async def _lookup(self, handle: RequestHandle, label: str) -> FoodProfile:
        try:
            result = self.nutrition_lookup.lookup(label)
        except TRANSIENT_ERRORS as e:
            raise CollaboratorUnavailableError("nutrition lookup", cause=e) from e

        if inspect.isawaitable(result):
            result = await self._call(handle, "nutrition lookup", result)
        self._require_current(handle)
        return result

    async def _call(self, handle: RequestHandle, stage: str, awaitable, track: bool = True):
        """
        Await a collaborator call tied to `handle`

        Transient I/O errors become CollaboratorUnavailableError; a call
        cancelled because its handle was superseded raises
        StaleResultDiscarded.
        """
        task = asyncio.ensure_future(awaitable)
        if track:
            with self._lock:
                if self._is_current(handle):
                    self._tasks[handle.viewpoint] = task
                else:
                    task.cancel()

        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            cancelling = getattr(current, 'cancelling', None)
            if self._is_current(handle) or (cancelling is not None and cancelling()):
                raise
            raise StaleResultDiscarded(handle) from None
        except CollaboratorUnavailableError as e:
            self._require_current(handle)
            logger.warning("%s failed: %s", stage, e)
            raise CollaboratorUnavailableError(stage, handle.viewpoint, cause=e.cause or e) from e
        except TRANSIENT_ERRORS as e:
            self._require_current(handle)
            logger.warning("%s failed: %s", stage, e)
            raise CollaboratorUnavailableError(stage, handle.viewpoint, cause=e) from e
        finally:
            if track:
                with self._lock:
                    if self._tasks.get(handle.viewpoint) is task:
                        del self._tasks[handle.viewpoint]

    def _notify(self):
        with self._lock:
            observers = list(self._observers)
        if not observers:
            return

        snapshot = self.snapshot()
        for callback in observers:
            try:
                callback(snapshot)
            except Exception:
                logger.exception("session observer %r failed", callback)
