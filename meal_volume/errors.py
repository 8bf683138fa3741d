#!/usr/bin/env python3
"""
Error taxonomy for the two-view capture pipeline

Every failure exit of the pipeline is one of these types. Geometry errors
carry the viewpoint and the pixel coverage so the UI can ask for a specific
retake; collaborator errors carry the stage so the same step can be retried.
"""

from typing import Optional


class MealVolumeError(Exception):
    """Base class for all pipeline errors"""


class InsufficientDataError(MealVolumeError):
    """
    Depth/mask coverage too sparse to trust

    Args:
        viewpoint: view that failed (None when both views failed in fusion)
        valid_fraction: fraction of masked pixels with valid depth
        required_fraction: configured minimum
    """

    def __init__(
        self,
        viewpoint,
        valid_fraction: float,
        required_fraction: float,
        message: Optional[str] = None
    ):
        self.viewpoint = viewpoint
        self.valid_fraction = valid_fraction
        self.required_fraction = required_fraction

        if message is None:
            where = viewpoint.value if viewpoint is not None else "both views"
            message = (
                f"insufficient depth coverage for {where}: "
                f"{valid_fraction:.1%} valid, {required_fraction:.1%} required "
                f"({self.invalid_fraction:.1%} of masked pixels invalid)"
            )
        super().__init__(message)

    @property
    def invalid_fraction(self) -> float:
        return 1.0 - self.valid_fraction


class MisregistrationWarning(UserWarning):
    """Top and side views disagree geometrically; lowers confidence only"""


class UnknownClassError(MealVolumeError):
    """No density/macro entry for the food class"""

    def __init__(self, label: Optional[str]):
        self.label = label
        if label is None:
            super().__init__("no food class available for nutrition lookup")
        else:
            super().__init__(f"no nutrition entry for food class '{label}'")


class CollaboratorUnavailableError(MealVolumeError):
    """
    Transient failure of an external collaborator (network, model service)

    The session keeps everything it already holds, so the failed stage can be
    retried as is.
    """

    def __init__(self, stage, viewpoint=None, cause: Optional[BaseException] = None):
        self.stage = stage
        self.viewpoint = viewpoint
        self.cause = cause

        where = f" ({viewpoint.value})" if viewpoint is not None else ""
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"collaborator unavailable during {stage}{where}{detail}")


class StagePreconditionError(MealVolumeError):
    """Operation requested before the stage it depends on completed"""

    def __init__(self, operation: str, stage, reason: str = ""):
        self.operation = operation
        self.stage = stage
        message = f"cannot {operation} in stage {stage.name}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class SegmentationMismatchError(MealVolumeError):
    """Collaborator returned a mask that cannot be registered to the capture"""

    def __init__(self, viewpoint, reason: str):
        self.viewpoint = viewpoint
        self.reason = reason
        super().__init__(f"segmentation of {viewpoint.value} view rejected: {reason}")


class StaleResultDiscarded(MealVolumeError):
    """Internal: an async completion arrived for a superseded request"""

    def __init__(self, handle):
        self.handle = handle
        super().__init__(f"discarded stale completion for {handle}")
