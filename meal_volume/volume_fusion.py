#!/usr/bin/env python3
"""
Volume Fusion Module

Combines the TOP and SIDE partial observations into one volume estimate (mL).

A single view cannot resolve the dimension along its own viewing axis: the
top view measures the footprint well but the height poorly, the side view
the reverse. The two are treated as complementary measurements of the same
object:

    volume = top footprint area × side height extent × fill factor

The fill factor corrects for food not being a rectangular prism. When only
one view is usable the missing dimension comes from a class-specific
height/width aspect ratio and the confidence is reduced.
"""

import enum
import logging
import math
import warnings
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from .artifacts import Viewpoint
from .config import FusionConfig
from .errors import InsufficientDataError, MisregistrationWarning
from .geometry import horizontal_component
from .reconstruction import PartialObservation

logger = logging.getLogger(__name__)

# 1 m³ = 1,000,000 mL
ML_PER_CUBIC_METRE = 1_000_000.0


class FusionMethod(enum.Enum):
    TWO_VIEW = "two_view"
    SINGLE_VIEW_FALLBACK = "single_view_fallback"


@dataclass(frozen=True)
class VolumeEstimate:
    """
    Args:
        volume_ml: estimated volume (mL)
        confidence: 0-1 score from depth coverage and view agreement
        method: TWO_VIEW or SINGLE_VIEW_FALLBACK
        fill_factor: shape correction applied
        footprint_area: footprint used (m²)
        height: height used (m)
        misregistered: views disagreed beyond tolerance
        source_viewpoints: views that contributed
    """
    volume_ml: float
    confidence: float
    method: FusionMethod
    fill_factor: float
    footprint_area: float
    height: float
    misregistered: bool = False
    source_viewpoints: Tuple[Viewpoint, ...] = (Viewpoint.TOP, Viewpoint.SIDE)

    def to_dict(self):
        return {
            'volume_ml': self.volume_ml,
            'confidence': self.confidence,
            'method': self.method.value,
            'fill_factor': self.fill_factor,
            'footprint_area_m2': self.footprint_area,
            'height_m': self.height,
            'misregistered': self.misregistered,
            'source_viewpoints': [v.value for v in self.source_viewpoints]
        }


class VolumeFusionEngine:
    """
    Two-view volume fusion

    Pure and deterministic: identical inputs always give identical estimates.
    """

    def __init__(
        self,
        config: Optional[FusionConfig] = None,
        up_axis=(0.0, 0.0, 1.0)
    ):
        """
        Args:
            config: fusion settings
            up_axis: world up axis, must match the reconstructor's
        """
        self.config = config or FusionConfig()
        self.up_axis = np.asarray(up_axis, dtype=np.float64)

    def fuse(
        self,
        top: PartialObservation,
        side: PartialObservation,
        food_class: Optional[str] = None
    ) -> VolumeEstimate:
        """
        Args:
            top: TOP partial observation
            side: SIDE partial observation
            food_class: label used for per-class fill factor / aspect ratio

        Returns:
            estimate: VolumeEstimate

        Raises:
            ValueError: observations passed for the wrong viewpoints
            InsufficientDataError: neither view is usable
        """
        if top.viewpoint is not Viewpoint.TOP or side.viewpoint is not Viewpoint.SIDE:
            raise ValueError(
                f"expected (top, side) observations, got "
                f"({top.viewpoint.value}, {side.viewpoint.value})"
            )

        cfg = self.config
        top_ok = top.valid_sample_fraction >= cfg.min_valid_fraction
        side_ok = side.valid_sample_fraction >= cfg.min_valid_fraction

        if top_ok and side_ok:
            return self._fuse_two_view(top, side, food_class)

        if top_ok or side_ok:
            usable = top if top_ok else side
            rejected = side if top_ok else top
            logger.warning(
                "%s view unusable (%.1f%% valid < %.1f%%), single-view fallback from %s",
                rejected.viewpoint.value,
                rejected.valid_sample_fraction * 100,
                cfg.min_valid_fraction * 100,
                usable.viewpoint.value
            )
            return self._fuse_single_view(usable, food_class)

        worst = min(top.valid_sample_fraction, side.valid_sample_fraction)
        raise InsufficientDataError(None, worst, cfg.min_valid_fraction)

    def _fuse_two_view(
        self,
        top: PartialObservation,
        side: PartialObservation,
        food_class: Optional[str]
    ) -> VolumeEstimate:
        cfg = self.config
        fill_factor = cfg.fill_factor_for(food_class)

        footprint_area = top.footprint_area
        height = side.height_profile.extent
        volume_ml = footprint_area * height * fill_factor * ML_PER_CUBIC_METRE

        confidence = (
            top.valid_sample_fraction ** cfg.top_weight
            * side.valid_sample_fraction ** cfg.side_weight
        )

        offset = self.centroid_offset(top, side)
        misregistered = offset > cfg.centroid_tolerance_m
        if misregistered:
            confidence *= cfg.misregistration_penalty
            message = (
                f"top/side centroids differ by {offset * 1000:.1f} mm "
                f"(tolerance {cfg.centroid_tolerance_m * 1000:.1f} mm)"
            )
            logger.warning(message)
            warnings.warn(message, MisregistrationWarning, stacklevel=3)

        logger.info(
            "two-view volume: %.5f m² × %.4f m × %.2f = %.1f mL (confidence %.2f)",
            footprint_area, height, fill_factor, volume_ml, confidence
        )

        return VolumeEstimate(
            volume_ml=volume_ml,
            confidence=confidence,
            method=FusionMethod.TWO_VIEW,
            fill_factor=fill_factor,
            footprint_area=footprint_area,
            height=height,
            misregistered=misregistered,
            source_viewpoints=(Viewpoint.TOP, Viewpoint.SIDE)
        )

    def _fuse_single_view(
        self,
        usable: PartialObservation,
        food_class: Optional[str]
    ) -> VolumeEstimate:
        cfg = self.config
        fill_factor = cfg.fill_factor_for(food_class)
        aspect = cfg.aspect_ratio_for(food_class)

        if usable.viewpoint is Viewpoint.TOP:
            footprint_area = usable.footprint_area
            height = aspect * math.sqrt(footprint_area)
        else:
            height = usable.height_profile.extent
            width = height / aspect
            footprint_area = width * width

        volume_ml = footprint_area * height * fill_factor * ML_PER_CUBIC_METRE
        confidence = usable.valid_sample_fraction * cfg.fallback_penalty

        logger.info(
            "single-view volume (%s, aspect %.2f): %.1f mL (confidence %.2f)",
            usable.viewpoint.value, aspect, volume_ml, confidence
        )

        return VolumeEstimate(
            volume_ml=volume_ml,
            confidence=confidence,
            method=FusionMethod.SINGLE_VIEW_FALLBACK,
            fill_factor=fill_factor,
            footprint_area=footprint_area,
            height=height,
            misregistered=False,
            source_viewpoints=(usable.viewpoint,)
        )

    def centroid_offset(self, top: PartialObservation, side: PartialObservation) -> float:
        """
        Distance between the two centroids along the horizontal axis both
        views resolve (perpendicular to the side viewing axis)

        The side view only sees the front surface, so its centroid sits in
        front of the object along its viewing axis; that direction is ignored.
        Empty observations never count as misregistered.
        """
        if top.num_points == 0 or side.num_points == 0:
            return 0.0

        side_axis = horizontal_component(side.viewing_axis, self.up_axis)
        if side_axis is None:
            return 0.0

        lateral = np.cross(self.up_axis / np.linalg.norm(self.up_axis), side_axis)
        return float(abs(np.dot(top.centroid - side.centroid, lateral)))
