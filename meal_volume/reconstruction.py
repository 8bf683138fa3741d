#!/usr/bin/env python3
"""
View Reconstruction Module

Turns one (CaptureArtifact, SegmentationArtifact) pair into a
PartialObservation in the session world frame.

Steps:
1. Select masked pixels (membership > threshold)
2. Sample the registered depth map, drop invalid samples
3. Back-project to camera frame, transform to world with the capture pose
4. Reject outliers
5. Measure footprint area (convex hull in the plane perpendicular to the
   view's primary axis) and the height profile along the up axis
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from .artifacts import CaptureArtifact, SegmentationArtifact, Viewpoint
from .config import ReconstructionConfig
from .errors import InsufficientDataError
from .geometry import (
    backproject_pixels,
    horizontal_component,
    normalize,
    projected_hull_area,
    remove_outliers,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HeightProfile:
    """Heights (m) of the observed points along the world up axis"""
    minimum: float = 0.0
    maximum: float = 0.0
    mean: float = 0.0
    std: float = 0.0

    @property
    def extent(self) -> float:
        return self.maximum - self.minimum

    @classmethod
    def from_heights(cls, heights: np.ndarray) -> "HeightProfile":
        if len(heights) == 0:
            return cls()
        return cls(
            minimum=float(heights.min()),
            maximum=float(heights.max()),
            mean=float(heights.mean()),
            std=float(heights.std())
        )


@dataclass(frozen=True, eq=False)
class PartialObservation:
    """
    Geometric summary of one viewpoint

    Args:
        viewpoint: TOP or SIDE
        footprint_area: projected area of the masked region (m²)
        height_profile: height statistics along the up axis
        valid_sample_fraction: masked pixels with valid depth / masked pixels
        centroid: (3,) mean world position of the points
        viewing_axis: (3,) unit normal of the footprint plane
        num_points: points kept after filtering
        num_masked_pixels: pixels above the mask threshold
    """
    viewpoint: Viewpoint
    footprint_area: float
    height_profile: HeightProfile
    valid_sample_fraction: float
    centroid: np.ndarray
    viewing_axis: np.ndarray
    num_points: int = 0
    num_masked_pixels: int = 0

    def __post_init__(self):
        for name in ('centroid', 'viewing_axis'):
            array = np.array(getattr(self, name), dtype=np.float64).reshape(3)
            array.setflags(write=False)
            object.__setattr__(self, name, array)

    def replace(self, **changes) -> "PartialObservation":
        """Copy with some fields changed"""
        values = {
            'viewpoint': self.viewpoint,
            'footprint_area': self.footprint_area,
            'height_profile': self.height_profile,
            'valid_sample_fraction': self.valid_sample_fraction,
            'centroid': self.centroid,
            'viewing_axis': self.viewing_axis,
            'num_points': self.num_points,
            'num_masked_pixels': self.num_masked_pixels
        }
        values.update(changes)
        return PartialObservation(**values)


class ViewReconstructor:
    """
    Builds PartialObservations from capture/segmentation pairs

    Stateless apart from its configuration; safe to share between threads.
    """

    def __init__(self, config: Optional[ReconstructionConfig] = None):
        self.config = config or ReconstructionConfig()
        self.up_axis = normalize(self.config.up_axis)

    def primary_axis(self, capture: CaptureArtifact) -> np.ndarray:
        """
        Normal of the plane the footprint is measured in

        TOP: the world up axis. SIDE: the optical axis flattened onto the
        horizontal plane (the optical axis itself if the camera looks
        straight up or down).
        """
        if capture.viewpoint is Viewpoint.TOP:
            return self.up_axis

        axis = horizontal_component(capture.pose.optical_axis, self.up_axis)
        if axis is None:
            logger.warning("side camera looks along the up axis; using optical axis")
            return normalize(capture.pose.optical_axis)
        return axis

    def world_points(
        self,
        capture: CaptureArtifact,
        segmentation: SegmentationArtifact
    ):
        """
        Back-project valid masked pixels

        Returns:
            points: (N, 3) world coordinates (m)
            num_masked: number of pixels above the mask threshold
        """
        cfg = self.config

        # 1. masked pixels
        masked = segmentation.positive_pixels(cfg.mask_threshold)
        v, u = np.nonzero(masked)
        num_masked = len(u)

        # 2. registered depth samples
        stride_v, stride_u = capture.depth_stride
        depth = capture.depth_map[v // stride_v, u // stride_u]

        valid = np.isfinite(depth)
        if cfg.min_depth_m is not None:
            valid &= depth >= cfg.min_depth_m
        if cfg.max_depth_m is not None:
            valid &= depth <= cfg.max_depth_m

        # 3. camera frame -> world frame
        camera_points = backproject_pixels(u[valid], v[valid], depth[valid], capture.intrinsics)
        points = capture.pose.transform(camera_points)

        return points, num_masked

    def reconstruct(
        self,
        capture: CaptureArtifact,
        segmentation: SegmentationArtifact
    ) -> PartialObservation:
        """
        Args:
            capture: capture artifact of one viewpoint
            segmentation: mask produced from that capture

        Returns:
            observation: PartialObservation for the viewpoint

        Raises:
            ValueError: segmentation does not belong to the capture
            InsufficientDataError: too few masked pixels carry valid depth
        """
        cfg = self.config
        segmentation.check_matches(capture)
        viewpoint = capture.viewpoint
        axis = self.primary_axis(capture)

        points, num_masked = self.world_points(capture, segmentation)

        if num_masked == 0:
            logger.info("%s: empty mask, zero-volume observation", viewpoint.value)
            return PartialObservation(
                viewpoint=viewpoint,
                footprint_area=0.0,
                height_profile=HeightProfile(),
                valid_sample_fraction=1.0,
                centroid=np.zeros(3),
                viewing_axis=axis,
                num_points=0,
                num_masked_pixels=0
            )

        valid_fraction = len(points) / num_masked
        logger.debug(
            "%s: %d / %d masked pixels with valid depth (%.1f%%)",
            viewpoint.value, len(points), num_masked, valid_fraction * 100
        )

        if valid_fraction < cfg.min_valid_fraction:
            raise InsufficientDataError(viewpoint, valid_fraction, cfg.min_valid_fraction)

        # 4. outliers
        if cfg.outlier_sigma is not None:
            points = remove_outliers(points, cfg.outlier_sigma)

        # 5. footprint and height profile
        footprint_area = projected_hull_area(points, axis)
        heights = points @ self.up_axis
        profile = HeightProfile.from_heights(heights)
        centroid = points.mean(axis=0) if len(points) else np.zeros(3)

        logger.info(
            "%s: footprint %.5f m², height extent %.4f m, %d points",
            viewpoint.value, footprint_area, profile.extent, len(points)
        )

        return PartialObservation(
            viewpoint=viewpoint,
            footprint_area=footprint_area,
            height_profile=profile,
            valid_sample_fraction=valid_fraction,
            centroid=centroid,
            viewing_axis=axis,
            num_points=len(points),
            num_masked_pixels=num_masked
        )
