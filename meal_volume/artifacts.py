#!/usr/bin/env python3
"""
Capture and Segmentation Artifacts

One viewpoint of the two-view workflow produces two immutable bundles:

1. CaptureArtifact: RGB frame + registered depth map (metres, NaN = invalid)
   + camera intrinsics + camera pose at capture time
2. SegmentationArtifact: food-region mask registered to the RGB frame,
   plus the optional predicted class and confidence

Arrays are copied on construction and flagged read-only.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Sequence

import numpy as np
from scipy.spatial.transform import Rotation


class Viewpoint(Enum):
    """Fixed camera poses of a capture session"""
    TOP = "top"
    SIDE = "side"


def _frozen_array(values, dtype=None) -> np.ndarray:
    array = np.array(values, dtype=dtype, copy=True)
    array.setflags(write=False)
    return array


@dataclass(frozen=True)
class CameraIntrinsics:
    """Pinhole intrinsics in pixels of the RGB frame"""
    fx: float
    fy: float
    cx: float
    cy: float

    def __post_init__(self):
        if self.fx <= 0 or self.fy <= 0:
            raise ValueError(f"focal lengths must be positive: fx={self.fx}, fy={self.fy}")

    @classmethod
    def from_dict(cls, values: Dict) -> "CameraIntrinsics":
        """Build from a metadata dict with keys fx, fy, cx, cy"""
        return cls(
            fx=float(values['fx']),
            fy=float(values['fy']),
            cx=float(values['cx']),
            cy=float(values['cy'])
        )

    def to_dict(self) -> Dict[str, float]:
        return {'fx': self.fx, 'fy': self.fy, 'cx': self.cx, 'cy': self.cy}


@dataclass(frozen=True, eq=False)
class CameraPose:
    """
    Camera-to-world rigid transform

    The world frame is fixed for the whole session. Camera axes follow the
    usual convention: +X right, +Y down, +Z along the optical axis.

    Args:
        rotation: (3, 3) rotation matrix, columns are camera axes in world
        translation: (3,) camera position in world (m)
    """
    rotation: np.ndarray
    translation: np.ndarray

    def __post_init__(self):
        rotation = _frozen_array(self.rotation, dtype=np.float64)
        translation = _frozen_array(self.translation, dtype=np.float64).reshape(3)
        if rotation.shape != (3, 3):
            raise ValueError(f"rotation must be 3x3, got {rotation.shape}")
        if not np.allclose(rotation @ rotation.T, np.eye(3), atol=1e-6):
            raise ValueError("rotation matrix is not orthonormal")
        translation.setflags(write=False)
        object.__setattr__(self, 'rotation', rotation)
        object.__setattr__(self, 'translation', translation)

    @classmethod
    def identity(cls) -> "CameraPose":
        return cls(np.eye(3), np.zeros(3))

    @classmethod
    def from_quaternion(
        cls,
        translation: Sequence[float],
        quaternion: Sequence[float]
    ) -> "CameraPose":
        """
        Args:
            translation: [tx, ty, tz]
            quaternion: [qx, qy, qz, qw] (scalar last, AR framework order)
        """
        rotation = Rotation.from_quat(quaternion).as_matrix()
        return cls(rotation, np.asarray(translation, dtype=np.float64))

    @classmethod
    def from_matrix(cls, matrix) -> "CameraPose":
        """Build from a 4x4 homogeneous camera-to-world matrix"""
        matrix = np.asarray(matrix, dtype=np.float64)
        if matrix.shape != (4, 4):
            raise ValueError(f"pose matrix must be 4x4, got {matrix.shape}")
        return cls(matrix[:3, :3], matrix[:3, 3])

    @property
    def optical_axis(self) -> np.ndarray:
        """Camera +Z expressed in world coordinates"""
        return self.rotation[:, 2].copy()

    def transform(self, points: np.ndarray) -> np.ndarray:
        """Camera-frame points (N, 3) to world-frame points (N, 3)"""
        return points @ self.rotation.T + self.translation

    def to_dict(self) -> Dict:
        return {
            'rotation': self.rotation.tolist(),
            'translation': self.translation.tolist()
        }


@dataclass(frozen=True, eq=False)
class CaptureArtifact:
    """
    RGB + depth + camera bundle for one viewpoint

    Args:
        rgb_frame: (H, W, C) or (H, W) image
        depth_map: (h, w) distance from camera in metres; NaN marks an invalid
            sample. H and W must be integer multiples of h and w.
        intrinsics: camera intrinsics for the RGB resolution
        pose: camera-to-world pose
        viewpoint: TOP or SIDE
        timestamp: capture time (seconds since epoch)
    """
    rgb_frame: np.ndarray
    depth_map: np.ndarray
    intrinsics: CameraIntrinsics
    pose: CameraPose
    viewpoint: Viewpoint
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self):
        rgb = _frozen_array(self.rgb_frame)
        depth = _frozen_array(self.depth_map, dtype=np.float64)

        if rgb.ndim not in (2, 3):
            raise ValueError(f"rgb_frame must be HxW or HxWxC, got shape {rgb.shape}")
        if depth.ndim != 2:
            raise ValueError(f"depth_map must be 2-D, got shape {depth.shape}")

        height, width = rgb.shape[:2]
        depth_h, depth_w = depth.shape
        if depth_h == 0 or depth_w == 0 or height % depth_h or width % depth_w:
            raise ValueError(
                f"depth map {depth_w}x{depth_h} is not aligned with "
                f"RGB frame {width}x{height}"
            )

        # NaN is the only invalid sentinel, zero or negative distances are errors
        finite = np.isfinite(depth)
        if np.any(depth[finite] <= 0):
            raise ValueError("depth_map contains non-positive distances; use NaN for invalid samples")
        if np.any(np.isinf(depth)):
            raise ValueError("depth_map contains infinite distances; use NaN for invalid samples")

        object.__setattr__(self, 'rgb_frame', rgb)
        object.__setattr__(self, 'depth_map', depth)
        object.__setattr__(self, 'viewpoint', Viewpoint(self.viewpoint))

    @classmethod
    def from_raw_depth(
        cls,
        rgb_frame: np.ndarray,
        raw_depth: np.ndarray,
        intrinsics: CameraIntrinsics,
        pose: CameraPose,
        viewpoint: Viewpoint,
        depth_scale: float = 0.001,
        timestamp: Optional[float] = None
    ) -> "CaptureArtifact":
        """
        Build from raw sensor depth units where 0 means "no data"

        Args:
            raw_depth: (h, w) integer depth units
            depth_scale: metres per unit (RealSense: 0.001, Nutrition5k: 0.0001)
        """
        depth_m = np.asarray(raw_depth, dtype=np.float64) * depth_scale
        depth_m[~(depth_m > 0)] = np.nan

        kwargs = {}
        if timestamp is not None:
            kwargs['timestamp'] = timestamp
        return cls(rgb_frame, depth_m, intrinsics, pose, viewpoint, **kwargs)

    @property
    def frame_size(self):
        """(height, width) of the RGB frame"""
        return self.rgb_frame.shape[:2]

    @property
    def depth_stride(self):
        """(row, column) subsampling between RGB and depth grids"""
        height, width = self.frame_size
        depth_h, depth_w = self.depth_map.shape
        return height // depth_h, width // depth_w

    def valid_depth_fraction(self) -> float:
        return float(np.isfinite(self.depth_map).mean())


@dataclass(frozen=True, eq=False)
class SegmentationArtifact:
    """
    Food-region mask for one capture

    Args:
        mask: (H, W) bool or float membership in [0, 1] at RGB resolution
        viewpoint: viewpoint of the parent capture
        capture_timestamp: timestamp of the parent capture
        predicted_class: food class label, if the collaborator returned one
        confidence: classification confidence in [0, 1]
    """
    mask: np.ndarray
    viewpoint: Viewpoint
    capture_timestamp: float
    predicted_class: Optional[str] = None
    confidence: Optional[float] = None

    def __post_init__(self):
        mask = _frozen_array(self.mask)
        if mask.ndim != 2:
            raise ValueError(f"mask must be 2-D, got shape {mask.shape}")
        if mask.dtype != bool:
            mask = _frozen_array(mask, dtype=np.float64)
            if mask.size and (np.nanmin(mask) < 0 or np.nanmax(mask) > 1):
                raise ValueError("mask values must lie in [0, 1]")
        if self.confidence is not None and not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must lie in [0, 1], got {self.confidence}")

        object.__setattr__(self, 'mask', mask)
        object.__setattr__(self, 'viewpoint', Viewpoint(self.viewpoint))

    @classmethod
    def for_capture(
        cls,
        capture: CaptureArtifact,
        mask: np.ndarray,
        predicted_class: Optional[str] = None,
        confidence: Optional[float] = None
    ) -> "SegmentationArtifact":
        """Build an artifact registered to `capture`"""
        segmentation = cls(
            mask=mask,
            viewpoint=capture.viewpoint,
            capture_timestamp=capture.timestamp,
            predicted_class=predicted_class,
            confidence=confidence
        )
        segmentation.check_matches(capture)
        return segmentation

    def check_matches(self, capture: CaptureArtifact):
        """Raise ValueError unless this mask belongs to `capture`"""
        if self.viewpoint is not capture.viewpoint:
            raise ValueError(
                f"segmentation viewpoint {self.viewpoint.value} does not match "
                f"capture viewpoint {capture.viewpoint.value}"
            )
        if self.mask.shape != capture.frame_size:
            raise ValueError(
                f"mask shape {self.mask.shape} does not match RGB frame {capture.frame_size}"
            )
        if self.capture_timestamp != capture.timestamp:
            raise ValueError("segmentation was produced from a different capture")

    def positive_pixels(self, threshold: float = 0.5) -> np.ndarray:
        """Boolean mask of pixels whose membership exceeds `threshold`"""
        if self.mask.dtype == bool:
            return self.mask
        return self.mask > threshold


@dataclass(frozen=True)
class SegmentationResponse:
    """What the segmentation collaborator returns for one capture"""
    mask: np.ndarray
    predicted_class: Optional[str] = None
    confidence: Optional[float] = None


@dataclass(frozen=True)
class ClassificationResult:
    """Quick-path classification without a mask"""
    predicted_class: str
    confidence: float
    confidence_percentage: float
    threshold_met: bool
    message: str = ""

    @classmethod
    def from_response(cls, payload: Dict) -> "ClassificationResult":
        """
        Parse the classification service payload

        Args:
            payload: {'class', 'confidence', 'confidence_percentage',
                      'threshold_met', 'message'}
        """
        confidence = float(payload.get('confidence', 0.0))
        return cls(
            predicted_class=str(payload['class']),
            confidence=confidence,
            confidence_percentage=float(payload.get('confidence_percentage', confidence * 100)),
            threshold_met=bool(payload.get('threshold_met', False)),
            message=str(payload.get('message', ''))
        )
