#!/usr/bin/env python3
"""
Offline Two-View Pipeline

Runs a full CaptureSession from files on disk instead of a live camera and
model service. Each view needs:

- RGB image (.png / .jpg)
- depth map: .npy (metres, or raw units with depth_scale) or 16-bit PNG
- mask image: binary mask (non-zero = food), or a class-id mask with labels
- metadata JSON:
    {
      "camera_intrinsics": {"fx": ..., "fy": ..., "cx": ..., "cy": ...},
      "pose": {"translation": [tx, ty, tz], "quaternion": [qx, qy, qz, qw]}
              or {"matrix": [[...4x4...]]},
      "depth_scale": 0.001            # optional, metres per raw unit
    }
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import cv2
import numpy as np

from .artifacts import (
    CameraIntrinsics,
    CameraPose,
    CaptureArtifact,
    SegmentationResponse,
    Viewpoint,
)
from .mask_processing import class_pixel_counts, food_mask_from_labels, refine_label_mask, refine_mask
from .nutrition import NutritionEstimate, NutritionProjector, NutritionTable
from .session import CaptureSession, MealEstimate
from .volume_fusion import VolumeEstimate

logger = logging.getLogger(__name__)

# D405 @ 848x480
DEFAULT_INTRINSICS = {'fx': 424.0, 'fy': 424.0, 'cx': 424.0, 'cy': 240.0}


@dataclass(frozen=True)
class ViewFiles:
    """Input files of one viewpoint"""
    rgb: str
    depth: str
    mask: str
    metadata: Optional[str] = None


def load_rgb(rgb_path: str) -> np.ndarray:
    rgb_image = cv2.imread(rgb_path)
    if rgb_image is None:
        raise FileNotFoundError(f"RGB image not found: {rgb_path}")
    return cv2.cvtColor(rgb_image, cv2.COLOR_BGR2RGB)


def load_depth(depth_path: str, depth_scale: float = 0.001) -> np.ndarray:
    """
    Load a depth map in metres, NaN where the sensor had no data

    Args:
        depth_path: .npy array or 16-bit PNG of raw units
        depth_scale: metres per raw unit (ignored for float .npy arrays,
            which are taken to be metres already)

    Returns:
        depth_m: (H, W) float64
    """
    if depth_path.endswith('.npy'):
        depth = np.load(depth_path)
    else:
        depth = cv2.imread(depth_path, cv2.IMREAD_ANYDEPTH)
        if depth is None:
            raise FileNotFoundError(f"depth image not found: {depth_path}")

    if np.issubdtype(depth.dtype, np.floating):
        depth_m = depth.astype(np.float64)
    else:
        depth_m = depth.astype(np.float64) * depth_scale

    # 0 means "no data" for the sensor
    depth_m[~(depth_m > 0)] = np.nan
    return depth_m


def load_mask(mask_path: str) -> np.ndarray:
    mask = cv2.imread(mask_path, cv2.IMREAD_UNCHANGED)
    if mask is None:
        raise FileNotFoundError(f"mask image not found: {mask_path}")
    if mask.ndim == 3:
        mask = mask[..., 0]
    return mask


def load_camera_metadata(metadata_path: Optional[str]) -> Dict:
    """
    Read intrinsics, pose and depth scale from a metadata JSON

    Missing file or missing keys fall back to D405 defaults, identity pose
    and 1 mm depth units.

    Returns:
        metadata: {'intrinsics': CameraIntrinsics, 'pose': CameraPose,
                   'depth_scale': float}
    """
    metadata = {}
    if metadata_path and os.path.exists(metadata_path):
        with open(metadata_path, 'r') as f:
            metadata = json.load(f)
    else:
        logger.warning("no metadata at %s, using default intrinsics", metadata_path)

    intrinsics = CameraIntrinsics.from_dict(metadata.get('camera_intrinsics', DEFAULT_INTRINSICS))

    pose_data = metadata.get('pose')
    if pose_data is None:
        pose = CameraPose.identity()
    elif 'matrix' in pose_data:
        pose = CameraPose.from_matrix(pose_data['matrix'])
    elif 'quaternion' in pose_data:
        pose = CameraPose.from_quaternion(pose_data['translation'], pose_data['quaternion'])
    else:
        pose = CameraPose(pose_data['rotation'], pose_data['translation'])

    return {
        'intrinsics': intrinsics,
        'pose': pose,
        'depth_scale': float(metadata.get('depth_scale', 0.001))
    }


class FileCaptureSource:
    """Capture collaborator backed by files"""

    def __init__(self, views: Dict[Viewpoint, ViewFiles]):
        self.views = views

    async def capture(self, viewpoint: Viewpoint) -> CaptureArtifact:
        files = self.views[viewpoint]
        metadata = await asyncio.to_thread(load_camera_metadata, files.metadata)
        rgb_frame = await asyncio.to_thread(load_rgb, files.rgb)
        depth_map = await asyncio.to_thread(load_depth, files.depth, metadata['depth_scale'])

        return CaptureArtifact(
            rgb_frame=rgb_frame,
            depth_map=depth_map,
            intrinsics=metadata['intrinsics'],
            pose=metadata['pose'],
            viewpoint=viewpoint
        )


class MaskFileSegmenter:
    """
    Segmentation collaborator backed by mask images

    With `labels`, masks hold class ids: each class is cleaned separately,
    the per-class pixel counts of the last mask of every view are kept in
    `pixel_counts`, and the class covering the most pixels is reported when
    no `food_class` is given.

    Args:
        views: input files per viewpoint
        food_class: label reported for every mask
        confidence: confidence reported with the label
        labels: class names when masks hold class ids instead of 0/255
        refine: apply morphological cleanup
    """

    def __init__(
        self,
        views: Dict[Viewpoint, ViewFiles],
        food_class: Optional[str] = None,
        confidence: Optional[float] = None,
        labels: Optional[Sequence[str]] = None,
        refine: bool = True
    ):
        self.views = views
        self.food_class = food_class
        self.confidence = confidence
        self.labels = labels
        self.refine = refine
        self.pixel_counts: Dict[Viewpoint, Dict[str, int]] = {}

    async def segment(self, capture: CaptureArtifact) -> SegmentationResponse:
        mask, counts = await asyncio.to_thread(self._load, capture.viewpoint, capture.frame_size)

        predicted_class = self.food_class
        if counts is not None:
            self.pixel_counts[capture.viewpoint] = counts
            if predicted_class is None and counts:
                predicted_class = max(counts, key=counts.get)
                logger.info("%s view: dominant class %s (%s)", capture.viewpoint.value, predicted_class, counts)

        return SegmentationResponse(mask=mask, predicted_class=predicted_class, confidence=self.confidence)

    def _load(self, viewpoint: Viewpoint, frame_size: Tuple[int, int]):
        raw = load_mask(self.views[viewpoint].mask)
        height, width = frame_size

        if self.labels is None:
            mask = raw > 0
            if self.refine:
                mask = refine_mask(mask)
            if mask.shape != frame_size:
                # Masks may come from a lower-resolution model
                mask = cv2.resize(mask.astype(np.uint8), (width, height), interpolation=cv2.INTER_NEAREST) > 0
            return mask, None

        if self.refine:
            raw = refine_label_mask(raw, self.labels)
        if raw.shape != frame_size:
            raw = cv2.resize(raw, (width, height), interpolation=cv2.INTER_NEAREST)

        return food_mask_from_labels(raw, self.labels), class_pixel_counts(raw, self.labels)


def component_estimates(
    volume: VolumeEstimate,
    pixel_counts: Dict[str, int],
    table: NutritionTable
) -> Tuple[Dict[str, NutritionEstimate], NutritionEstimate]:
    """
    Nutrition per food class of a mixed plate, split by mask area

    Returns:
        components: {label: NutritionEstimate}
        total: sum of the components

    Raises:
        UnknownClassError: a class with pixels has no table entry
    """
    components = NutritionProjector().project_components(volume, pixel_counts, table)
    return components, NutritionProjector.combine(components.values())


async def run_offline_session(session: CaptureSession, food_class: Optional[str] = None) -> MealEstimate:
    """
    Drive a session through the whole two-view workflow

    Returns:
        estimate: MealEstimate
    """
    for viewpoint in (Viewpoint.TOP, Viewpoint.SIDE):
        await session.capture(viewpoint)
        await session.segment(viewpoint)

    return await session.finalize(food_class)
