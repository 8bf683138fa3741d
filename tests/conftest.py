"""
pytest configuration: synthetic two-view scenes

The scene is a 99 mm × 99 mm × 30 mm block of food standing on a table
(world frame Z up, table at Z = 0):

- TOP camera 0.5 m above the table looking straight down
  (fx = fy = 470, so one pixel is 1 mm on the block's top face)
- SIDE camera 0.5 m in front of the block at mid-height looking along +Y
  (fx = fy = 450, one pixel is 1 mm on the block's front face)
"""

import sys
from pathlib import Path

import numpy as np
import pytest

# Add project root
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from meal_volume.artifacts import (  # noqa: E402
    CameraIntrinsics,
    CameraPose,
    CaptureArtifact,
    SegmentationArtifact,
    Viewpoint,
)
from meal_volume.nutrition import FoodProfile, NutritionTable  # noqa: E402

FRAME_SIZE = 200

TOP_INTRINSICS = CameraIntrinsics(fx=470.0, fy=470.0, cx=99.5, cy=99.5)
TOP_POSE = CameraPose(
    rotation=[[1, 0, 0], [0, -1, 0], [0, 0, -1]],
    translation=[0.0, 0.0, 0.5]
)
# block top face at Z = 0.03
TOP_DEPTH = 0.47
TOP_ROWS = slice(50, 150)
TOP_COLS = slice(50, 150)

SIDE_INTRINSICS = CameraIntrinsics(fx=450.0, fy=450.0, cx=99.5, cy=100.0)
SIDE_POSE = CameraPose(
    rotation=[[1, 0, 0], [0, 0, 1], [0, -1, 0]],
    translation=[0.0, -0.5, 0.015]
)
# block front face at Y = -0.05
SIDE_DEPTH = 0.45
SIDE_ROWS = slice(85, 116)
SIDE_COLS = slice(50, 150)

# (0.099 m)^2 footprint × 0.03 m height × 0.6 fill factor
EXPECTED_VOLUME_ML = 0.099 ** 2 * 0.03 * 0.6 * 1e6


def make_capture(viewpoint, invalid_fraction=0.0, seed=0, timestamp=1000.0, depth_stride=1):
    """Synthetic capture of the block; a share of object pixels made invalid"""
    viewpoint = Viewpoint(viewpoint)
    if viewpoint is Viewpoint.TOP:
        intrinsics, pose, object_depth, rows, cols = TOP_INTRINSICS, TOP_POSE, TOP_DEPTH, TOP_ROWS, TOP_COLS
        background = 0.5
    else:
        intrinsics, pose, object_depth, rows, cols = SIDE_INTRINSICS, SIDE_POSE, SIDE_DEPTH, SIDE_ROWS, SIDE_COLS
        background = 0.9

    depth = np.full((FRAME_SIZE, FRAME_SIZE), background)
    depth[rows, cols] = object_depth

    if invalid_fraction > 0:
        rng = np.random.default_rng(seed)
        region = depth[rows, cols]
        region[rng.random(region.shape) < invalid_fraction] = np.nan
        depth[rows, cols] = region

    if depth_stride > 1:
        depth = depth[::depth_stride, ::depth_stride]

    rgb = np.zeros((FRAME_SIZE, FRAME_SIZE, 3), dtype=np.uint8)
    rgb[rows, cols] = (200, 180, 120)

    return CaptureArtifact(
        rgb_frame=rgb,
        depth_map=depth,
        intrinsics=intrinsics,
        pose=pose,
        viewpoint=viewpoint,
        timestamp=timestamp
    )


def make_mask(viewpoint):
    viewpoint = Viewpoint(viewpoint)
    rows, cols = (TOP_ROWS, TOP_COLS) if viewpoint is Viewpoint.TOP else (SIDE_ROWS, SIDE_COLS)
    mask = np.zeros((FRAME_SIZE, FRAME_SIZE), dtype=bool)
    mask[rows, cols] = True
    return mask


def make_segmentation(capture, mask=None, predicted_class="rice", confidence=0.9):
    if mask is None:
        mask = make_mask(capture.viewpoint)
    return SegmentationArtifact.for_capture(capture, mask, predicted_class, confidence)


@pytest.fixture
def top_capture():
    return make_capture(Viewpoint.TOP)


@pytest.fixture
def side_capture():
    return make_capture(Viewpoint.SIDE)


@pytest.fixture
def rice_profile():
    """Rice with density 1.0 g/mL"""
    return FoodProfile(
        name="rice",
        density_g_per_ml=1.0,
        calories=1.3,
        protein=0.027,
        fat=0.003,
        carbs=0.28
    )


@pytest.fixture
def rice_table(rice_profile):
    return NutritionTable([rice_profile])
