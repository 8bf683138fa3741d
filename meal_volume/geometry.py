#!/usr/bin/env python3
"""
Geometry Utilities

Pinhole back-projection and planar measurements used by the view
reconstructor.
"""

import logging
from typing import Optional

import numpy as np
from scipy.spatial import ConvexHull, QhullError

from .artifacts import CameraIntrinsics

logger = logging.getLogger(__name__)


def backproject_pixels(
    u: np.ndarray,
    v: np.ndarray,
    depth_m: np.ndarray,
    intrinsics: CameraIntrinsics
) -> np.ndarray:
    """
    Pixel coordinates + depth to camera-frame points

    Args:
        u: (N,) pixel x coordinates
        v: (N,) pixel y coordinates
        depth_m: (N,) distance along the optical axis (m)
        intrinsics: camera intrinsics

    Returns:
        points: (N, 3) [x, y, z] in metres, camera frame
    """
    z = np.asarray(depth_m, dtype=np.float64)
    x = (np.asarray(u, dtype=np.float64) - intrinsics.cx) * z / intrinsics.fx
    y = (np.asarray(v, dtype=np.float64) - intrinsics.cy) * z / intrinsics.fy

    return np.stack([x, y, z], axis=1)


def normalize(vector: np.ndarray) -> np.ndarray:
    vector = np.asarray(vector, dtype=np.float64)
    norm = np.linalg.norm(vector)
    if norm == 0:
        raise ValueError("cannot normalize a zero vector")
    return vector / norm


def horizontal_component(axis: np.ndarray, up: np.ndarray) -> Optional[np.ndarray]:
    """
    Part of `axis` perpendicular to `up`, normalized

    Returns None when `axis` is (nearly) parallel to `up`.
    """
    up = normalize(up)
    flat = np.asarray(axis, dtype=np.float64) - np.dot(axis, up) * up
    if np.linalg.norm(flat) < 1e-9:
        return None
    return normalize(flat)


def plane_basis(normal: np.ndarray) -> np.ndarray:
    """
    Orthonormal basis of the plane perpendicular to `normal`

    Returns:
        basis: (2, 3) rows e1, e2
    """
    normal = normalize(normal)

    # Seed with the world axis least aligned with the normal
    seed = np.zeros(3)
    seed[np.argmin(np.abs(normal))] = 1.0

    e1 = normalize(np.cross(normal, seed))
    e2 = np.cross(normal, e1)

    return np.stack([e1, e2])


def projected_hull_area(points: np.ndarray, normal: np.ndarray) -> float:
    """
    Area of the convex hull of `points` projected onto the plane
    perpendicular to `normal`

    Fewer than three points, or points that project onto a line, have zero
    area.
    """
    if len(points) < 3:
        return 0.0

    coords = points @ plane_basis(normal).T

    try:
        # For 2-D input ConvexHull.volume is the enclosed area
        hull = ConvexHull(coords)
    except QhullError:
        logger.debug("degenerate footprint (%d points), area 0", len(points))
        return 0.0

    return float(hull.volume)


def remove_outliers(points: np.ndarray, sigma: float, min_points: int = 10) -> np.ndarray:
    """
    Drop points farther than `sigma` standard deviations from the mean on
    any axis

    Point sets smaller than `min_points` are returned unchanged.
    """
    if len(points) < min_points:
        return points

    mean = points.mean(axis=0)
    std = points.std(axis=0)

    # Tolerance keeps flat axes (std == 0) intact
    keep = np.all(np.abs(points - mean) <= sigma * std + 1e-12, axis=1)

    removed = len(points) - int(keep.sum())
    if removed:
        logger.debug("outlier filter removed %d / %d points", removed, len(points))

    return points[keep]
