#!/usr/bin/env python3
"""
Mask Processing Module

Turns segmentation model output into a clean food mask:

- multi-class label masks → binary food mask (non-food classes excluded)
- morphological open/close + removal of small connected components
- per-class cleanup and contour smoothing of class-id masks
- overlay rendering for inspection
"""

import logging
from typing import Dict, Iterable, Sequence, Tuple

import cv2
import numpy as np

logger = logging.getLogger(__name__)

# Classes of the segmentation model that are never food
NON_FOOD_CLASSES = ("background", "food_containers", "dining_tools")


def _food_class_ids(labels: Sequence[str], excluded: Iterable[str]):
    excluded = {name.lower() for name in excluded}
    return [i for i, name in enumerate(labels) if name.lower() not in excluded]


def food_mask_from_labels(
    label_mask: np.ndarray,
    labels: Sequence[str],
    excluded: Iterable[str] = NON_FOOD_CLASSES
) -> np.ndarray:
    """
    Binary food mask from a per-pixel class-id mask

    Args:
        label_mask: (H, W) integer class ids indexing `labels`
        labels: class names of the segmentation model
        excluded: class names that are not food

    Returns:
        mask: (H, W) bool
    """
    food_ids = _food_class_ids(labels, excluded)
    return np.isin(label_mask, food_ids)


def class_pixel_counts(
    label_mask: np.ndarray,
    labels: Sequence[str],
    excluded: Iterable[str] = NON_FOOD_CLASSES
) -> Dict[str, int]:
    """
    Pixel count per food class present in `label_mask`

    Returns:
        counts: {class name: pixels}, classes with no pixels omitted
    """
    ids, counts = np.unique(label_mask, return_counts=True)
    food_ids = set(_food_class_ids(labels, excluded))

    return {
        labels[int(class_id)]: int(count)
        for class_id, count in zip(ids, counts)
        if int(class_id) in food_ids
    }


def refine_mask(
    mask: np.ndarray,
    kernel_size: int = 5,
    min_area: int = 10
) -> np.ndarray:
    """
    Clean a binary mask

    1. opening (removes speckle noise)
    2. closing (fills small holes)
    3. removal of connected components smaller than `min_area` pixels

    Args:
        mask: (H, W) bool or 0/1 array
        kernel_size: elliptic structuring element size (pixels)
        min_area: smallest component kept (pixels)

    Returns:
        refined: (H, W) bool
    """
    binary = (np.asarray(mask) > 0).astype(np.uint8)

    kernel = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (kernel_size, kernel_size))
    opened = cv2.morphologyEx(binary, cv2.MORPH_OPEN, kernel)
    closed = cv2.morphologyEx(opened, cv2.MORPH_CLOSE, kernel)

    num_components, component_labels, stats, _ = cv2.connectedComponentsWithStats(closed, connectivity=8)

    refined = np.zeros(closed.shape, dtype=bool)
    # Component 0 is the background
    for i in range(1, num_components):
        if stats[i, cv2.CC_STAT_AREA] >= min_area:
            refined |= component_labels == i

    logger.debug(
        "mask refined: %d -> %d pixels (%d components)",
        int(binary.sum()), int(refined.sum()), num_components - 1
    )

    return refined


def smooth_contours(mask: np.ndarray, epsilon: float = 2.0) -> np.ndarray:
    """
    Replace each outer contour of a binary mask by its polygon approximation

    Args:
        mask: (H, W) bool or 0/1 array
        epsilon: approximation tolerance in percent of the contour length

    Returns:
        smoothed: (H, W) bool, holes inside components are filled
    """
    binary = (np.asarray(mask) > 0).astype(np.uint8)
    contours, _ = cv2.findContours(binary, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)

    smoothed = np.zeros(binary.shape, dtype=np.uint8)
    for contour in contours:
        tolerance = epsilon * cv2.arcLength(contour, True) / 100.0
        approx = cv2.approxPolyDP(contour, tolerance, True)
        cv2.fillPoly(smoothed, [approx], 1)

    return smoothed > 0


def refine_label_mask(
    label_mask: np.ndarray,
    labels: Sequence[str],
    kernel_size: int = 5,
    min_area: int = 10,
    epsilon: float = 2.0,
    background_id: int = 0
) -> np.ndarray:
    """
    Clean every class of a class-id mask separately and merge them back

    Each class goes through refine_mask and smooth_contours. Classes are
    written in id order, so where two cleaned classes overlap the higher id
    wins. Pixels no class claims become `background_id`.

    Args:
        label_mask: (H, W) integer class ids indexing `labels`
        labels: class names of the segmentation model
        kernel_size, min_area: passed to refine_mask
        epsilon: passed to smooth_contours
        background_id: id skipped during cleanup and used for the fill

    Returns:
        refined: (H, W) array of the same dtype as `label_mask`
    """
    label_mask = np.asarray(label_mask)
    merged = np.full(label_mask.shape, background_id, dtype=label_mask.dtype)

    for class_id in range(len(labels)):
        if class_id == background_id:
            continue
        class_mask = label_mask == class_id
        if not class_mask.any():
            continue

        cleaned = smooth_contours(refine_mask(class_mask, kernel_size, min_area), epsilon)
        merged[cleaned] = class_id

    return merged


def visualize_mask(
    rgb_image: np.ndarray,
    mask: np.ndarray,
    alpha: float = 0.5,
    color: Tuple[int, int, int] = (0, 255, 0)
) -> np.ndarray:
    """
    Overlay a mask on an image

    Args:
        rgb_image: RGB image (H, W, 3) uint8
        mask: (H, W) bool
        alpha: overlay opacity
        color: mask colour (R, G, B)

    Returns:
        overlay: image with tinted mask and its outline
    """
    overlay = rgb_image.copy()
    mask_bool = mask.astype(bool)
    overlay[mask_bool] = (
        overlay[mask_bool] * (1 - alpha) +
        np.array(color) * alpha
    ).astype(np.uint8)

    contours, _ = cv2.findContours(
        mask_bool.astype(np.uint8),
        cv2.RETR_EXTERNAL,
        cv2.CHAIN_APPROX_SIMPLE
    )
    cv2.drawContours(overlay, contours, -1, color, 2)

    return overlay
