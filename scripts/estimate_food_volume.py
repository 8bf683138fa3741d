#!/usr/bin/env python3
"""
Two-View Food Volume Estimation

Runs the capture session offline on a TOP and a SIDE capture:

1. Load RGB / depth / mask / metadata for each view
2. Reconstruct each view (footprint area, height profile)
3. Fuse the two views into a volume (mL)
4. Project mass and nutrition from the food class

Usage:
  python3 scripts/estimate_food_volume.py \\
    --top-rgb scans/top/color.png --top-depth scans/top/depth_raw.npy \\
    --top-mask scans/top/mask.png --top-meta scans/top/metadata.json \\
    --side-rgb scans/side/color.png --side-depth scans/side/depth_raw.npy \\
    --side-mask scans/side/mask.png --side-meta scans/side/metadata.json \\
    --food-class rice \\
    --output results/volume_estimation.json
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import argparse
import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path

import cv2

from meal_volume.artifacts import Viewpoint
from meal_volume.config import PipelineConfig, load_config
from meal_volume.errors import MealVolumeError, UnknownClassError
from meal_volume.logging_config import setup_logging
from meal_volume.mask_processing import visualize_mask
from meal_volume.nutrition import NutritionTable
from meal_volume.offline import (
    FileCaptureSource,
    MaskFileSegmenter,
    ViewFiles,
    component_estimates,
    run_offline_session,
)
from meal_volume.session import CaptureSession

logger = logging.getLogger("estimate_food_volume")


def save_overlays(session: CaptureSession, output_dir: str):
    """Write mask overlays of both views for inspection"""
    for viewpoint in (Viewpoint.TOP, Viewpoint.SIDE):
        view = session.view(viewpoint)
        if view.capture is None or view.segmentation is None:
            continue

        rgb = view.capture.rgb_frame
        if rgb.ndim == 2:
            rgb = cv2.cvtColor(rgb, cv2.COLOR_GRAY2RGB)
        overlay = visualize_mask(rgb, view.segmentation.positive_pixels())

        overlay_path = os.path.join(output_dir, f"{viewpoint.value}_segmented.png")
        cv2.imwrite(overlay_path, cv2.cvtColor(overlay, cv2.COLOR_RGB2BGR))
        logger.info("overlay saved: %s", overlay_path)


def build_result(session: CaptureSession, estimate) -> dict:
    top = session.view(Viewpoint.TOP).observation
    side = session.view(Viewpoint.SIDE).observation

    result = {
        'timestamp': datetime.now().isoformat(),
        'estimate': estimate.as_dict(),
        'volume': estimate.volume.to_dict(),
        'nutrition': estimate.nutrition.to_dict(),
        'display': estimate.nutrition.rounded().to_dict(),
        'views': {}
    }
    for observation in (top, side):
        result['views'][observation.viewpoint.value] = {
            'footprint_area_m2': observation.footprint_area,
            'height_extent_m': observation.height_profile.extent,
            'valid_sample_fraction': observation.valid_sample_fraction,
            'num_points': observation.num_points
        }
    return result


def add_components(result: dict, estimate, pixel_counts: dict, table: NutritionTable):
    """Per-class nutrition of a mixed plate, split by TOP mask area"""
    if not pixel_counts:
        return
    try:
        components, total = component_estimates(estimate.volume, pixel_counts, table)
    except UnknownClassError as e:
        logger.warning("per-class breakdown skipped: %s", e)
        return

    result['pixel_counts'] = pixel_counts
    result['components'] = {label: c.to_dict() for label, c in components.items()}
    result['components_total'] = total.to_dict()


def main():
    parser = argparse.ArgumentParser(
        description="Two-view food volume and nutrition estimation"
    )

    for view in ('top', 'side'):
        parser.add_argument(f'--{view}-rgb', required=True, help=f'{view} RGB image path')
        parser.add_argument(f'--{view}-depth', required=True,
                            help=f'{view} depth map (.npy in metres, or 16-bit PNG)')
        parser.add_argument(f'--{view}-mask', required=True, help=f'{view} food mask image')
        parser.add_argument(f'--{view}-meta', default=None,
                            help=f'{view} metadata JSON (intrinsics, pose, depth_scale)')

    parser.add_argument('--food-class', default=None, help='food class label (e.g. rice)')
    parser.add_argument('--confidence', type=float, default=None, help='confidence of the food class')
    parser.add_argument('--labels', default=None,
                        help='comma-separated class names when masks hold class ids')
    parser.add_argument('--nutrition-table', default=None,
                        help='categories JSON (per 100 g); defaults to the bundled table')
    parser.add_argument('--config', default=None, help='pipeline YAML config')
    parser.add_argument('--no-refine', action='store_true', help='skip mask cleanup')
    parser.add_argument(
        '--output',
        default='results/volume_estimation.json',
        help='output JSON path (default: results/volume_estimation.json)'
    )
    parser.add_argument('--no-visualize', action='store_true', help='do not write overlays')
    parser.add_argument('--log-file', default=None, help='also log to this file')
    parser.add_argument('--debug', action='store_true', help='debug logging')

    args = parser.parse_args()
    setup_logging(log_file=args.log_file, debug=args.debug)

    views = {
        Viewpoint.TOP: ViewFiles(args.top_rgb, args.top_depth, args.top_mask, args.top_meta),
        Viewpoint.SIDE: ViewFiles(args.side_rgb, args.side_depth, args.side_mask, args.side_meta),
    }
    labels = args.labels.split(',') if args.labels else None

    config = load_config(args.config) if args.config else PipelineConfig()
    table = NutritionTable.from_json(args.nutrition_table) if args.nutrition_table else NutritionTable.default()

    segmenter = MaskFileSegmenter(views, args.food_class, args.confidence, labels, refine=not args.no_refine)
    session = CaptureSession(
        segmenter=segmenter,
        capture_source=FileCaptureSource(views),
        nutrition_lookup=table,
        config=config
    )

    output_dir = str(Path(args.output).parent)
    os.makedirs(output_dir, exist_ok=True)

    try:
        estimate = asyncio.run(run_offline_session(session))
    except (MealVolumeError, FileNotFoundError, ValueError) as e:
        logger.error("estimation failed: %s", e)
        sys.exit(1)

    if not args.no_visualize:
        save_overlays(session, output_dir)

    result = build_result(session, estimate)
    if labels is not None:
        add_components(result, estimate, segmenter.pixel_counts.get(Viewpoint.TOP), table)
    with open(args.output, 'w') as f:
        json.dump(result, f, indent=2)

    display = estimate.nutrition.rounded()
    logger.info(
        "volume %.1f mL | mass %.1f g | %.1f kcal | P %.1f g F %.1f g C %.1f g | confidence %.2f",
        display.volume_ml, display.mass_grams, display.calories,
        display.protein_grams, display.fat_grams, display.carb_grams,
        estimate.volume.confidence
    )
    logger.info("result saved: %s", args.output)


if __name__ == "__main__":
    main()
