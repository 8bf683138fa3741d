#!/usr/bin/env python3
"""
Pipeline configuration

Empirical constants (fill factor, aspect ratios, thresholds, penalties) live
here rather than in the algorithms. YAML files may inherit from a parent file
through an `inherit_from` key; child values override parent values
recursively.

Example (configs/default.yaml):

    reconstruction:
      mask_threshold: 0.5
      min_valid_fraction: 0.3
    fusion:
      fill_factor: 0.6
      class_fill_factors:
        rice: 0.7
"""

import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import yaml

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconstructionConfig:
    """View reconstructor settings"""
    mask_threshold: float = 0.5
    min_valid_fraction: float = 0.3
    outlier_sigma: Optional[float] = 2.0
    min_depth_m: Optional[float] = None
    max_depth_m: Optional[float] = None
    up_axis: Tuple[float, float, float] = (0.0, 0.0, 1.0)

    def __post_init__(self):
        object.__setattr__(self, 'up_axis', tuple(float(x) for x in self.up_axis))
        _check_fraction('mask_threshold', self.mask_threshold)
        _check_fraction('min_valid_fraction', self.min_valid_fraction)
        if self.outlier_sigma is not None and self.outlier_sigma <= 0:
            raise ValueError(f"outlier_sigma must be positive, got {self.outlier_sigma}")
        if len(self.up_axis) != 3 or not any(self.up_axis):
            raise ValueError(f"up_axis must be a non-zero 3-vector, got {self.up_axis}")


@dataclass(frozen=True)
class FusionConfig:
    """Volume fusion settings"""
    fill_factor: float = 0.6
    class_fill_factors: Dict[str, float] = field(default_factory=dict)
    aspect_ratio: float = 0.3
    class_aspect_ratios: Dict[str, float] = field(default_factory=dict)
    min_valid_fraction: float = 0.5
    centroid_tolerance_m: float = 0.02
    misregistration_penalty: float = 0.5
    fallback_penalty: float = 0.5
    top_weight: float = 1.0
    side_weight: float = 1.0

    def __post_init__(self):
        object.__setattr__(self, 'class_fill_factors', _lower_keys(self.class_fill_factors))
        object.__setattr__(self, 'class_aspect_ratios', _lower_keys(self.class_aspect_ratios))

        for value in [self.fill_factor, *self.class_fill_factors.values()]:
            if not 0.0 < value <= 1.0:
                raise ValueError(f"fill factors must lie in (0, 1], got {value}")
        for value in [self.aspect_ratio, *self.class_aspect_ratios.values()]:
            if value <= 0:
                raise ValueError(f"aspect ratios must be positive, got {value}")
        _check_fraction('min_valid_fraction', self.min_valid_fraction)
        _check_fraction('misregistration_penalty', self.misregistration_penalty)
        _check_fraction('fallback_penalty', self.fallback_penalty)
        if self.centroid_tolerance_m < 0:
            raise ValueError("centroid_tolerance_m must be non-negative")
        if self.top_weight < 0 or self.side_weight < 0:
            raise ValueError("view weights must be non-negative")

    def fill_factor_for(self, food_class: Optional[str]) -> float:
        if food_class:
            return self.class_fill_factors.get(food_class.lower(), self.fill_factor)
        return self.fill_factor

    def aspect_ratio_for(self, food_class: Optional[str]) -> float:
        if food_class:
            return self.class_aspect_ratios.get(food_class.lower(), self.aspect_ratio)
        return self.aspect_ratio


@dataclass(frozen=True)
class PipelineConfig:
    """Top-level configuration"""
    reconstruction: ReconstructionConfig = field(default_factory=ReconstructionConfig)
    fusion: FusionConfig = field(default_factory=FusionConfig)

    @classmethod
    def from_dict(cls, values: Optional[Dict[str, Any]]) -> "PipelineConfig":
        values = values or {}
        _warn_unknown('pipeline', values, {'reconstruction', 'fusion'})
        return cls(
            reconstruction=_build(ReconstructionConfig, values.get('reconstruction')),
            fusion=_build(FusionConfig, values.get('fusion'))
        )

    def to_dict(self) -> Dict[str, Any]:
        values = asdict(self)
        values['reconstruction']['up_axis'] = list(self.reconstruction.up_axis)
        return values


def _check_fraction(name: str, value: float):
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must lie in [0, 1], got {value}")


def _lower_keys(mapping: Dict[str, float]) -> Dict[str, float]:
    return {str(key).lower(): float(value) for key, value in (mapping or {}).items()}


def _warn_unknown(section: str, values: Dict[str, Any], known):
    for key in values:
        if key not in known:
            logger.warning("ignoring unknown %s config key '%s'", section, key)


def _build(config_cls, values: Optional[Dict[str, Any]]):
    values = values or {}
    known = {f.name for f in fields(config_cls)}
    _warn_unknown(config_cls.__name__, values, known)
    return config_cls(**{k: v for k, v in values.items() if k in known})


def merge_configs(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge `override` into a copy of `base`"""
    merged = dict(base)

    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = merge_configs(merged[key], value)
        else:
            merged[key] = value

    return merged


def load_config_dict(config_path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load a YAML config file, resolving `inherit_from`

    Args:
        config_path: path to the YAML file

    Returns:
        config: merged configuration dict
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f) or {}

    if 'inherit_from' in config:
        parent_path = config_path.parent / config.pop('inherit_from')
        config = merge_configs(load_config_dict(parent_path), config)

    return config


def load_config(config_path: Union[str, Path]) -> PipelineConfig:
    """Load a YAML file into a PipelineConfig"""
    config = PipelineConfig.from_dict(load_config_dict(config_path))
    logger.debug("loaded config from %s", config_path)
    return config


def save_config(config: PipelineConfig, save_path: Union[str, Path]):
    save_path = Path(save_path)
    save_path.parent.mkdir(parents=True, exist_ok=True)

    with open(save_path, 'w', encoding='utf-8') as f:
        yaml.safe_dump(config.to_dict(), f, default_flow_style=False, indent=2)
