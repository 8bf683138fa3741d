#!/usr/bin/env python3
"""
Mass / Nutrition Projection

volume (mL) × density (g/mL) = mass (g)
mass (g) × per-gram coefficient = kcal / protein / fat / carbs

Nutrition tables use the per-100 g category format:

    [{"category": "rice", "density": 0.85, "calories": 130,
      "protein": 2.7, "fat": 0.3, "carbs": 28.0}, ...]

Values are kept at full precision; rounding is a presentation concern
(NutritionEstimate.rounded).
"""

import json
import logging
from dataclasses import dataclass, replace
from importlib import resources
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Union

from .errors import UnknownClassError
from .volume_fusion import VolumeEstimate

logger = logging.getLogger(__name__)

DEFAULT_TABLE = "categories.json"


@dataclass(frozen=True)
class FoodProfile:
    """
    Density and per-gram macro coefficients of one food class

    Args:
        name: class label
        density_g_per_ml: density (g/mL)
        calories: kcal per gram
        protein: protein grams per gram
        fat: fat grams per gram
        carbs: carbohydrate grams per gram
    """
    name: str
    density_g_per_ml: float
    calories: float
    protein: float
    fat: float
    carbs: float

    def __post_init__(self):
        if self.density_g_per_ml <= 0:
            raise ValueError(f"density for '{self.name}' must be positive")
        for value in (self.calories, self.protein, self.fat, self.carbs):
            if value < 0:
                raise ValueError(f"negative nutrition coefficient for '{self.name}'")

    @classmethod
    def from_per_100g(cls, entry: Mapping) -> "FoodProfile":
        """Build from a per-100 g category entry"""
        return cls(
            name=str(entry['category']),
            density_g_per_ml=float(entry['density']),
            calories=float(entry['calories']) / 100.0,
            protein=float(entry['protein']) / 100.0,
            fat=float(entry['fat']) / 100.0,
            carbs=float(entry['carbs']) / 100.0
        )


@dataclass(frozen=True)
class NutritionEstimate:
    mass_grams: float
    calories: float
    protein_grams: float
    fat_grams: float
    carb_grams: float
    source_class: str
    source_confidence: Optional[float] = None
    volume_ml: float = 0.0

    def rounded(self, digits: int = 1) -> "NutritionEstimate":
        """Copy rounded for display"""
        return replace(
            self,
            mass_grams=round(self.mass_grams, digits),
            calories=round(self.calories, digits),
            protein_grams=round(self.protein_grams, digits),
            fat_grams=round(self.fat_grams, digits),
            carb_grams=round(self.carb_grams, digits),
            volume_ml=round(self.volume_ml, digits)
        )

    def to_dict(self) -> Dict:
        return {
            'mass_grams': self.mass_grams,
            'calories': self.calories,
            'protein_grams': self.protein_grams,
            'fat_grams': self.fat_grams,
            'carb_grams': self.carb_grams,
            'source_class': self.source_class,
            'source_confidence': self.source_confidence,
            'volume_ml': self.volume_ml
        }


class NutritionTable:
    """
    Case-insensitive food class → FoodProfile lookup

    Also serves as the nutrition-lookup collaborator (see `lookup`).
    """

    def __init__(self, profiles: Iterable[FoodProfile] = ()):
        self._profiles: Dict[str, FoodProfile] = {}
        for profile in profiles:
            self._profiles[profile.name.lower()] = profile

    @classmethod
    def from_entries(cls, entries: Iterable[Mapping]) -> "NutritionTable":
        return cls(FoodProfile.from_per_100g(entry) for entry in entries)

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> "NutritionTable":
        with open(path, 'r', encoding='utf-8') as f:
            entries = json.load(f)
        table = cls.from_entries(entries)
        logger.debug("loaded %d nutrition categories from %s", len(table), path)
        return table

    @classmethod
    def default(cls) -> "NutritionTable":
        """Table shipped with the package"""
        text = resources.files(__package__).joinpath('data', DEFAULT_TABLE).read_text(encoding='utf-8')
        return cls.from_entries(json.loads(text))

    def __len__(self) -> int:
        return len(self._profiles)

    def __contains__(self, label) -> bool:
        return isinstance(label, str) and label.lower() in self._profiles

    def classes(self) -> List[str]:
        return sorted(self._profiles)

    def lookup(self, label: Optional[str]) -> FoodProfile:
        """
        Raises:
            UnknownClassError: label is None or has no entry
        """
        if not label or label.lower() not in self._profiles:
            raise UnknownClassError(label)
        return self._profiles[label.lower()]


class NutritionProjector:
    """Converts volume + food profile into mass and macros"""

    def project(
        self,
        volume: VolumeEstimate,
        profile: FoodProfile,
        confidence: Optional[float] = None
    ) -> NutritionEstimate:
        """
        Args:
            volume: fused volume estimate
            profile: density / macro coefficients of the food class
            confidence: classification confidence of the label

        Returns:
            estimate: NutritionEstimate at full precision
        """
        return self._project_ml(volume.volume_ml, profile, confidence)

    def project_label(
        self,
        volume: VolumeEstimate,
        label: Optional[str],
        table: NutritionTable,
        confidence: Optional[float] = None
    ) -> NutritionEstimate:
        """Look up `label` in `table` and project; UnknownClassError if absent"""
        return self.project(volume, table.lookup(label), confidence)

    def project_components(
        self,
        volume: VolumeEstimate,
        pixel_counts: Mapping[str, int],
        table: NutritionTable
    ) -> Dict[str, NutritionEstimate]:
        """
        Split the volume across several food classes by mask-area share

        Args:
            volume: total volume estimate
            pixel_counts: {label: masked pixel count}
            table: nutrition table

        Returns:
            estimates: {label: NutritionEstimate}

        Raises:
            UnknownClassError: a label with pixels has no table entry
        """
        counts = {label: n for label, n in pixel_counts.items() if n > 0}
        total = sum(counts.values())
        if total == 0:
            return {}

        estimates = {}
        for label, count in counts.items():
            profile = table.lookup(label)
            share = volume.volume_ml * count / total
            estimates[label] = self._project_ml(share, profile, None)

        return estimates

    @staticmethod
    def combine(estimates: Iterable[NutritionEstimate], source_class: str = "mixed") -> NutritionEstimate:
        """Sum several component estimates"""
        estimates = list(estimates)
        return NutritionEstimate(
            mass_grams=sum(e.mass_grams for e in estimates),
            calories=sum(e.calories for e in estimates),
            protein_grams=sum(e.protein_grams for e in estimates),
            fat_grams=sum(e.fat_grams for e in estimates),
            carb_grams=sum(e.carb_grams for e in estimates),
            source_class=source_class,
            volume_ml=sum(e.volume_ml for e in estimates)
        )

    @staticmethod
    def _project_ml(
        volume_ml: float,
        profile: FoodProfile,
        confidence: Optional[float]
    ) -> NutritionEstimate:
        mass_g = volume_ml * profile.density_g_per_ml

        logger.debug(
            "%s: %.1f mL × %.2f g/mL = %.1f g",
            profile.name, volume_ml, profile.density_g_per_ml, mass_g
        )

        return NutritionEstimate(
            mass_grams=mass_g,
            calories=mass_g * profile.calories,
            protein_grams=mass_g * profile.protein,
            fat_grams=mass_g * profile.fat,
            carb_grams=mass_g * profile.carbs,
            source_class=profile.name,
            source_confidence=confidence,
            volume_ml=volume_ml
        )
