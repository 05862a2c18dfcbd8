"""
Classification Gate: Label + Confidence → Material Category

Maps the vision model's raw label/confidence pair to a material
category and an accept/reject decision
"""

import logging
from typing import Dict, Optional, Sequence, Tuple

from .models import Category, ClassificationResult

# Matching order matters: glass before plastic so "glass bottle" is GLASS
DEFAULT_KEYWORDS = (
    (Category.METAL_CAN, ('易拉罐', '铝', 'metal', 'can', 'aluminium', 'aluminum', 'tin')),
    (Category.GLASS, ('玻璃', 'glass')),
    (Category.PLASTIC_BOTTLE, ('pet', 'plastic', '瓶', 'bottle')),
)

DEFAULT_THRESHOLDS = {
    Category.METAL_CAN: 0.22,
    Category.PLASTIC_BOTTLE: 0.30,
    Category.GLASS: 0.25,
}

MANUAL_LABEL = 'MANUAL'


class ClassificationGate:
    """
    Keyword-based material classifier with per-category thresholds

    Rules:
    - Case-insensitive substring match against disjoint keyword sets
    - Match below the category threshold → UNKNOWN (never accepted)
    - No match → UNKNOWN
    """

    def __init__(self, thresholds: Optional[Dict[Category, float]] = None,
                 keywords: Optional[Sequence[Tuple[Category, Sequence[str]]]] = None):
        """
        Initialize Classification Gate

        Args:
            thresholds: Minimum confidence per category
            keywords: Ordered (category, keywords) pairs
        """
        self.logger = logging.getLogger(__name__)
        self.thresholds = dict(DEFAULT_THRESHOLDS)
        if thresholds:
            self.thresholds.update(thresholds)
        self.keywords = tuple(
            (category, tuple(word.lower() for word in words))
            for category, words in (keywords or DEFAULT_KEYWORDS)
        )

    def match(self, label: str) -> Category:
        """
        Match a raw label to a category, ignoring confidence

        Args:
            label: Raw model label (any language variant)

        Returns:
            Matched category or UNKNOWN
        """
        text = (label or '').lower()
        for category, words in self.keywords:
            if any(word in text for word in words):
                return category
        return Category.UNKNOWN

    def classify(self, label: str, confidence: float) -> ClassificationResult:
        """
        Classify a label/confidence pair

        Args:
            label: Raw model label
            confidence: Model confidence (clamped to [0, 1])

        Returns:
            ClassificationResult; category is UNKNOWN when rejected
        """
        confidence = min(max(float(confidence), 0.0), 1.0)
        category = self.match(label)

        if category != Category.UNKNOWN:
            threshold = self.thresholds.get(category, 1.0)
            if confidence < threshold:
                self.logger.info("%s low confidence (%.0f%% < %.0f%%): '%s'",
                                 category.value, confidence * 100, threshold * 100, label)
                category = Category.UNKNOWN
            else:
                self.logger.info("%s detected (%.0f%%): '%s'",
                                 category.value, confidence * 100, label)
        else:
            self.logger.info("No material match for '%s'", label)

        return ClassificationResult(category=category, confidence=confidence, label=label or '')

    def threshold_for(self, category: Category) -> float:
        """Get confidence threshold for category"""
        return self.thresholds.get(category, 1.0)

    @staticmethod
    def manual(category: Category) -> ClassificationResult:
        """Operator override: full confidence for the given category"""
        return ClassificationResult(category=category, confidence=1.0, label=MANUAL_LABEL)
