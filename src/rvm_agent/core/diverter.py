"""
Diverter Policy: Material Category → Diverter Position

Pluggable routing table. Machines without a diverter stage run with
the policy disabled; categories without an entry are not diverted.
"""

from typing import Dict, Optional

from .models import Category

DEFAULT_POSITIONS = {
    Category.METAL_CAN: '02',
    Category.PLASTIC_BOTTLE: '03',
}


class DiverterPolicy:
    """Routing table keyed by material category"""

    def __init__(self, positions: Optional[Dict[Category, str]] = None,
                 home: str = '01', enabled: bool = True):
        self.positions = dict(DEFAULT_POSITIONS if positions is None else positions)
        self.home = home
        self.enabled = enabled

    def position_for(self, category: Category) -> Optional[str]:
        """
        Get diverter position for a category

        Returns:
            Position code, or None when the item is not diverted
        """
        if not self.enabled:
            return None
        return self.positions.get(category)

    def register(self, category: Category, position: str):
        """Add or replace a route"""
        self.positions[category] = position

    def __repr__(self):
        routes = {c.value: p for c, p in self.positions.items()}
        return f"DiverterPolicy(enabled={self.enabled}, home={self.home!r}, routes={routes})"
