"""
Tier ladders - Pure Business Logic

A ladder is the ordered list of threshold-bounded tiers for one metric kind.
Lookups scan the ladder and pick the highest-ordered tier whose bounds contain
the metric, falling back to the lowest tier so a metric never maps to no tier.
Bounds are inclusive on both ends; where two adjacent tiers share a boundary
value the higher tier wins.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from ...shared.exceptions.base import TierConfigurationError


class TierKind:
    """Tier ladder kinds."""
    USER = "user"
    CREATOR = "creator"
    TEACHER = "teacher"

    ALL = (USER, CREATOR, TEACHER)
    PAYOUT_KINDS = (CREATOR, TEACHER)


@dataclass(frozen=True)
class TierBand:
    """One rung of a ladder, detached from persistence."""
    name: str
    order: int
    min_threshold: float
    max_threshold: Optional[float] = None
    weekly_payout: int = 0
    benefits: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)
    id: Optional[int] = None

    def contains(self, metric: float) -> bool:
        if metric < self.min_threshold:
            return False
        return self.max_threshold is None or metric <= self.max_threshold

    @classmethod
    def from_definition(cls, definition: Any) -> "TierBand":
        return cls(
            id=definition.id,
            name=definition.name,
            order=definition.order,
            min_threshold=float(definition.min_threshold),
            max_threshold=None if definition.max_threshold is None else float(definition.max_threshold),
            weekly_payout=definition.weekly_payout or 0,
            benefits=dict(definition.benefits or {}),
        )


class TierLadder:
    """Validated, ordered ladder for one kind."""

    def __init__(self, kind: str, bands: Iterable[TierBand]):
        self.kind = kind
        self.bands: List[TierBand] = sorted(bands, key=lambda band: band.order)
        self._validate()

    @classmethod
    def from_definitions(cls, kind: str, definitions: Iterable[Any]) -> "TierLadder":
        return cls(kind, [TierBand.from_definition(d) for d in definitions])

    def _validate(self) -> None:
        if not self.bands:
            raise TierConfigurationError(f"No tiers defined for kind '{self.kind}'", context={"kind": self.kind})

        orders = [band.order for band in self.bands]
        if len(set(orders)) != len(orders):
            raise TierConfigurationError(
                f"Duplicate tier order in '{self.kind}' ladder", context={"kind": self.kind, "orders": orders}
            )

        for band in self.bands:
            if band.max_threshold is not None and band.max_threshold < band.min_threshold:
                raise TierConfigurationError(
                    f"Tier '{band.name}' has max_threshold below min_threshold",
                    context={"kind": self.kind, "tier": band.name},
                )

        for lower, upper in zip(self.bands, self.bands[1:]):
            if upper.min_threshold <= lower.min_threshold:
                raise TierConfigurationError(
                    f"Tier '{upper.name}' lower bound is not above '{lower.name}'",
                    context={"kind": self.kind, "tier": upper.name},
                )
            if lower.max_threshold is None:
                raise TierConfigurationError(
                    f"Only the highest tier may be unbounded; '{lower.name}' is not the highest",
                    context={"kind": self.kind, "tier": lower.name},
                )
            if upper.min_threshold > lower.max_threshold:
                raise TierConfigurationError(
                    f"Gap between '{lower.name}' (max {lower.max_threshold}) and "
                    f"'{upper.name}' (min {upper.min_threshold})",
                    context={"kind": self.kind, "lower": lower.name, "upper": upper.name},
                )

    @property
    def lowest(self) -> TierBand:
        return self.bands[0]

    @property
    def highest(self) -> TierBand:
        return self.bands[-1]

    def tier_for(self, metric: float) -> TierBand:
        """Highest-ordered tier containing ``metric``; the lowest tier otherwise."""
        match = None
        for band in self.bands:
            if band.contains(metric):
                match = band
        return match or self.lowest

    def by_name(self, name: str) -> Optional[TierBand]:
        for band in self.bands:
            if band.name == name:
                return band
        return None

    def __iter__(self) -> Iterator[TierBand]:
        return iter(self.bands)

    def __len__(self) -> int:
        return len(self.bands)


def _creator_benefits(order: int) -> Dict[str, Any]:
    return {
        "challenge_creation_boost": order * 10,
        "analytics_access": order >= 3,
        "premium_templates": order >= 4,
        "priority_support": order >= 5,
    }


def _teacher_benefits(order: int) -> Dict[str, Any]:
    return {
        "student_management_tools": True,
        "advanced_reports": order >= 3,
        "custom_assignments": order >= 4,
        "institutional_features": order >= 5,
    }


def _ladder(rows: Sequence[tuple], benefits=None) -> List[TierBand]:
    return [
        TierBand(
            name=name,
            order=order,
            min_threshold=low,
            max_threshold=high,
            weekly_payout=payout,
            benefits=benefits(order) if benefits else {},
        )
        for order, (name, low, high, payout) in enumerate(rows, start=1)
    ]


# Integer metrics: a boundary value belongs to the higher tier, so
# [1, 50] + [50, 150] reads as 1-49, 50-149.
DEFAULT_LADDERS: Dict[str, List[TierBand]] = {
    TierKind.USER: _ladder([
        ("Aprendiz", 0, 26, 0),
        ("Explorador", 26, 51, 0),
        ("Estratega", 51, 81, 0),
        ("Sabio", 81, 96, 0),
        ("Gran Maestro", 96, 100, 0),
    ]),
    TierKind.CREATOR: _ladder([
        ("Semilla", 1, 50, 40),
        ("Chispa", 50, 150, 60),
        ("Constructor", 150, 500, 90),
        ("Orador", 500, 1000, 130),
        ("Visionario", 1000, None, 180),
    ], _creator_benefits),
    TierKind.TEACHER: _ladder([
        ("Guía", 1, 16, 50),
        ("Instructor", 16, 36, 75),
        ("Consejero", 36, 61, 110),
        ("Erudito", 61, 101, 150),
        ("Maestro Jedi", 101, None, 200),
    ], _teacher_benefits),
}


# Ordinal levels used by level challenges: consolidation >= 95 is 5,
# >= 85 is 4, >= 75 is 3, >= 60 is 2, anything else 1.
CHALLENGE_LEVEL_LADDER = TierLadder("challenge_level", _ladder([
    ("1", 0, 60, 0),
    ("2", 60, 75, 0),
    ("3", 75, 85, 0),
    ("4", 85, 95, 0),
    ("5", 95, None, 0),
]))


def ordinal_for_consolidation(consolidation: float) -> int:
    return CHALLENGE_LEVEL_LADDER.tier_for(consolidation).order


def default_ladder(kind: str) -> TierLadder:
    if kind not in DEFAULT_LADDERS:
        raise TierConfigurationError(f"Unknown tier kind '{kind}'", context={"kind": kind})
    return TierLadder(kind, DEFAULT_LADDERS[kind])
