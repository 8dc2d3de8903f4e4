"""
Tier and task-type vocabulary for Tier Router.

Tiers are totally ordered (premium > standard > economy). Task types are a
closed set of known categories plus an explicit ``UnknownTaskType`` carrying
the raw string, so callers never lose the original label.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Union


class Tier(str, Enum):
    """Quality/cost level a request is routed to."""

    ECONOMY = "economy"
    STANDARD = "standard"
    PREMIUM = "premium"

    @property
    def rank(self) -> int:
        """Position in the tier order (economy = 0)."""
        return TIER_ORDER.index(self)

    def downgrade(self) -> "Tier":
        """Return the next cheaper tier, flooring at economy."""
        return TIER_ORDER[max(0, self.rank - 1)]

    def upgrade(self) -> "Tier":
        """Return the next better tier, capping at premium."""
        return TIER_ORDER[min(len(TIER_ORDER) - 1, self.rank + 1)]

    def __lt__(self, other):  # type: ignore[override]
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):  # type: ignore[override]
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):  # type: ignore[override]
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):  # type: ignore[override]
        if not isinstance(other, Tier):
            return NotImplemented
        return self.rank >= other.rank

    @classmethod
    def parse(cls, value: Union["Tier", str]) -> "Tier":
        """Coerce a tier member or case-insensitive name into a :class:`Tier`.

        Raises:
            ValueError: If *value* names no tier.
        """
        if isinstance(value, Tier):
            return value
        if isinstance(value, str):
            key = value.strip().lower()
            for tier in cls:
                if tier.value == key:
                    return tier
        raise ValueError(
            f"Unknown tier {value!r}; expected one of {[t.value for t in cls]}"
        )


# Cheapest first.
TIER_ORDER = (Tier.ECONOMY, Tier.STANDARD, Tier.PREMIUM)


class TaskType(str, Enum):
    """Known task categories with assessment baselines."""

    CAPTION = "caption"
    HASHTAGS = "hashtags"
    SHORT_POST = "short_post"
    LONG_FORM = "long_form"
    REPLY = "reply"
    SUMMARY = "summary"
    CLASSIFICATION = "classification"
    TRANSLATION = "translation"
    ANALYSIS = "analysis"
    STRATEGY = "strategy"
    CODE = "code"
    EXTRACTION = "extraction"


@dataclass(frozen=True)
class UnknownTaskType:
    """A task label outside the known set. Assessed with a neutral baseline."""

    raw: str

    @property
    def value(self) -> str:
        return self.raw


AnyTaskType = Union[TaskType, UnknownTaskType]


def parse_task_type(raw: Union[AnyTaskType, str]) -> AnyTaskType:
    """Map a task label to a :class:`TaskType`, or wrap it as unknown.

    Never raises; unrecognised labels (including empty ones) come back as
    :class:`UnknownTaskType`.
    """
    if isinstance(raw, (TaskType, UnknownTaskType)):
        return raw
    key = str(raw).strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return TaskType(key)
    except ValueError:
        return UnknownTaskType(str(raw))
