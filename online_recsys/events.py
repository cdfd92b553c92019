"""
Data Model

Feedback events, update jobs, hybrid weights, metrics snapshots and
recommendation results shared by the model, queue, coordinator and scorer.
"""

import enum
import itertools
import math
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, Hashable, Optional, Tuple

from . import config
from .exceptions import InvalidFeedbackValue

ItemId = Hashable
UserId = Hashable


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Priority(enum.Enum):
    """Closed set of queue priority tiers with explicit ordinals."""

    LOW = 1
    MEDIUM = 2
    HIGH = 3

    @property
    def ordinal(self) -> int:
        return self.value

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, raw: Any) -> "Priority":
        """
        Parse a priority from a Priority, a name ("high") or an ordinal (3).

        Raises:
            ValueError: For anything that is not one of the three tiers
        """
        if isinstance(raw, cls):
            return raw
        if isinstance(raw, str):
            try:
                return cls[raw.strip().upper()]
            except KeyError:
                raise ValueError(f"Unknown priority {raw!r}, expected one of low/medium/high")
        if isinstance(raw, int) and not isinstance(raw, bool):
            try:
                return cls(raw)
            except ValueError:
                raise ValueError(f"Unknown priority ordinal {raw!r}, expected 1, 2 or 3")
        raise ValueError(f"Unsupported priority value {raw!r}")


def validate_rating(value: Any,
                    min_rating: float = None,
                    max_rating: float = None) -> float:
    """
    Coerce a feedback value to float and check it lies in the rating range.

    Raises:
        InvalidFeedbackValue: If the value is boolean, non-numeric, NaN/inf or out of range
    """
    if min_rating is None:
        min_rating = config.RATING_CONFIG["min_rating"]
    if max_rating is None:
        max_rating = config.RATING_CONFIG["max_rating"]

    if isinstance(value, bool):
        raise InvalidFeedbackValue(value, min_rating, max_rating)
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        raise InvalidFeedbackValue(value, min_rating, max_rating)

    if not math.isfinite(numeric) or numeric < min_rating or numeric > max_rating:
        raise InvalidFeedbackValue(value, min_rating, max_rating)
    return numeric


@dataclass(frozen=True)
class FeedbackEvent:
    """A single piece of user feedback (rating, watchlist add, ...)."""

    user_id: UserId
    item_id: ItemId
    value: float
    action: str = "rate"
    priority: Optional[Priority] = None
    timestamp: datetime = field(default_factory=utc_now)


_job_sequence = itertools.count()


@dataclass(frozen=True)
class UpdateJob:
    """
    A feedback event waiting in the update queue.

    The sequence number is assigned at creation and breaks ties inside a
    priority tier so equal-priority jobs keep their insertion order.
    """

    user_id: UserId
    item_id: ItemId
    value: float
    action: str
    priority: Priority
    timestamp: datetime = field(default_factory=utc_now)
    enqueued_at: datetime = field(default_factory=utc_now)
    sequence: int = field(default_factory=lambda: next(_job_sequence))

    @classmethod
    def from_event(cls, event: FeedbackEvent,
                   default_priority: Priority = Priority.MEDIUM) -> "UpdateJob":
        return cls(
            user_id=event.user_id,
            item_id=event.item_id,
            value=event.value,
            action=event.action,
            priority=event.priority or default_priority,
            timestamp=event.timestamp,
        )

    def to_feedback(self) -> FeedbackEvent:
        return FeedbackEvent(
            user_id=self.user_id,
            item_id=self.item_id,
            value=self.value,
            action=self.action,
            priority=self.priority,
            timestamp=self.timestamp,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Wire shape used for logging and inspection."""
        return {
            "user_id": self.user_id,
            "item_id": self.item_id,
            "action": self.action,
            "value": self.value,
            "priority": self.priority.label,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class HybridWeights:
    """Blend weights for the hybrid scorer; non-negative and summing to 1."""

    content: float
    collaborative: float
    popularity: float
    diversity: float

    def __post_init__(self):
        values = (self.content, self.collaborative, self.popularity, self.diversity)
        if any(v < 0 for v in values):
            raise ValueError(f"Hybrid weights must be non-negative, got {values}")
        if not math.isclose(sum(values), 1.0, abs_tol=1e-9):
            raise ValueError(f"Hybrid weights must sum to 1.0, got {sum(values):.6f}")

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass
class MetricsSnapshot:
    """Rolling model quality metrics, mutated only by the coordinator."""

    accuracy: float = 0.0
    loss: float = 0.0
    update_count: int = 0
    last_updated: Optional[datetime] = None
    sample_size: int = 0
    learning_rate: float = 0.0

    def copy(self) -> "MetricsSnapshot":
        return MetricsSnapshot(**asdict(self))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["last_updated"] = self.last_updated.isoformat() if self.last_updated else None
        return data


@dataclass(frozen=True)
class Recommendation:
    item_id: ItemId
    score: float
    explanation: str
    reasons: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "score": float(self.score),
            "explanation": self.explanation,
            "reasons": list(self.reasons),
        }
