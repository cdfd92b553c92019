"""
External collaborators of the recommendation pipeline.

Protocols for the content scorer, popularity source, catalog and event
store, plus simple in-process implementations used by default and in tests.
"""

import json
import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import (Dict, Hashable, Iterable, List, Mapping, Optional, Protocol,
                    Sequence, Set, Tuple, Union)

from .events import FeedbackEvent, utc_now

logger = logging.getLogger(__name__)


# =================================================================
# USER HISTORY
# =================================================================

@dataclass
class UserHistory:
    """What we know about one user's past feedback."""

    feedback_count: int = 0
    rated_items: Set[Hashable] = field(default_factory=set)
    genre_counts: Counter = field(default_factory=Counter)

    def genre_shares(self) -> Dict[str, float]:
        """Fraction of the user's genre mentions that fall in each genre."""
        total = sum(self.genre_counts.values())
        if total == 0:
            return {}
        return {genre: count / total for genre, count in self.genre_counts.items()}

    def genre_diversity(self, max_genres: int) -> float:
        """Distinct genres seen, relative to max_genres, capped at 1."""
        return min(1.0, len(self.genre_counts) / max_genres)


class UserHistoryStore:
    """Thread-safe per-user history built from incoming feedback."""

    def __init__(self):
        self._histories: Dict[Hashable, UserHistory] = {}
        self._lock = threading.Lock()

    def record(self, user_id: Hashable, item_id: Hashable, genres: Iterable[str] = ()) -> None:
        with self._lock:
            history = self._histories.setdefault(user_id, UserHistory())
            history.feedback_count += 1
            history.rated_items.add(item_id)
            history.genre_counts.update(genres)

    def get(self, user_id: Hashable) -> UserHistory:
        """Snapshot of a user's history (empty for unknown users)."""
        with self._lock:
            history = self._histories.get(user_id)
            if history is None:
                return UserHistory()
            return UserHistory(
                feedback_count=history.feedback_count,
                rated_items=set(history.rated_items),
                genre_counts=Counter(history.genre_counts),
            )

    def __len__(self) -> int:
        return len(self._histories)


# =================================================================
# PROTOCOLS
# =================================================================

class ContentScorer(Protocol):
    def score(self, user_id: Hashable, candidates: Sequence[Hashable],
              history: UserHistory) -> Dict[Hashable, float]:
        """Content similarity per candidate, each in 0..1."""


class PopularitySource(Protocol):
    def top(self, n: int) -> List[Tuple[Hashable, float]]:
        """Most popular items, best first, with a 0..1 rank-derived score."""


class Catalog(Protocol):
    def genres(self, item_id: Hashable) -> Set[str]:
        ...

    def items(self) -> List[Hashable]:
        ...


class EventStore(Protocol):
    def append(self, event: FeedbackEvent) -> None:
        ...


# =================================================================
# IN-PROCESS IMPLEMENTATIONS
# =================================================================

class StaticPopularitySource:
    """Popularity ranking from a fixed, best-first list of item ids."""

    def __init__(self, ranked_items: Sequence[Hashable] = ()):
        self._lock = threading.Lock()
        self._ranked: List[Hashable] = list(ranked_items)

    def update(self, ranked_items: Sequence[Hashable]) -> None:
        with self._lock:
            self._ranked = list(ranked_items)

    def top(self, n: int) -> List[Tuple[Hashable, float]]:
        with self._lock:
            selected = self._ranked[:max(0, n)]
        if not selected:
            return []
        return [(item_id, 1.0 - rank / len(selected)) for rank, item_id in enumerate(selected)]


class FeedbackPopularitySource(StaticPopularitySource):
    """
    Popularity that also learns from live feedback.

    Items given through the constructor or update() keep their explicit
    ranking and come first. Every other item is ranked by rating count *
    mean rating, i.e. the sum of its ratings, as feedback is recorded.
    """

    def __init__(self, ranked_items: Sequence[Hashable] = ()):
        super().__init__(ranked_items)
        self._totals: Counter = Counter()

    def record(self, item_id: Hashable, value: float) -> None:
        with self._lock:
            self._totals[item_id] += value

    def top(self, n: int) -> List[Tuple[Hashable, float]]:
        if n <= 0:
            return []
        with self._lock:
            ranked = list(self._ranked)
            pinned = set(ranked)
            learned = sorted(((item_id, total) for item_id, total in self._totals.items()
                              if item_id not in pinned),
                             key=lambda kv: (-kv[1], str(kv[0])))
        selected = (ranked + [item_id for item_id, _ in learned])[:n]
        if not selected:
            return []
        return [(item_id, 1.0 - rank / len(selected)) for rank, item_id in enumerate(selected)]


class InMemoryCatalog:
    """Item -> genres lookup held in a dict."""

    def __init__(self, item_genres: Optional[Mapping[Hashable, Iterable[str]]] = None):
        self._genres: Dict[Hashable, Set[str]] = {
            item_id: set(genres) for item_id, genres in (item_genres or {}).items()
        }

    def add(self, item_id: Hashable, genres: Iterable[str]) -> None:
        self._genres[item_id] = set(genres)

    def ensure(self, item_id: Hashable) -> bool:
        """Register an item without genres unless it is already known. True if added."""
        if item_id in self._genres:
            return False
        self._genres[item_id] = set()
        return True

    def __contains__(self, item_id: Hashable) -> bool:
        return item_id in self._genres

    def genres(self, item_id: Hashable) -> Set[str]:
        return set(self._genres.get(item_id, ()))

    def items(self) -> List[Hashable]:
        return list(self._genres)

    def __len__(self) -> int:
        return len(self._genres)


class GenreAffinityContentScorer:
    """
    Content similarity as the share of the user's genre history covered by
    the candidate's genres.
    """

    def __init__(self, catalog: Catalog):
        self.catalog = catalog

    def score(self, user_id: Hashable, candidates: Sequence[Hashable],
              history: UserHistory) -> Dict[Hashable, float]:
        shares = history.genre_shares()
        if not shares:
            return {}

        scores = {}
        for item_id in candidates:
            genres = self.catalog.genres(item_id)
            if not genres:
                continue
            affinity = min(1.0, sum(shares.get(g, 0.0) for g in genres))
            if affinity > 0:
                scores[item_id] = affinity
        return scores


class InMemoryEventStore:
    """Keeps appended events in a list."""

    def __init__(self):
        self.events: List[FeedbackEvent] = []
        self._lock = threading.Lock()

    def append(self, event: FeedbackEvent) -> None:
        with self._lock:
            self.events.append(event)

    def __len__(self) -> int:
        return len(self.events)


class JsonlEventStore:
    """
    Append-only JSON lines audit log of feedback events.

    One line per event; writes are serialized with a lock so concurrent
    callers never interleave lines.
    """

    def __init__(self, log_path: Union[str, Path]):
        """
        Args:
            log_path: Path to the event log file (parent dirs are created)
        """
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self.lock = threading.Lock()

    def append(self, event: FeedbackEvent) -> None:
        entry = {
            'logged_at': utc_now().isoformat(),
            'event_type': 'feedback',
            'user_id': event.user_id,
            'item_id': event.item_id,
            'action': event.action,
            'value': event.value,
            'priority': event.priority.label if event.priority else None,
            'timestamp': event.timestamp.isoformat(),
        }

        with self.lock:
            with open(self.log_path, 'a') as f:
                f.write(json.dumps(entry) + '\n')

    def read_all(self) -> List[dict]:
        """Load every logged entry, skipping malformed lines."""
        if not self.log_path.exists():
            return []

        entries = []
        with open(self.log_path, 'r') as f:
            for line in f:
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.warning(f"Skipping malformed line in {self.log_path}")
        return entries
