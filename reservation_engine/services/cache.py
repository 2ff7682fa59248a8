"""
Reservation status cache.

A bounded LRU + TTL cache of status snapshots. It is owned and invalidated by
StatusTransitionService on every committed write; nothing else may populate
it with status data. The cache is disposable: a miss always falls through to
the database.

Readers take a generation token before loading from the database and hand it
back to put(). An invalidation after the token was taken makes put() drop the
snapshot, so a read that overlaps a write cannot repopulate a stale status.
"""
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from reservation_engine.models.enums import ReservationStatus
from reservation_engine.timeutils import utcnow


@dataclass(frozen=True)
class StatusSnapshot:
    reservation_id: int
    property_id: str
    status: ReservationStatus
    status_updated_at: datetime
    status_updated_by: Optional[str]
    status_change_reason: Optional[str]
    version: int


@dataclass
class _Entry:
    value: StatusSnapshot
    expires_at: datetime


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    invalidations: int = 0
    stale_puts: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> Dict[str, float]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "invalidations": self.invalidations,
            "stale_puts": self.stale_puts,
            "hit_rate": round(self.hit_rate, 4),
        }


class StatusCache:
    """Thread-safe LRU cache with per-entry TTL, keyed by reservation id."""

    def __init__(
        self,
        max_size: int = 1000,
        ttl_seconds: int = 30,
        clock: Callable[[], datetime] = utcnow
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be positive")
        self._max_size = max_size
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._entries: "OrderedDict[int, _Entry]" = OrderedDict()
        # reservation id -> generation of its last invalidation
        self._invalidated: "OrderedDict[int, int]" = OrderedDict()
        self._generation = 0
        # Highest generation among invalidation records dropped to stay bounded
        self._pruned_generation = 0
        self._lock = threading.Lock()
        self.stats = CacheStats()

    def get(self, reservation_id: int) -> Optional[StatusSnapshot]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(reservation_id)
            if entry is None:
                self.stats.misses += 1
                return None
            if now >= entry.expires_at:
                del self._entries[reservation_id]
                self.stats.evictions += 1
                self.stats.misses += 1
                return None
            self._entries.move_to_end(reservation_id)
            self.stats.hits += 1
            return entry.value

    def token(self) -> int:
        """Generation to pass to put() for a snapshot about to be read."""
        with self._lock:
            return self._generation

    def put(self, snapshot: StatusSnapshot, token: Optional[int] = None) -> bool:
        """
        Store a snapshot. Returns False, storing nothing, when the reservation
        was invalidated after ``token`` was taken.
        """
        expires_at = self._clock() + self._ttl
        with self._lock:
            if token is not None:
                last = self._invalidated.get(snapshot.reservation_id, self._pruned_generation)
                if last > token:
                    self.stats.stale_puts += 1
                    return False
            self._entries[snapshot.reservation_id] = _Entry(snapshot, expires_at)
            self._entries.move_to_end(snapshot.reservation_id)
            while len(self._entries) > self._max_size:
                self._entries.popitem(last=False)
                self.stats.evictions += 1
            return True

    def invalidate(self, reservation_id: int) -> None:
        with self._lock:
            self._generation += 1
            self._invalidated[reservation_id] = self._generation
            self._invalidated.move_to_end(reservation_id)
            while len(self._invalidated) > self._max_size:
                _, generation = self._invalidated.popitem(last=False)
                self._pruned_generation = max(self._pruned_generation, generation)
            if self._entries.pop(reservation_id, None) is not None:
                self.stats.invalidations += 1

    def clear(self) -> None:
        with self._lock:
            self._generation += 1
            self._pruned_generation = self._generation
            self._invalidated.clear()
            self.stats.invalidations += len(self._entries)
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
