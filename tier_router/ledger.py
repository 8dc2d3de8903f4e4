"""
Usage ledger for Tier Router.

Append-only per-client usage records with aggregates derived on read:
totals, today's and month-to-date spend, per-tier and per-provider
breakdowns, and date-bucketed history. Records live behind a swappable
store; the default keeps them in memory.
"""

import json
import logging
import math
import os
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .tiers import Tier

_log = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(ts: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


@dataclass(frozen=True)
class UsageRecord:
    """One charged request. Immutable once appended."""
    cost: float
    tokens: int
    tier: Optional[Tier] = None
    provider: Optional[str] = None
    timestamp: datetime = field(default_factory=_utcnow)

    def __post_init__(self) -> None:
        if self.cost < 0:
            raise ValueError(f"cost must be >= 0, got {self.cost}")
        if self.tokens < 0:
            raise ValueError(f"tokens must be >= 0, got {self.tokens}")
        if self.tier is not None:
            object.__setattr__(self, 'tier', Tier.parse(self.tier))
        object.__setattr__(self, 'timestamp', _as_utc(self.timestamp))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'cost': self.cost,
            'tokens': self.tokens,
            'tier': self.tier.value if self.tier else None,
            'provider': self.provider,
            'timestamp': self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageRecord":
        return cls(
            cost=data['cost'],
            tokens=data['tokens'],
            tier=data.get('tier'),
            provider=data.get('provider'),
            timestamp=datetime.fromisoformat(data['timestamp']),
        )


@dataclass
class UsageStats:
    """Aggregates computed from one snapshot of a client's records."""
    total_cost: float = 0.0
    total_tokens: int = 0
    request_count: int = 0
    daily_cost: float = 0.0
    daily_tokens: int = 0
    daily_request_count: int = 0
    monthly_cost: float = 0.0
    by_tier: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    by_provider: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_cost': round(self.total_cost, 6),
            'total_tokens': self.total_tokens,
            'request_count': self.request_count,
            'daily_cost': round(self.daily_cost, 6),
            'daily_tokens': self.daily_tokens,
            'daily_request_count': self.daily_request_count,
            'monthly_cost': round(self.monthly_cost, 6),
            'by_tier': self.by_tier,
            'by_provider': self.by_provider,
        }


@dataclass
class UsageBucket:
    """Usage aggregated over one calendar day (UTC)."""
    day: date
    cost: float = 0.0
    tokens: int = 0
    request_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'date': self.day.isoformat(),
            'cost': round(self.cost, 6),
            'tokens': self.tokens,
            'request_count': self.request_count,
        }


class InMemoryUsageStore:
    """Default record store. Appends and removals are serialised by a lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: Dict[str, List[UsageRecord]] = {}

    def append(self, client_id: str, record: UsageRecord) -> None:
        with self._lock:
            self._records.setdefault(client_id, []).append(record)

    def snapshot(self, client_id: str) -> Tuple[UsageRecord, ...]:
        with self._lock:
            return tuple(self._records.get(client_id, ()))

    def remove_where(self, client_id: str,
                     predicate: Callable[[UsageRecord], bool]) -> int:
        """Drop matching records, keeping the order of the rest."""
        with self._lock:
            records = self._records.get(client_id, [])
            kept = [r for r in records if not predicate(r)]
            self._records[client_id] = kept
            return len(records) - len(kept)

    def clients(self) -> List[str]:
        with self._lock:
            return sorted(self._records)


class UsageLedger:
    """Per-client usage accounting."""

    def __init__(self, store: Optional[InMemoryUsageStore] = None,
                 clock: Callable[[], datetime] = _utcnow):
        """Initialize the ledger.

        Args:
            store: Record store; anything with ``append``, ``snapshot``,
                ``remove_where`` and ``clients`` works.
            clock: Returns the current time. "Today" is the UTC calendar day
                of ``clock()``.
        """
        self.store = store if store is not None else InMemoryUsageStore()
        self.clock = clock

    def _start_of_today(self) -> datetime:
        now = _as_utc(self.clock())
        return now.replace(hour=0, minute=0, second=0, microsecond=0)

    def record_usage(self, client_id: str, cost: Union[float, UsageRecord] = 0.0,
                     tokens: int = 0, tier: Optional[Union[Tier, str]] = None,
                     provider: Optional[str] = None,
                     timestamp: Optional[datetime] = None) -> UsageRecord:
        """Append a usage record for *client_id*.

        Args:
            client_id: Client being charged.
            cost: Dollar cost, or a prebuilt UsageRecord.
            tokens: Tokens consumed.
            tier: Optional tier the request ran on.
            provider: Optional provider the request ran on.
            timestamp: When it happened; defaults to the ledger clock.

        Returns:
            The appended record.
        """
        if isinstance(cost, UsageRecord):
            record = cost
        else:
            record = UsageRecord(
                cost=cost,
                tokens=tokens,
                tier=tier,
                provider=provider,
                timestamp=timestamp if timestamp is not None else self.clock(),
            )
        self.store.append(client_id, record)
        _log.debug("Recorded usage for %s: $%.6f, %d tokens", client_id, record.cost, record.tokens)
        return record

    def records(self, client_id: str) -> Tuple[UsageRecord, ...]:
        return self.store.snapshot(client_id)

    def get_usage_stats(self, client_id: str) -> UsageStats:
        """Compute aggregates for *client_id* from a snapshot of its records.

        Costs are summed with ``math.fsum`` so that limit comparisons see
        exact totals (ten $0.10 records total exactly $1.00).
        """
        start_of_today = self._start_of_today()
        start_of_month = start_of_today.replace(day=1)
        stats = UsageStats()
        total: List[float] = []
        daily: List[float] = []
        monthly: List[float] = []
        tier_costs: Dict[str, List[float]] = {}
        provider_costs: Dict[str, List[float]] = {}

        for record in self.store.snapshot(client_id):
            total.append(record.cost)
            stats.total_tokens += record.tokens
            stats.request_count += 1
            if record.timestamp >= start_of_today:
                daily.append(record.cost)
                stats.daily_tokens += record.tokens
                stats.daily_request_count += 1
            if record.timestamp >= start_of_month:
                monthly.append(record.cost)

            if record.tier is not None:
                row = stats.by_tier.setdefault(
                    record.tier.value, {'cost': 0.0, 'tokens': 0, 'count': 0})
                tier_costs.setdefault(record.tier.value, []).append(record.cost)
                row['tokens'] += record.tokens
                row['count'] += 1
            if record.provider is not None:
                row = stats.by_provider.setdefault(
                    record.provider, {'cost': 0.0, 'tokens': 0, 'count': 0})
                provider_costs.setdefault(record.provider, []).append(record.cost)
                row['tokens'] += record.tokens
                row['count'] += 1

        stats.total_cost = math.fsum(total)
        stats.daily_cost = math.fsum(daily)
        stats.monthly_cost = math.fsum(monthly)
        for name, costs in tier_costs.items():
            stats.by_tier[name]['cost'] = math.fsum(costs)
        for name, costs in provider_costs.items():
            stats.by_provider[name]['cost'] = math.fsum(costs)
        return stats

    def reset_daily_usage(self, client_id: str) -> int:
        """Drop today's records for *client_id*, keeping earlier history.

        Records stamped after today are kept too.

        Returns:
            Number of records removed.
        """
        start_of_today = self._start_of_today()
        start_of_tomorrow = start_of_today + timedelta(days=1)
        removed = self.store.remove_where(
            client_id, lambda r: start_of_today <= r.timestamp < start_of_tomorrow)
        _log.info("Daily usage reset for %s (%d record(s) removed)", client_id, removed)
        return removed

    def get_usage_history(self, client_id: str, days: int) -> List[UsageBucket]:
        """Bucket records by calendar day.

        Args:
            client_id: Client to report on.
            days: Number of most recent buckets to return.

        Returns:
            Up to *days* buckets, oldest first. Days without records have no
            bucket.
        """
        if days <= 0:
            return []
        buckets: Dict[date, UsageBucket] = {}
        costs: Dict[date, List[float]] = {}
        for record in self.store.snapshot(client_id):
            day = record.timestamp.date()
            bucket = buckets.setdefault(day, UsageBucket(day=day))
            costs.setdefault(day, []).append(record.cost)
            bucket.tokens += record.tokens
            bucket.request_count += 1
        for day, bucket in buckets.items():
            bucket.cost = math.fsum(costs[day])
        ordered = [buckets[d] for d in sorted(buckets)]
        return ordered[-days:]

    def clients(self) -> List[str]:
        return self.store.clients()

    # ── Snapshots ─────────────────────────────────────────────────────────

    def save(self, path: str) -> None:
        """Write every client's records to a JSON snapshot."""
        data = {
            'version': '1.0.0',
            'saved_at': _utcnow().isoformat(),
            'clients': {
                client_id: [r.to_dict() for r in self.store.snapshot(client_id)]
                for client_id in self.store.clients()
            },
        }
        from .utils import atomic_write_json
        atomic_write_json(path, data)

    def load(self, path: str) -> int:
        """Append records from a JSON snapshot written by :meth:`save`.

        A missing file loads nothing. A corrupt file is logged and skipped.

        Returns:
            Number of records loaded.
        """
        if not os.path.exists(path):
            return 0
        try:
            with open(path, 'r') as f:
                data = json.load(f)
            loaded = [
                (client_id, UsageRecord.from_dict(raw))
                for client_id, raws in data.get('clients', {}).items()
                for raw in raws
            ]
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            _log.warning("Could not load usage snapshot from %s: %s", path, exc)
            return 0
        for client_id, record in loaded:
            self.store.append(client_id, record)
        return len(loaded)
