"""
Budget admission control for Tier Router.

Compares a client's current spend against its daily and monthly limits
before a request is routed. The outcome can only block a request or flag a
warning (which the router turns into a one-step tier downgrade), never
upgrade it.

Checks read a ledger snapshot, so two concurrent requests may both pass a
check that together exceeds the limit. Budgets are guidance, not
transactional caps.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from .config import ClientConfig
from .errors import BudgetExhausted
from .ledger import UsageStats

DEFAULT_WARNING_RATIO = 0.9

STATUS_OK = "ok"
STATUS_WARNING = "warning"
STATUS_BLOCKED = "blocked"


@dataclass
class BudgetStatus:
    """Outcome of one admission check.

    Attributes:
        allowed: False when a limit has been reached.
        warning: True when spend is at or above the warning ratio of a limit.
        window: ``"daily"`` or ``"monthly"`` for the limit that decided the
            outcome, None when no limit applied.
        spent: Spend in that window.
        limit: The limit in that window.
        error: The BudgetExhausted describing a block.
    """

    allowed: bool = True
    warning: bool = False
    window: Optional[str] = None
    spent: float = 0.0
    limit: Optional[float] = None
    error: Optional[BudgetExhausted] = None

    @property
    def status(self) -> str:
        if not self.allowed:
            return STATUS_BLOCKED
        return STATUS_WARNING if self.warning else STATUS_OK

    @property
    def utilization(self) -> Optional[float]:
        if not self.limit:
            return None
        return round(self.spent / self.limit, 4)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "window": self.window,
            "spent": round(self.spent, 6),
            "limit": self.limit,
            "utilization": self.utilization,
            "error": str(self.error) if self.error else None,
        }


def _check_window(window: str, spent: float, limit: Optional[float],
                  warning_ratio: float) -> Optional[BudgetStatus]:
    if limit is None:
        return None
    if spent >= limit:
        return BudgetStatus(
            allowed=False,
            window=window,
            spent=spent,
            limit=limit,
            error=BudgetExhausted(window, spent, limit),
        )
    if spent >= warning_ratio * limit:
        return BudgetStatus(allowed=True, warning=True, window=window, spent=spent, limit=limit)
    return None


def check_budget(client_config: ClientConfig, stats: UsageStats,
                 warning_ratio: float = DEFAULT_WARNING_RATIO) -> BudgetStatus:
    """Decide whether a client may spend more right now.

    The daily window is checked first; a monthly block still wins over a
    daily warning.

    Args:
        client_config: Client limits (None means unlimited).
        stats: Current usage aggregates for the client.
        warning_ratio: Fraction of a limit at which to warn.

    Returns:
        BudgetStatus; ``allowed`` is True whenever no limit is configured.
    """
    daily = _check_window("daily", stats.daily_cost, client_config.max_daily_cost, warning_ratio)
    if daily is not None and not daily.allowed:
        return daily
    monthly = _check_window("monthly", stats.monthly_cost, client_config.max_monthly_cost,
                            warning_ratio)
    if monthly is not None and not monthly.allowed:
        return monthly
    return daily or monthly or BudgetStatus()
