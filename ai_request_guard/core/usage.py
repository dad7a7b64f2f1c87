"""
Usage and cost accounting.

Append-only ledger of provider calls with incrementally maintained aggregates
and advisory budget state. Budget state never blocks a call by itself.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ai_request_guard.storage.models import UsageEntry
from ai_request_guard.storage.repository import UsageRepository

from .pricing import PricingTable, default_pricing_table
from .request import CallType
from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

DEFAULT_ALERT_THRESHOLD = 0.8


@dataclass
class _Aggregate:
    input_tokens: int = 0
    completion_tokens: int = 0
    calls: int = 0
    cost: Decimal = Decimal("0")

    def add(self, entry: UsageEntry, cost: Decimal) -> None:
        self.input_tokens += entry.input_tokens
        self.completion_tokens += entry.completion_tokens
        self.calls += 1
        self.cost += cost

    def usage(self) -> TokenUsage:
        return TokenUsage(self.input_tokens, self.completion_tokens)


class UsageTracker:
    """Per-model token and cost accounting with budget alerts."""

    def __init__(
        self,
        pricing: Optional[PricingTable] = None,
        budget_limit: Optional[float] = None,
        alert_threshold: float = DEFAULT_ALERT_THRESHOLD,
        repository: Optional[UsageRepository] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize an empty ledger.

        Args:
            pricing: Registered model pricing (defaults to the bundled table)
            budget_limit: Cost ceiling in USD; None means no limit
            alert_threshold: Fraction of the budget that triggers an alert
            repository: Optional sqlite ledger every entry is appended to
            now: Wall-clock source for entry timestamps
        """
        if budget_limit is not None and budget_limit <= 0:
            raise ValueError("budget_limit must be > 0")
        if not 0 < alert_threshold <= 1:
            raise ValueError("alert_threshold must be in (0, 1]")
        self.pricing = pricing or default_pricing_table()
        self.budget_limit = budget_limit
        self.alert_threshold = alert_threshold
        self.repository = repository
        self._now = now or datetime.now
        self.tracking_enabled = True
        self._unpriced_models = set()
        self._alerted = False
        self.reset()

    def reset(self) -> None:
        """Clear the ledger and every aggregate."""
        self.entries: List[UsageEntry] = []
        self._total = _Aggregate()
        self._by_model: Dict[str, _Aggregate] = {}
        self._by_call_type: Dict[CallType, _Aggregate] = {}
        self.successful_calls = 0
        self.failed_calls = 0
        self._alerted = False

    def enable_tracking(self) -> None:
        self.tracking_enabled = True

    def disable_tracking(self) -> None:
        self.tracking_enabled = False

    def estimate_cost(self, model_name: str, input_tokens: int, completion_tokens: int) -> Decimal:
        if input_tokens == 0 and completion_tokens == 0:
            return Decimal("0")
        pricing = self.pricing.get(model_name)
        if pricing is None:
            if model_name not in self._unpriced_models:
                self._unpriced_models.add(model_name)
                logger.warning("No pricing registered for model %s; costing it at $0", model_name)
            return Decimal("0")
        return pricing.cost(TokenUsage(input_tokens, completion_tokens))

    def record_usage(
        self,
        model_name: str,
        call_type: CallType,
        input_tokens: int,
        completion_tokens: int,
        was_successful: bool = True,
    ) -> Optional[UsageEntry]:
        """Append a ledger entry and update running totals.

        Returns:
            The appended entry, or None while tracking is disabled
        """
        if not self.tracking_enabled:
            return None

        cost = self.estimate_cost(model_name, input_tokens, completion_tokens)
        entry = UsageEntry(
            timestamp=self._now(),
            model_name=model_name,
            call_type=call_type,
            input_tokens=input_tokens,
            completion_tokens=completion_tokens,
            cost_usd=float(cost),
            was_successful=was_successful,
        )
        self.entries.append(entry)

        self._total.add(entry, cost)
        self._by_model.setdefault(model_name, _Aggregate()).add(entry, cost)
        self._by_call_type.setdefault(call_type, _Aggregate()).add(entry, cost)
        if was_successful:
            self.successful_calls += 1
        else:
            self.failed_calls += 1

        if self.repository is not None:
            self.repository.append(entry)

        if not self._alerted and self.should_alert_budget():
            self._alerted = True
            logger.warning(
                "Generation cost $%.4f has reached %.0f%% of the $%.2f budget",
                self.total_cost,
                self.alert_threshold * 100,
                self.budget_limit,
            )
        return entry

    # ------------------------------------------------------------------
    # Totals
    # ------------------------------------------------------------------
    @property
    def total_cost(self) -> float:
        return float(self._total.cost)

    @property
    def total_calls(self) -> int:
        return self._total.calls

    @property
    def total_input_tokens(self) -> int:
        return self._total.input_tokens

    @property
    def total_completion_tokens(self) -> int:
        return self._total.completion_tokens

    @property
    def total_tokens(self) -> int:
        return self._total.input_tokens + self._total.completion_tokens

    def get_usage_by_model(self, model_name: str) -> TokenUsage:
        aggregate = self._by_model.get(model_name)
        return aggregate.usage() if aggregate else TokenUsage(0, 0)

    def get_usage_by_call_type(self, call_type: CallType) -> TokenUsage:
        aggregate = self._by_call_type.get(call_type)
        return aggregate.usage() if aggregate else TokenUsage(0, 0)

    def get_cost_by_model(self, model_name: str) -> float:
        aggregate = self._by_model.get(model_name)
        return float(aggregate.cost) if aggregate else 0.0

    def get_average_tokens_per_call(self) -> TokenUsage:
        if self._total.calls == 0:
            return TokenUsage(0, 0)
        return TokenUsage(
            self._total.input_tokens // self._total.calls,
            self._total.completion_tokens // self._total.calls,
        )

    def get_usage_since(self, window: timedelta) -> TokenUsage:
        cutoff = self._now() - window
        usage = TokenUsage(0, 0)
        for entry in self.entries:
            if entry.timestamp >= cutoff:
                usage = usage + TokenUsage(entry.input_tokens, entry.completion_tokens)
        return usage

    def get_hourly_usage(self, hours: int = 1) -> TokenUsage:
        return self.get_usage_since(timedelta(hours=hours))

    def get_daily_usage(self, days: int = 1) -> TokenUsage:
        return self.get_usage_since(timedelta(days=days))

    # ------------------------------------------------------------------
    # Budget (advisory)
    # ------------------------------------------------------------------
    def set_budget_limit(self, budget_limit: Optional[float]) -> None:
        if budget_limit is not None and budget_limit <= 0:
            raise ValueError("budget_limit must be > 0")
        self.budget_limit = budget_limit
        self._alerted = False

    def is_budget_exceeded(self) -> bool:
        return self.budget_limit is not None and self.total_cost > self.budget_limit

    def should_alert_budget(self) -> bool:
        if self.budget_limit is None:
            return False
        return self.total_cost >= self.alert_threshold * self.budget_limit

    def get_remaining_budget(self) -> Optional[float]:
        if self.budget_limit is None:
            return None
        return self.budget_limit - self.total_cost

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    def get_summary(self) -> Dict[str, object]:
        return {
            "total_input_tokens": self.total_input_tokens,
            "total_completion_tokens": self.total_completion_tokens,
            "total_tokens": self.total_tokens,
            "total_calls": self.total_calls,
            "successful_calls": self.successful_calls,
            "failed_calls": self.failed_calls,
            "estimated_cost_usd": self.total_cost,
            "budget_limit_usd": self.budget_limit,
            "remaining_budget_usd": self.get_remaining_budget(),
        }

    def generate_report(self) -> "UsageReport":
        return UsageReport(
            generated_at=self._now(),
            total_input_tokens=self.total_input_tokens,
            total_completion_tokens=self.total_completion_tokens,
            total_calls=self.total_calls,
            successful_calls=self.successful_calls,
            failed_calls=self.failed_calls,
            estimated_cost_usd=self.total_cost,
            budget_limit_usd=self.budget_limit,
            usage_by_model={
                model: _aggregate_dict(aggregate) for model, aggregate in sorted(self._by_model.items())
            },
            usage_by_call_type={
                call_type.value: _aggregate_dict(aggregate)
                for call_type, aggregate in sorted(self._by_call_type.items(), key=lambda item: item[0].value)
            },
            entries=list(self.entries),
        )

    def export_usage_report(self, path: str) -> Path:
        return self.generate_report().save(path)


def _aggregate_dict(aggregate: _Aggregate) -> Dict[str, object]:
    return {
        "calls": aggregate.calls,
        "input_tokens": aggregate.input_tokens,
        "completion_tokens": aggregate.completion_tokens,
        "total_tokens": aggregate.input_tokens + aggregate.completion_tokens,
        "cost_usd": float(aggregate.cost),
    }


@dataclass
class UsageReport:
    """Exportable snapshot of the tracker's aggregates."""
    generated_at: datetime
    total_input_tokens: int
    total_completion_tokens: int
    total_calls: int
    successful_calls: int
    failed_calls: int
    estimated_cost_usd: float
    budget_limit_usd: Optional[float]
    usage_by_model: Dict[str, Dict[str, object]] = field(default_factory=dict)
    usage_by_call_type: Dict[str, Dict[str, object]] = field(default_factory=dict)
    entries: List[UsageEntry] = field(default_factory=list)

    @property
    def average_tokens_per_call(self) -> float:
        if self.total_calls == 0:
            return 0.0
        return (self.total_input_tokens + self.total_completion_tokens) / self.total_calls

    @property
    def cost_per_call(self) -> float:
        if self.total_calls == 0:
            return 0.0
        return self.estimated_cost_usd / self.total_calls

    def to_dict(self) -> Dict[str, object]:
        return {
            "generated_at": self.generated_at.isoformat(),
            "total_input_tokens": self.total_input_tokens,
            "total_completion_tokens": self.total_completion_tokens,
            "total_calls": self.total_calls,
            "successful_calls": self.successful_calls,
            "failed_calls": self.failed_calls,
            "estimated_cost_usd": self.estimated_cost_usd,
            "budget_limit_usd": self.budget_limit_usd,
            "average_tokens_per_call": self.average_tokens_per_call,
            "cost_per_call": self.cost_per_call,
            "usage_by_model": self.usage_by_model,
            "usage_by_call_type": self.usage_by_call_type,
            "entries": [entry.to_dict() for entry in self.entries],
        }

    def save(self, path: str) -> Path:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)
        return target
