"""Usage accounting for adapter calls, including vendor rate-limit snapshots."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from ..models.base import RateLimitSnapshot, Usage


@dataclass
class UsageRecord:
    provider: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    timestamp: datetime = field(default_factory=datetime.utcnow)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class UsageTracker:
    """Tracks per-provider token usage and the latest rate-limit snapshot."""

    def __init__(self) -> None:
        self.records: List[UsageRecord] = []
        self.rate_limits: Dict[str, RateLimitSnapshot] = {}

    def record_usage(self, provider: str, model: Optional[str], usage: Optional[Usage]) -> None:
        """Store a usage record; missing usage counts as a request with zero tokens."""
        usage = usage or Usage()
        self.records.append(
            UsageRecord(
                provider=provider,
                model=model or "",
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                cost=usage.total_cost_usd,
            )
        )

    def record_rate_limits(self, provider: str, snapshot: Optional[RateLimitSnapshot]) -> None:
        if snapshot is None or snapshot.is_empty():
            return
        self.rate_limits[provider] = snapshot

    def get_stats(self, provider: Optional[str] = None, model: Optional[str] = None) -> Dict[str, float]:
        """Return aggregated stats filtered by provider/model."""
        filtered = [
            r
            for r in self.records
            if (provider is None or r.provider == provider) and (model is None or r.model == model)
        ]
        stats = defaultdict(float)
        for r in filtered:
            stats["requests"] += 1
            stats["input_tokens"] += r.input_tokens
            stats["output_tokens"] += r.output_tokens
            stats["total_tokens"] += r.total_tokens
            stats["cost"] += r.cost
        return dict(stats)

    def latest_rate_limits(self, provider: str) -> Optional[RateLimitSnapshot]:
        return self.rate_limits.get(provider)

    def reset(self) -> None:
        """Clear recorded usage."""
        self.records.clear()
        self.rate_limits.clear()
