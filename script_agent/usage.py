"""Token usage bookkeeping and cost estimation."""

import threading

from script_agent.types import TokenUsage

# Prices per million tokens (USD)
MODEL_PRICING: dict[str, dict[str, float]] = {
    "claude-opus-4-20250514": {
        "input": 15.0,
        "output": 75.0,
        "cache_read": 1.5,
        "cache_creation": 18.75,
    },
    "claude-sonnet-4-20250514": {
        "input": 3.0,
        "output": 15.0,
        "cache_read": 0.3,
        "cache_creation": 3.75,
    },
    "claude-3-5-haiku-20241022": {
        "input": 0.80,
        "output": 4.0,
        "cache_read": 0.08,
        "cache_creation": 1.0,
    },
}

# Unknown models are priced like Sonnet
DEFAULT_PRICING: dict[str, float] = {
    "input": 3.0,
    "output": 15.0,
    "cache_read": 0.3,
    "cache_creation": 3.75,
}


def get_pricing(model: str) -> dict[str, float]:
    """Get pricing for a model, falling back to default."""
    return MODEL_PRICING.get(model, DEFAULT_PRICING)


def estimate_cost(model: str, usage: TokenUsage) -> float:
    """Estimated USD cost of ``usage``. Informational only."""
    pricing = get_pricing(model)
    return (
        (usage.input_tokens / 1_000_000) * pricing["input"]
        + (usage.output_tokens / 1_000_000) * pricing["output"]
        + (usage.cache_read_tokens / 1_000_000) * pricing["cache_read"]
        + (usage.cache_creation_tokens / 1_000_000) * pricing["cache_creation"]
    )


class UsageAccumulator:
    """Monotonic usage counters for one run, plus reported costs."""

    def __init__(self, model: str = ""):
        self.model = model
        self._lock = threading.Lock()
        self._usage = TokenUsage()
        self._reported_cost = 0.0
        self._exchanges = 0

    def add(self, usage: TokenUsage | None, reported_cost: float | None = None) -> None:
        with self._lock:
            if usage is not None:
                self._usage += usage
            if reported_cost:
                self._reported_cost += reported_cost
            self._exchanges += 1

    @property
    def total(self) -> TokenUsage:
        with self._lock:
            return TokenUsage(
                input_tokens=self._usage.input_tokens,
                output_tokens=self._usage.output_tokens,
                cache_read_tokens=self._usage.cache_read_tokens,
                cache_creation_tokens=self._usage.cache_creation_tokens,
            )

    @property
    def exchanges(self) -> int:
        return self._exchanges

    @property
    def reported_cost(self) -> float:
        with self._lock:
            return self._reported_cost

    def estimate_cost(self) -> float:
        return estimate_cost(self.model, self.total)

    def reset(self) -> None:
        with self._lock:
            self._usage = TokenUsage()
            self._reported_cost = 0.0
            self._exchanges = 0
