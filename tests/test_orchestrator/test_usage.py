import threading

import pytest

from script_agent.types import TokenUsage
from script_agent.usage import DEFAULT_PRICING, UsageAccumulator, estimate_cost, get_pricing


def test_estimate_cost_uses_model_pricing():
    usage = TokenUsage(input_tokens=1_000_000, output_tokens=1_000_000)

    assert estimate_cost("claude-sonnet-4-20250514", usage) == pytest.approx(18.0)
    assert estimate_cost("claude-opus-4-20250514", usage) == pytest.approx(90.0)


def test_unknown_model_falls_back_to_default_pricing():
    assert get_pricing("some-future-model") is DEFAULT_PRICING


def test_cache_tokens_are_priced():
    usage = TokenUsage(cache_read_tokens=1_000_000, cache_creation_tokens=1_000_000)
    assert estimate_cost("claude-sonnet-4-20250514", usage) == pytest.approx(0.3 + 3.75)


def test_accumulator_sums_usage_and_reported_cost():
    acc = UsageAccumulator("claude-sonnet-4-20250514")
    acc.add(TokenUsage(input_tokens=100, output_tokens=10), reported_cost=0.01)
    acc.add(TokenUsage(input_tokens=50, output_tokens=5, cache_read_tokens=7))
    acc.add(None, reported_cost=0.02)

    total = acc.total
    assert total.input_tokens == 150
    assert total.output_tokens == 15
    assert total.cache_read_tokens == 7
    assert acc.exchanges == 3
    assert acc.reported_cost == pytest.approx(0.03)
    assert acc.estimate_cost() == pytest.approx(estimate_cost(acc.model, total))


def test_total_is_a_snapshot():
    acc = UsageAccumulator()
    acc.add(TokenUsage(input_tokens=1))
    snapshot = acc.total
    snapshot.input_tokens = 999

    assert acc.total.input_tokens == 1


def test_reset_clears_counters():
    acc = UsageAccumulator()
    acc.add(TokenUsage(input_tokens=5), reported_cost=1.0)
    acc.reset()

    assert acc.total == TokenUsage()
    assert acc.reported_cost == 0.0
    assert acc.exchanges == 0


def test_concurrent_adds_are_not_lost():
    acc = UsageAccumulator()

    def worker() -> None:
        for _ in range(1000):
            acc.add(TokenUsage(input_tokens=1, output_tokens=2))

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert acc.total.input_tokens == 4000
    assert acc.total.output_tokens == 8000
    assert acc.exchanges == 4000
