import tempfile
import unittest
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import patch

from hypothesis import given, settings, strategies as st

from core.llm_client import LLMUsage
from models import UsageRecord, UsageStatus
from services.usage_tracker import (
    MODEL_PRICING,
    calculate_cost,
    get_model_pricing,
    get_user_usage_summary,
    track_ai_usage,
)
from storage import StoryStore


def _make_store() -> StoryStore:
    tmp = tempfile.mkdtemp()
    return StoryStore(str(Path(tmp) / "test.db"))


_tokens = st.integers(min_value=0, max_value=2_000_000)


class TestPricing(unittest.TestCase):
    def test_unknown_model_uses_default(self):
        self.assertEqual(get_model_pricing("mystery-model"), MODEL_PRICING["default"])
        self.assertEqual(get_model_pricing(None), MODEL_PRICING["default"])

    def test_sonnet_without_cache(self):
        cost = calculate_cost("claude-sonnet-4-20250514", 1_000_000, 100_000)
        self.assertEqual(cost["input_cost_cents"], 300.0)
        self.assertEqual(cost["output_cost_cents"], 150.0)
        self.assertEqual(cost["cache_savings_cents"], 0.0)
        self.assertEqual(cost["total_cost_cents"], 450.0)

    def test_cache_reads_billed_at_cached_rate(self):
        cost = calculate_cost(
            "claude-sonnet-4-20250514",
            input_tokens=1_000_000,
            output_tokens=0,
            cache_read_input_tokens=1_000_000,
        )
        self.assertEqual(cost["input_cost_cents"], 30.0)
        self.assertEqual(cost["cache_savings_cents"], 270.0)

    @given(regular=_tokens, created=_tokens, read=_tokens, output=_tokens)
    @settings(max_examples=100)
    def test_cache_never_costs_more(self, regular, created, read, output):
        total_input = regular + created + read
        cached = calculate_cost("claude-opus-4-20250514", total_input, output, created, read)
        uncached = calculate_cost("claude-opus-4-20250514", total_input, output)
        self.assertLessEqual(cached["input_cost_cents"], uncached["input_cost_cents"] + 1e-3)
        self.assertGreaterEqual(cached["cache_savings_cents"], 0)
        self.assertAlmostEqual(
            cached["total_cost_cents"],
            cached["input_cost_cents"] + cached["output_cost_cents"],
            places=3,
        )


class TestTrackUsage(unittest.TestCase):
    def setUp(self):
        self.store = _make_store()

    def test_persists_record(self):
        usage = LLMUsage(input_tokens=1200, output_tokens=800, cache_read_input_tokens=1000)
        record = track_ai_usage(
            self.store,
            user_id="u1",
            endpoint="generate-scene",
            model="claude-sonnet-4-20250514",
            usage=usage,
            provider="anthropic",
            scene_id="s1",
            duration_ms=1234.5,
        )
        self.assertIsNotNone(record)
        self.assertEqual(record.request_duration_ms, 1234)
        self.assertGreater(record.cache_savings_cents, 0)
        stored = self.store.list_usage_records("u1")
        self.assertEqual(len(stored), 1)
        self.assertEqual(stored[0].endpoint, "generate-scene")
        self.assertEqual(stored[0].provider, "anthropic")

    def test_store_failure_is_swallowed(self):
        with patch.object(StoryStore, "add_usage_record", side_effect=RuntimeError("disk full")):
            with self.assertLogs("novelworld.usage", level="WARNING"):
                record = track_ai_usage(self.store, user_id="u1", endpoint="e", model="m")
        self.assertIsNone(record)


class TestUsageSummary(unittest.TestCase):
    def test_aggregates_successful_calls_this_period(self):
        store = _make_store()
        now = datetime.now()
        rows = [
            ("r1", "generate-scene", "gpt-4o", UsageStatus.SUCCESS, now, 100.0),
            ("r2", "generate-scene", "gpt-4o", UsageStatus.SUCCESS, now, 50.0),
            ("r3", "edit-prose:shorten", "claude-sonnet-4-20250514", UsageStatus.SUCCESS, now, 25.0),
            ("r4", "generate-scene", "gpt-4o", UsageStatus.ERROR, now, 999.0),
            ("r5", "generate-scene", "gpt-4o", UsageStatus.SUCCESS, now - timedelta(days=90), 999.0),
        ]
        for record_id, endpoint, model, status, created_at, cents in rows:
            store.add_usage_record(
                UsageRecord(
                    id=record_id,
                    user_id="u1",
                    endpoint=endpoint,
                    model=model,
                    input_tokens=10,
                    output_tokens=5,
                    total_cost_cents=cents,
                    status=status,
                    created_at=created_at,
                )
            )

        summary = get_user_usage_summary(store, "u1", start=now - timedelta(days=1))
        self.assertEqual(summary["total_requests"], 3)
        self.assertEqual(summary["total_input_tokens"], 30)
        self.assertEqual(summary["total_output_tokens"], 15)
        self.assertAlmostEqual(summary["total_cost_usd"], 1.75)
        self.assertEqual(summary["by_endpoint"]["generate-scene"]["requests"], 2)
        self.assertEqual(summary["by_endpoint"]["generate-scene"]["tokens"], 30)
        self.assertAlmostEqual(summary["by_model"]["gpt-4o"]["cost_usd"], 1.5)

    def test_failure_returns_empty_summary(self):
        store = _make_store()
        with patch.object(StoryStore, "list_usage_records", side_effect=RuntimeError("db down")):
            summary = get_user_usage_summary(store, "u1")
        self.assertEqual(summary["total_requests"], 0)
        self.assertEqual(summary["by_model"], {})


if __name__ == "__main__":
    unittest.main()
