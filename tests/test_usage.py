import unittest

from forkchat.errors import IncompleteUsage
from forkchat.models import UsageRecord
from forkchat.streaming.normalizer import NormalizedDelta, UsageSnapshot
from forkchat.usage import TokenCounter, derive_for_edit, estimate_usage, finalize_usage


class _CharCounter:
    def count(self, text: str) -> int:
        return len(text)


class UsageTests(unittest.TestCase):
    def test_counter_protocol(self) -> None:
        self.assertIsInstance(_CharCounter(), TokenCounter)

    def test_derive_for_edit_keeps_input_and_recounts_output(self) -> None:
        base = UsageRecord(
            input_tokens=100,
            output_tokens=40,
            reasoning_tokens=12,
            preprocess_duration_ms=5,
            first_response_duration_ms=200,
            total_duration_ms=900,
            input_cost=0.5,
            output_cost=1.5,
            finish_reason="length",
            created_at="2026-01-01T00:00:00+00:00",
        )
        derived = derive_for_edit(base, "abcdef", _CharCounter())

        self.assertEqual(100, derived.input_tokens)
        self.assertEqual(6, derived.output_tokens)
        self.assertEqual(0, derived.reasoning_tokens)
        self.assertFalse(derived.is_usage_reliable)
        self.assertEqual(0, derived.preprocess_duration_ms)
        self.assertEqual(0, derived.first_response_duration_ms)
        self.assertEqual(0, derived.total_duration_ms)
        self.assertEqual(0.0, derived.input_cost)
        self.assertEqual(0.0, derived.output_cost)
        self.assertNotEqual(base.created_at, derived.created_at)

    def test_finalize_takes_last_snapshot(self) -> None:
        deltas = [
            NormalizedDelta(text="a"),
            NormalizedDelta(text="b", usage=UsageSnapshot(1, 1, 2)),
            NormalizedDelta(text="c"),
            NormalizedDelta(text="", usage=UsageSnapshot(8, 3, 11)),
        ]
        record = finalize_usage(deltas, total_duration_ms=40)
        self.assertEqual(8, record.input_tokens)
        self.assertEqual(3, record.output_tokens)
        self.assertTrue(record.is_usage_reliable)
        self.assertEqual(40, record.total_duration_ms)

    def test_finalize_without_usage_raises(self) -> None:
        with self.assertRaises(IncompleteUsage):
            finalize_usage([NormalizedDelta(text="a")])
        with self.assertRaises(IncompleteUsage):
            finalize_usage([])

    def test_estimate_counts_text_and_reuses_reported_input(self) -> None:
        deltas = [NormalizedDelta(text="", usage=UsageSnapshot(7, 0, 7)), NormalizedDelta(text="hello")]
        record = estimate_usage(deltas, "hello", _CharCounter(), finish_reason="timeout")
        self.assertEqual(7, record.input_tokens)
        self.assertEqual(5, record.output_tokens)
        self.assertFalse(record.is_usage_reliable)
        self.assertEqual("timeout", record.finish_reason)

    def test_estimate_without_counter_or_usage_is_zero(self) -> None:
        record = estimate_usage([NormalizedDelta(text="x")], "x", None, finish_reason="cancelled")
        self.assertEqual((0, 0), (record.input_tokens, record.output_tokens))


if __name__ == "__main__":
    unittest.main()
