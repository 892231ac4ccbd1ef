import unittest
from unittest.mock import patch

from shadowlog.observability import otel


class _FakeInstrument:
    def __init__(self) -> None:
        self.calls: list[tuple[float, dict]] = []

    def add(self, value, labels):
        self.calls.append((value, labels))

    def record(self, value, labels):
        self.calls.append((value, labels))


class ObservabilityTests(unittest.TestCase):
    def test_otlp_endpoint_normalization(self) -> None:
        self.assertEqual(otel._normalize_otlp_endpoint("http://h:4318", "/v1/traces"), "http://h:4318/v1/traces")
        self.assertEqual(otel._normalize_otlp_endpoint("http://h:4318/v1/", "/v1/metrics"), "http://h:4318/v1/metrics")
        self.assertEqual(otel._normalize_otlp_endpoint("http://h/v1/traces", "/v1/traces"), "http://h/v1/traces")
        self.assertEqual(otel._normalize_otlp_endpoint("  ", "/v1/traces"), "")

    def test_recorders_are_noops_when_disabled(self) -> None:
        with patch.object(otel, "_state", otel._Telemetry()):
            otel.record_ingestion("rollout", "ok", 1.0, root="/codex")
            otel.record_poll_retry(root="/codex")
            with otel.start_span("shadowlog.poll") as span:
                self.assertIsNone(span)

    def test_enabled_recorders_fill_missing_labels(self) -> None:
        counter = _FakeInstrument()
        state = otel._Telemetry(enabled=True)
        state.metrics["shadowlog_tool_results_total"] = otel._Metric(
            kind="counter", label_names=("tool", "severity", "root"), otel=counter
        )
        with patch.object(otel, "_state", state):
            otel.record_tool_result("", "error", root="/codex", count=2)
            otel.record_tool_result("x", "info", root="/codex", count=0)

        self.assertEqual(counter.calls, [(2, {"tool": "unknown", "severity": "error", "root": "/codex"})])


if __name__ == "__main__":
    unittest.main()
