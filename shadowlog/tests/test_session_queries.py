import unittest

from shadowlog.models import ShadowEvent, ShadowRawRef
from shadowlog.session_queries import build_call_pairs, compute_stats, filter_events, search_events


def _event(event_id, kind="meta", tags=None, severity="info", title="", details=None, call_id=None, seq=1):
    return ShadowEvent(
        id=event_id,
        sessionKey="/s",
        seq=seq,
        kind=kind,
        source="test",
        title=title,
        details=details or {},
        tags=tags or [],
        severity=severity,
        rawRef=ShadowRawRef(filePath="/s/rollout-1.jsonl", seq=seq),
        relatedCallId=call_id,
    )


class SessionQueriesTests(unittest.TestCase):
    def setUp(self) -> None:
        self.events = [
            _event("e1", kind="tool-call", tags=["tool", "mcp", "mcp:unity"], title="MCP unity.ping", call_id="c1"),
            _event("e2", kind="tool-result", tags=["tool_result", "tool", "shell"], severity="error", call_id="c2"),
            _event("e3", kind="tool-result", tags=["tool_result", "tool", "mcp"], severity="warn", call_id="c1"),
            _event("e4", kind="user-message", tags=["user"], title="Hello there", details={"text": "Hello there"}),
            _event("e5", kind="tool-result", tags=["tool_result", "tool"]),
        ]

    def test_filters_combine(self) -> None:
        self.assertEqual([e.id for e in filter_events(self.events, only_mcp=True)], ["e1", "e3"])
        self.assertEqual([e.id for e in filter_events(self.events, only_shell=True)], ["e2"])
        self.assertEqual([e.id for e in filter_events(self.events, only_errors=True)], ["e2"])
        self.assertEqual([e.id for e in filter_events(self.events, only_mcp=True, only_errors=True)], [])
        self.assertEqual([e.id for e in filter_events(self.events, kinds=["user-message"])], ["e4"])
        self.assertEqual(len(filter_events(self.events)), 5)

    def test_search_is_case_insensitive(self) -> None:
        self.assertEqual([e.id for e in search_events(self.events, "HELLO")], ["e4"])
        self.assertEqual([e.id for e in search_events(self.events, "unity")], ["e1"])
        self.assertEqual(search_events(self.events, "   "), [])

    def test_search_includes_cached_translations(self) -> None:
        cache = {"e4:ja": "こんにちは"}
        self.assertEqual([e.id for e in search_events(self.events, "こんにちは", cache)], ["e4"])

    def test_search_limit(self) -> None:
        self.assertEqual(len(search_events(self.events, "tool", limit=2)), 2)

    def test_stats(self) -> None:
        stats = compute_stats(self.events)
        self.assertEqual(stats.total, 5)
        self.assertEqual(stats.errors, 1)
        self.assertEqual(stats.warns, 1)
        self.assertEqual(stats.byKind["tool-result"], 3)
        self.assertEqual(stats.topTags[0].tag, "tool")
        self.assertEqual(stats.topTags[0].count, 4)

    def test_call_pairs_only_use_call_ids(self) -> None:
        pairs = build_call_pairs(self.events)
        self.assertEqual(set(pairs), {"c1", "c2"})
        self.assertEqual(pairs["c1"].call.id, "e1")
        self.assertEqual(pairs["c1"].result.id, "e3")
        self.assertIsNone(pairs["c2"].call)
        self.assertEqual(pairs["c2"].result.id, "e2")

    def test_first_result_wins(self) -> None:
        duplicate = _event("e6", kind="tool-result", call_id="c1", seq=9)
        pairs = build_call_pairs([*self.events, duplicate])
        self.assertEqual(pairs["c1"].result.id, "e3")


if __name__ == "__main__":
    unittest.main()
