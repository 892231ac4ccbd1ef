import json
import unittest

from shadowlog.models import RawRecord
from shadowlog.parsers.extractor import (
    ExtractContext,
    classify_shell_command,
    event_identity,
    extract_shadow_events,
    severity_from_text,
    summarize_one_line,
)

CTX = ExtractContext(sessionKey="/codex/sessions/2026/01/01", filePath="/codex/sessions/2026/01/01/rollout-a.jsonl")
TS = "2026-01-01T10:00:00.123456Z"


def _record(rtype, payload, seq=1, ts=TS):
    return RawRecord(seq=seq, byteOffset=0, type=rtype, timestamp=ts, payload=payload)


def _one(rtype, payload, **kwargs):
    events = extract_shadow_events(CTX, _record(rtype, payload, **kwargs))
    assert len(events) == 1, events
    return events[0]


class ExtractorTests(unittest.TestCase):
    def test_identity_is_deterministic(self) -> None:
        record = _record("event_msg", {"type": "user_message", "message": "hello"})
        first = extract_shadow_events(CTX, record)[0]
        second = extract_shadow_events(CTX, record)[0]
        self.assertEqual(first.id, second.id)
        self.assertEqual(first.id, event_identity(CTX.filePath, 1, "2026-01-01T10:00:00.123Z", "user_message"))

    def test_timestamp_is_normalized_to_millis(self) -> None:
        event = _one("event_msg", {"type": "agent_message", "message": "done"})
        self.assertEqual(event.ts, "2026-01-01T10:00:00.123Z")
        self.assertEqual(event.kind, "agent-message")
        self.assertEqual(event.rawRef.filePath, CTX.filePath)

    def test_parse_error_becomes_error_event(self) -> None:
        record = RawRecord(
            seq=4,
            byteOffset=99,
            type="parse_error",
            payload={"message": "Expecting value", "line": "not valid json"},
        )
        events = extract_shadow_events(CTX, record)
        self.assertEqual(len(events), 1)
        event = events[0]
        self.assertEqual(event.kind, "error")
        self.assertEqual(event.severity, "error")
        self.assertIn("parse", event.tags)
        self.assertIsNone(event.ts)
        self.assertEqual(event.details["line"], "not valid json")

    def test_session_meta_carries_session_id(self) -> None:
        event = _one("session_meta", {"id": "sess-1", "cwd": "/work", "model_provider": "openai"})
        self.assertEqual(event.kind, "meta")
        self.assertEqual(event.sessionId, "sess-1")
        self.assertIn("cwd=/work", event.title)
        self.assertIn("model=openai", event.title)

    def test_context_session_id_is_applied(self) -> None:
        ctx = ExtractContext(sessionKey=CTX.sessionKey, filePath=CTX.filePath, sessionId="sess-9")
        events = extract_shadow_events(ctx, _record("event_msg", {"type": "user_message", "message": "x"}))
        self.assertEqual(events[0].sessionId, "sess-9")

    def test_mcp_call_tags_and_batch_actions(self) -> None:
        args = {
            "commands": [
                {"tool": "scene", "params": {"action": "create", "component_type": "Light", "target": 7}},
                {"tool": "scene"},
            ]
        }
        event = _one("response_item", {
            "type": "function_call",
            "name": "mcp__unity__batch_execute",
            "call_id": "call-1",
            "arguments": json.dumps(args),
        })
        self.assertEqual(event.kind, "tool-call")
        self.assertEqual(event.relatedCallId, "call-1")
        self.assertIn("mcp", event.tags)
        self.assertIn("mcp:unity", event.tags)
        self.assertIn("mcp:unity:batch_execute", event.tags)
        self.assertEqual(event.tags.count("mcp"), 1)
        self.assertEqual(event.title, "MCP unity.batch_execute")
        self.assertEqual(event.details["mcp"]["actions"], ["scene create Light 7", "scene"])

    def test_shell_call_is_classified(self) -> None:
        event = _one("response_item", {
            "type": "function_call",
            "name": "shell_command",
            "call_id": "c2",
            "arguments": json.dumps({"command": "rg -n TODO src"}),
        })
        self.assertIn("shell", event.tags)
        self.assertIn("search", event.tags)
        self.assertNotIn("exec", event.tags)
        self.assertEqual(event.title, "rg -n TODO src")

    def test_unparseable_arguments_are_kept_raw(self) -> None:
        event = _one("response_item", {
            "type": "function_call",
            "name": "apply_patch",
            "call_id": "c3",
            "arguments": "{broken",
        })
        tool = event.details["tool"]
        self.assertEqual(tool["args"], {"_raw": "{broken"})
        self.assertEqual(tool["argsRaw"], "{broken")
        self.assertTrue(tool["parseError"])

    def test_nonzero_exit_code_forces_error(self) -> None:
        event = _one("response_item", {
            "type": "function_call_output",
            "name": "shell_command",
            "call_id": "c4",
            "output": "Exit code: 1\nWall time: 0.2 seconds",
        })
        self.assertEqual(event.kind, "tool-result")
        self.assertEqual(event.severity, "error")
        self.assertIn("exit=1", event.title)
        self.assertEqual(event.details["shell"]["exitCode"], 1)
        self.assertEqual(event.relatedCallId, "c4")

    def test_zero_exit_code_uses_keyword_severity(self) -> None:
        event = _one("response_item", {
            "type": "function_call_output",
            "name": "shell_command",
            "call_id": "c5",
            "output": "Exit code: 0\nall good",
        })
        self.assertEqual(event.severity, "info")
        self.assertEqual(event.details["shell"]["exitCode"], 0)

    def test_keyword_severity_on_output(self) -> None:
        event = _one("response_item", {
            "type": "function_call_output",
            "call_id": "c6",
            "output": "connection failed",
        })
        self.assertEqual(event.severity, "error")
        warn = _one("response_item", {
            "type": "function_call_output",
            "call_id": "c7",
            "output": "will retry later",
        })
        self.assertEqual(warn.severity, "warn")

    def test_reasoning_summary(self) -> None:
        event = _one("response_item", {
            "type": "reasoning",
            "summary": [{"type": "summary_text", "text": "Plan the change"}],
        })
        self.assertEqual(event.kind, "reasoning")
        self.assertEqual(event.title, "Plan the change")

    def test_empty_reasoning_summary_is_dropped(self) -> None:
        events = extract_shadow_events(CTX, _record("response_item", {"type": "reasoning", "summary": []}))
        self.assertEqual(events, [])

    def test_unrecognized_records_yield_nothing(self) -> None:
        self.assertEqual(extract_shadow_events(CTX, _record("compacted", {"type": "x"})), [])
        self.assertEqual(extract_shadow_events(CTX, _record("event_msg", {"type": "unknown"})), [])
        self.assertEqual(extract_shadow_events(CTX, _record(None, [1, 2])), [])


class HelperTests(unittest.TestCase):
    def test_summary_is_single_line_and_bounded(self) -> None:
        self.assertEqual(summarize_one_line("\n\n  first line \nsecond"), "first line")
        long = summarize_one_line("a" * 300)
        self.assertEqual(len(long), 140)
        self.assertTrue(long.endswith("…"))

    def test_shell_classification(self) -> None:
        self.assertEqual(classify_shell_command("npm test"), ["shell", "exec"])
        self.assertEqual(
            classify_shell_command("cat ~/.agents/skills/foo/SKILL.md"),
            ["shell", "file-read", "skill", "skill-read"],
        )
        self.assertEqual(classify_shell_command("grep x | head"), ["shell", "search", "file-read"])

    def test_severity_keywords(self) -> None:
        self.assertEqual(severity_from_text("Server disconnected"), "error")
        self.assertEqual(severity_from_text("WARNING: slow"), "warn")
        self.assertEqual(severity_from_text("ok"), "info")


if __name__ == "__main__":
    unittest.main()
