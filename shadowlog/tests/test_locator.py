import json
import os
import tempfile
import unittest
from pathlib import Path

from shadowlog.parsers.locator import (
    is_rollout_file,
    normalize_path,
    scan_sessions,
    session_key_for,
)


class LocatorTests(unittest.TestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.home = Path(tmpdir.name)

    def _write(self, relative: str, lines: list[dict], mtime: float | None = None) -> Path:
        path = self.home / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("".join(json.dumps(line) + "\n" for line in lines), encoding="utf-8")
        if mtime is not None:
            os.utime(path, (mtime, mtime))
        return path

    def test_rollout_naming_is_case_insensitive(self) -> None:
        self.assertTrue(is_rollout_file("/x/rollout-2026-01-01.jsonl"))
        self.assertTrue(is_rollout_file("ROLLOUT-abc.JSONL"))
        self.assertFalse(is_rollout_file("/x/rollout-abc.json"))
        self.assertFalse(is_rollout_file("/x/session.jsonl"))

    def test_missing_root_yields_no_sessions(self) -> None:
        self.assertEqual(scan_sessions(self.home / "nope"), [])

    def test_files_are_grouped_by_directory(self) -> None:
        meta = {
            "type": "session_meta",
            "timestamp": "2026-01-02T00:00:01Z",
            "payload": {"id": "s-1", "cwd": "/work", "model_provider": "openai", "timestamp": "2026-01-02T00:00:00Z"},
        }
        first = self._write("sessions/2026/01/02/rollout-a.jsonl", [meta], mtime=1_767_312_000)
        second = self._write("sessions/2026/01/02/rollout-b.jsonl", [{"type": "event_msg"}], mtime=1_767_315_600)
        other = self._write("sessions/2026/01/01/rollout-z.jsonl", [{"type": "event_msg"}], mtime=1_767_225_600)
        self._write("sessions/2026/01/01/notes.txt", [])

        sessions = scan_sessions(self.home)
        self.assertEqual(len(sessions), 2)

        newest = sessions[0]
        self.assertEqual(newest.sessionKey, session_key_for(first))
        self.assertEqual(newest.rolloutFiles, [normalize_path(first), normalize_path(second)])
        self.assertEqual(newest.sessionId, "s-1")
        self.assertEqual(newest.cwd, "/work")
        self.assertEqual(newest.model, "openai")
        self.assertEqual(newest.createdAt, "2026-01-02T00:00:00.000Z")
        self.assertEqual(newest.updatedAt, "2026-01-02T01:00:00.000Z")

        older = sessions[1]
        self.assertEqual(older.rolloutFiles, [normalize_path(other)])
        self.assertIsNone(older.sessionId)
        self.assertEqual(older.createdAt, older.updatedAt)

    def test_archived_sessions_are_opt_in(self) -> None:
        self._write("sessions/a/rollout-1.jsonl", [{"type": "event_msg"}])
        self._write("archived_sessions/b/rollout-2.jsonl", [{"type": "event_msg"}])

        self.assertEqual(len(scan_sessions(self.home)), 1)
        self.assertEqual(len(scan_sessions(self.home, include_archived=True)), 2)

    def test_malformed_head_is_tolerated(self) -> None:
        path = self.home / "sessions" / "c" / "rollout-3.jsonl"
        path.parent.mkdir(parents=True)
        path.write_text("garbage\n" + json.dumps({"type": "session_meta", "payload": {"id": "late"}}) + "\n")

        sessions = scan_sessions(self.home)
        self.assertEqual(sessions[0].sessionId, "late")


if __name__ == "__main__":
    unittest.main()
