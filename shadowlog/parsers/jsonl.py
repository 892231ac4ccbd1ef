"""Incremental, offset-tracking JSONL reader for append-only rollout files."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from shadowlog.date_utils import utc_now_iso
from shadowlog.models import FileResumeState, RawRecord

logger = logging.getLogger("shadowlog.parser")

DEFAULT_MAX_CHUNK_BYTES = 4 * 1024 * 1024
_PARSE_ERROR_LINE_LIMIT = 800


@dataclass
class PollResult:
    records: list[RawRecord] = field(default_factory=list)
    state: FileResumeState | None = None
    truncated: bool = False


def initial_state(file_path: str | Path) -> FileResumeState:
    return FileResumeState(filePath=str(file_path))


def parse_line(text: str, seq: int, byte_offset: int, last_timestamp: str | None = None) -> RawRecord:
    """Parse one complete, stripped line. Never raises.

    A line that fails to decode borrows ``last_timestamp`` (the timestamp of
    the previous record in the same file) so it sorts beside its neighbours.
    """
    try:
        value = json.loads(text)
    except ValueError as exc:
        return RawRecord(
            seq=seq,
            byteOffset=byte_offset,
            type="parse_error",
            timestamp=last_timestamp,
            payload={
                "message": str(exc),
                "line": text[:_PARSE_ERROR_LINE_LIMIT],
                "observedAt": utc_now_iso(),
            },
            rawLine=text,
        )

    if not isinstance(value, dict):
        return RawRecord(seq=seq, byteOffset=byte_offset, payload=value, rawLine=text)

    rtype = value.get("type")
    ts = value.get("timestamp")
    return RawRecord(
        seq=seq,
        byteOffset=byte_offset,
        type=rtype if isinstance(rtype, str) else None,
        timestamp=ts if isinstance(ts, str) else None,
        payload=value.get("payload"),
        rawLine=text,
    )


class IncrementalJsonlParser:
    """Reads only the bytes appended since the last poll.

    The parser keeps no state between calls: the caller passes the previous
    ``FileResumeState`` in and decides whether to commit the returned one.
    """

    def __init__(self, max_chunk_bytes: int = DEFAULT_MAX_CHUNK_BYTES):
        self.max_chunk_bytes = max(1, int(max_chunk_bytes))

    def poll(self, file_path: str | Path, prev: FileResumeState) -> PollResult:
        st = os.stat(file_path)
        state = prev.model_copy(
            update={"lastSize": st.st_size, "lastMtimeMs": st.st_mtime_ns / 1_000_000}
        )

        truncated = False
        if st.st_size < state.byteOffset:
            logger.info(
                "Rollout file shrank (%s < %s), restarting from offset 0: %s",
                st.st_size, state.byteOffset, file_path,
            )
            truncated = True
            state.byteOffset = 0
            state.partialBuffer = b""
            state.seq = 0
            state.skipToNewline = False
            state.lastTimestamp = None

        if st.st_size <= state.byteOffset:
            return PollResult(records=[], state=state, truncated=truncated)

        appended = self._read_range(file_path, state.byteOffset, st.st_size)
        buffer_start = state.byteOffset - len(state.partialBuffer)
        combined = state.partialBuffer + appended
        state.byteOffset += len(appended)

        if state.skipToNewline:
            newline = combined.find(b"\n")
            if newline < 0:
                state.partialBuffer = combined
                return PollResult(records=[], state=state, truncated=truncated)
            combined = combined[newline + 1:]
            buffer_start += newline + 1
            state.skipToNewline = False

        lines = combined.split(b"\n")
        # Whatever follows the last newline is an incomplete line (b"" if none).
        state.partialBuffer = lines.pop()

        records: list[RawRecord] = []
        line_start = buffer_start
        for line in lines:
            offset = line_start
            line_start += len(line) + 1
            text = line.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            state.seq += 1
            record = parse_line(text, state.seq, offset, state.lastTimestamp)
            if record.timestamp:
                state.lastTimestamp = record.timestamp
            records.append(record)

        return PollResult(records=records, state=state, truncated=truncated)

    def _read_range(self, file_path: str | Path, start: int, end: int) -> bytes:
        chunks: list[bytes] = []
        remaining = end - start
        with open(file_path, "rb") as fh:
            fh.seek(start)
            while remaining > 0:
                chunk = fh.read(min(self.max_chunk_bytes, remaining))
                if not chunk:
                    break
                chunks.append(chunk)
                remaining -= len(chunk)
        return b"".join(chunks)
