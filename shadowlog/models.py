"""Pydantic models for raw records, normalized events and session state."""
from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Any, Literal, Optional

ShadowEventKind = Literal[
    "reasoning",
    "user-message",
    "agent-message",
    "tool-call",
    "tool-result",
    "meta",
    "error",
]
ShadowSeverity = Literal["info", "warn", "error"]

PERSISTED_STATE_VERSION = 1


# ── Parser-level models ─────────────────────────────────────────────

class RawRecord(BaseModel):
    """One parsed JSONL line, numbered within its file."""
    seq: int
    byteOffset: int = 0
    type: Optional[str] = None
    timestamp: Optional[str] = None
    payload: Any = None
    rawLine: str = ""


class FileResumeState(BaseModel):
    filePath: str
    byteOffset: int = 0
    partialBuffer: bytes = b""
    seq: int = 0
    lastSize: Optional[int] = None
    lastMtimeMs: Optional[float] = None
    skipToNewline: bool = False  # resuming mid-line after a rewind
    lastTimestamp: Optional[str] = None  # stamped onto parse_error records


# ── Normalized events ──────────────────────────────────────────────

class ShadowRawRef(BaseModel):
    filePath: str
    byteOffset: Optional[int] = None
    seq: Optional[int] = None


class ShadowEvent(BaseModel):
    id: str
    sessionKey: str
    sessionId: Optional[str] = None
    ts: Optional[str] = None
    seq: int
    kind: ShadowEventKind
    source: str
    title: str = ""
    details: dict = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)
    severity: ShadowSeverity = "info"
    rawRef: ShadowRawRef
    relatedCallId: Optional[str] = None


class CallPair(BaseModel):
    callId: str
    call: Optional[ShadowEvent] = None
    result: Optional[ShadowEvent] = None


# ── Sessions ───────────────────────────────────────────────────────

class SessionInfo(BaseModel):
    sessionKey: str
    sessionId: Optional[str] = None
    cwd: Optional[str] = None
    model: Optional[str] = None
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None
    rolloutFiles: list[str] = Field(default_factory=list)


class TagCount(BaseModel):
    tag: str
    count: int


class SessionStats(BaseModel):
    total: int = 0
    byKind: dict[str, int] = Field(default_factory=dict)
    topTags: list[TagCount] = Field(default_factory=list)
    errors: int = 0
    warns: int = 0


class PollOutcome(BaseModel):
    filePath: str
    sessionKey: str
    appended: int = 0
    truncated: bool = False
    attempts: int = 1
    error: Optional[str] = None


# ── Persisted progress ─────────────────────────────────────────────

class FileProgress(BaseModel):
    byteOffset: int = Field(ge=0)
    lastSize: int = Field(ge=0)
    lastMtimeMs: float


class PersistedProgress(BaseModel):
    version: Literal[1] = PERSISTED_STATE_VERSION
    fileProgress: dict[str, FileProgress] = Field(default_factory=dict)
    translationCache: Optional[dict[str, str]] = None
