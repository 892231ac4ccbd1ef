"""Classify raw rollout records into normalized ShadowEvents."""
from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from shadowlog.date_utils import to_iso
from shadowlog.models import RawRecord, ShadowEvent, ShadowRawRef

logger = logging.getLogger("shadowlog.extractor")

MCP_PREFIX = "mcp__"
SHELL_TOOL_NAME = "shell_command"
TITLE_MAX_LEN = 140
_MCP_BATCH_ACTION_LIMIT = 50

_SEARCH_COMMAND_PATTERN = re.compile(r"\b(rg|ripgrep|grep|findstr)\b", re.IGNORECASE)
_READ_COMMAND_PATTERN = re.compile(r"\b(get-content|cat|type|head|tail)\b", re.IGNORECASE)
_SKILL_PATH_PATTERN = re.compile(r"[\\/]\.agents[\\/]skills[\\/]", re.IGNORECASE)
_EXIT_CODE_PATTERN = re.compile(r"Exit code:\s*(\d+)", re.IGNORECASE)

_ERROR_KEYWORDS = ("disconnected", "exception", "failed", "error")
_WARN_KEYWORDS = ("retry", "warn")


@dataclass(frozen=True)
class ExtractContext:
    sessionKey: str
    filePath: str
    sessionId: str | None = None


def _sha1_hex(value: str) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()


def event_identity(file_path: str, seq: int, ts: str | None, discriminator: str | None) -> str:
    """Content-addressed id: the same line in the same file always hashes the same."""
    return _sha1_hex(f"{file_path}:{seq}:{ts or ''}:{discriminator or ''}")


def _coerce_str(value: Any) -> str | None:
    if isinstance(value, str):
        return value
    if value is None:
        return None
    return str(value)


def summarize_one_line(text: str, max_len: int = TITLE_MAX_LEN) -> str:
    first = next((line for line in text.splitlines() if line.strip()), "")
    trimmed = first.strip()
    if len(trimmed) <= max_len:
        return trimmed
    return trimmed[: max(0, max_len - 1)] + "…"


def _unique(tags: list[str]) -> list[str]:
    return list(dict.fromkeys(tags))


def severity_from_text(text: str) -> str:
    lower = text.lower()
    if any(word in lower for word in _ERROR_KEYWORDS):
        return "error"
    if any(word in lower for word in _WARN_KEYWORDS):
        return "warn"
    return "info"


def tool_name_tags(name: str) -> list[str]:
    if name.startswith(MCP_PREFIX):
        return ["tool", "mcp"]
    if name == SHELL_TOOL_NAME:
        return ["tool", "shell"]
    return ["tool"]


def classify_shell_command(command: str) -> list[str]:
    tags = ["shell"]
    is_search = bool(_SEARCH_COMMAND_PATTERN.search(command))
    is_read = bool(_READ_COMMAND_PATTERN.search(command))
    if is_search:
        tags.append("search")
    if is_read:
        tags.append("file-read")
        if _SKILL_PATH_PATTERN.search(command):
            tags.extend(["skill", "skill-read"])
    if not is_search and not is_read:
        tags.append("exec")
    return tags


def _reparse_json_string(value: Any, *, wrap_raw: bool) -> tuple[Any, str | None, str | None]:
    """Return (parsed, raw, parse_error) for a possibly JSON-encoded string."""
    if not isinstance(value, str):
        return value, None, None
    try:
        return json.loads(value), value, None
    except ValueError as exc:
        parsed = {"_raw": value} if wrap_raw else value
        return parsed, value, str(exc)


def _mcp_batch_actions(args: Any) -> tuple[list[str], int]:
    commands = args.get("commands") if isinstance(args, dict) else None
    if not isinstance(commands, list) or not commands:
        return [], 0
    actions: list[str] = []
    for cmd in commands[:_MCP_BATCH_ACTION_LIMIT]:
        cmd = cmd if isinstance(cmd, dict) else {}
        params = cmd.get("params") if isinstance(cmd.get("params"), dict) else {}
        tool = cmd.get("tool") if isinstance(cmd.get("tool"), str) else "?"
        action = params.get("action") if isinstance(params.get("action"), str) else None
        component = params.get("component_type") if isinstance(params.get("component_type"), str) else None
        target = str(params["target"]) if params.get("target") is not None else None
        actions.append(" ".join(part for part in (tool, action, component, target) if part))
    return actions, max(0, len(commands) - _MCP_BATCH_ACTION_LIMIT)


class _EventFactory:
    def __init__(self, ctx: ExtractContext, record: RawRecord):
        self.ctx = ctx
        self.record = record
        self.ts = to_iso(record.timestamp)

    def make(self, discriminator: str, **fields: Any) -> ShadowEvent:
        fields.setdefault("severity", "info")
        fields["tags"] = _unique(fields.get("tags", []))
        fields["sessionId"] = fields.get("sessionId") or self.ctx.sessionId
        return ShadowEvent(
            id=event_identity(self.ctx.filePath, self.record.seq, self.ts, discriminator),
            sessionKey=self.ctx.sessionKey,
            ts=self.ts,
            seq=self.record.seq,
            rawRef=ShadowRawRef(
                filePath=self.ctx.filePath,
                byteOffset=self.record.byteOffset,
                seq=self.record.seq,
            ),
            **fields,
        )


def _extract_event_msg(factory: _EventFactory, payload: dict) -> list[ShadowEvent]:
    ptype = payload.get("type")
    if ptype == "agent_reasoning":
        text = _coerce_str(payload.get("text")) or ""
        return [factory.make(
            "agent_reasoning", kind="reasoning", source="event_msg",
            title=summarize_one_line(text), details={"text": text}, tags=["reasoning"],
        )]
    if ptype == "user_message":
        text = _coerce_str(payload.get("message")) or ""
        return [factory.make(
            "user_message", kind="user-message", source="event_msg",
            title=summarize_one_line(text), details={"text": text}, tags=["user"],
        )]
    if ptype == "agent_message":
        text = _coerce_str(payload.get("message")) or ""
        return [factory.make(
            "agent_message", kind="agent-message", source="event_msg",
            title=summarize_one_line(text), details={"text": text}, tags=["agent"],
        )]
    if ptype == "token_count":
        return [factory.make(
            "token_count", kind="meta", source="event_msg",
            title="Token count", details=dict(payload), tags=["meta", "token"],
        )]
    return []


def _extract_function_call(factory: _EventFactory, payload: dict) -> list[ShadowEvent]:
    tool_name = _coerce_str(payload.get("name")) or "unknown_tool"
    call_id = _coerce_str(payload.get("call_id"))
    args, args_raw, args_error = _reparse_json_string(payload.get("arguments"), wrap_raw=True)

    details: dict[str, Any] = {
        "tool": {"name": tool_name, "args": args, "argsRaw": args_raw, "parseError": args_error},
    }
    tags = tool_name_tags(tool_name)
    title = f"Tool call: {tool_name}"

    if tool_name == SHELL_TOOL_NAME:
        arg_dict = args if isinstance(args, dict) else {}
        command = (
            _coerce_str(arg_dict.get("command"))
            or _coerce_str(arg_dict.get("cmd"))
            or args_raw
            or ""
        )
        tags.extend(classify_shell_command(command))
        title = summarize_one_line(command)
        details["shell"] = {"command": command}
    elif tool_name.startswith(MCP_PREFIX):
        parts = tool_name.split("__")
        server = parts[1] if len(parts) > 1 and parts[1] else None
        method = parts[2] if len(parts) > 2 and parts[2] else None
        tags.extend([
            "mcp",
            f"mcp:{server}" if server else "mcp:unknown",
            f"mcp:{server}:{method}" if method else "mcp:unknown-method",
        ])
        title = f"MCP {server or '?'}.{method or '?'}"
        mcp: dict[str, Any] = {"server": server, "method": method}
        if method == "batch_execute":
            actions, truncated = _mcp_batch_actions(args)
            if actions:
                mcp["actions"] = actions
            if truncated:
                mcp["actionsTruncated"] = truncated
        details["mcp"] = mcp

    return [factory.make(
        f"tool_call:{tool_name}", kind="tool-call", source="response_item",
        title=title, details=details, tags=tags, relatedCallId=call_id,
    )]


def _extract_function_call_output(factory: _EventFactory, payload: dict) -> list[ShadowEvent]:
    tool_name = _coerce_str(payload.get("name")) or "unknown_tool"
    call_id = _coerce_str(payload.get("call_id"))
    output, output_raw, output_error = _reparse_json_string(payload.get("output"), wrap_raw=False)

    details: dict[str, Any] = {
        "tool": {"name": tool_name, "output": output, "outputRaw": output_raw, "parseError": output_error},
    }
    tags = ["tool_result", *tool_name_tags(tool_name)]

    if isinstance(output, str):
        text = output
    elif output_raw is not None:
        text = output_raw
    elif output is not None:
        text = json.dumps(output, ensure_ascii=False, default=str)
    else:
        text = ""

    exit_match = _EXIT_CODE_PATTERN.search(text)
    if exit_match:
        exit_code = int(exit_match.group(1))
        details["shell"] = {"exitCode": exit_code}
        if exit_code != 0:
            return [factory.make(
                f"tool_result:{tool_name}", kind="tool-result", source="response_item",
                title=f"{tool_name} result: exit={exit_code}", details=details,
                tags=[*tags, "shell"] if tool_name == SHELL_TOOL_NAME else tags,
                severity="error", relatedCallId=call_id,
            )]

    severity = severity_from_text(text) if text else "info"
    label = {"error": "error", "warn": "warn"}.get(severity, "ok")
    return [factory.make(
        f"tool_result:{tool_name}", kind="tool-result", source="response_item",
        title=f"{tool_name} result: {label}", details=details, tags=tags,
        severity=severity, relatedCallId=call_id,
    )]


def _extract_reasoning_item(factory: _EventFactory, payload: dict) -> list[ShadowEvent]:
    summary = payload.get("summary")
    if not isinstance(summary, list):
        return []
    text = "\n".join(
        (_coerce_str(item.get("text")) or "") if isinstance(item, dict) else ""
        for item in summary
    )
    if not text.strip():
        return []
    return [factory.make(
        "reasoning_summary", kind="reasoning", source="response_item",
        title=summarize_one_line(text), details={"text": text}, tags=["reasoning"],
    )]


_RESPONSE_ITEM_HANDLERS = {
    "function_call": _extract_function_call,
    "function_call_output": _extract_function_call_output,
    "reasoning": _extract_reasoning_item,
}


def _extract(ctx: ExtractContext, record: RawRecord) -> list[ShadowEvent]:
    factory = _EventFactory(ctx, record)
    payload = record.payload if isinstance(record.payload, dict) else {}

    if record.type == "parse_error":
        message = _coerce_str(payload.get("message")) or "JSON parse error"
        return [factory.make(
            "parse_error", kind="error", source="parser",
            title=f"Parse error: {summarize_one_line(message)}",
            details=dict(payload), tags=["error", "parse"], severity="error",
        )]

    if record.type == "session_meta":
        model = payload.get("model") or payload.get("model_provider") or "?"
        return [factory.make(
            "session_meta", kind="meta", source="session_meta",
            sessionId=_coerce_str(payload.get("id")),
            title=f"Session started / cwd={payload.get('cwd') or '?'} / model={model}",
            details=dict(payload), tags=["meta", "session"],
        )]

    if record.type == "turn_context":
        return [factory.make(
            "turn_context", kind="meta", source="turn_context",
            title=(
                f"Turn context / approval={payload.get('approval_policy') or '?'}"
                f" / cwd={payload.get('cwd') or '?'}"
            ),
            details=dict(payload), tags=["meta", "turn"],
        )]

    if not isinstance(payload.get("type"), str):
        return []

    if record.type == "event_msg":
        return _extract_event_msg(factory, payload)

    if record.type == "response_item":
        handler = _RESPONSE_ITEM_HANDLERS.get(payload["type"])
        return handler(factory, payload) if handler else []

    return []


def extract_shadow_events(ctx: ExtractContext, record: RawRecord) -> list[ShadowEvent]:
    """Map one raw record to zero or one normalized events. Never raises."""
    try:
        return _extract(ctx, record)
    except Exception:
        logger.exception("Failed to classify record seq=%s in %s", record.seq, ctx.filePath)
        return []
