"""Session data model and the tagged items a consumer receives.

Every item a session yields carries a ``type`` discriminator: ``system``,
``message``, ``agent_progress`` or ``result``. ``item_from_dict`` is the
single decoding point and rejects anything else.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, ClassVar, Literal, Union

ContentPart = dict[str, Any]

CONTENT_PART_TYPES = frozenset({"text", "tool_use", "tool_result", "image"})

ProgressStatus = Literal["running", "completed", "failed"]


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


def normalize_content(content: str | list[ContentPart]) -> list[ContentPart]:
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    parts: list[ContentPart] = []
    for part in content:
        part_type = part.get("type") if isinstance(part, dict) else None
        if part_type not in CONTENT_PART_TYPES:
            raise ValueError(f"Unsupported content part type: {part_type!r}")
        parts.append(part)
    return parts


@dataclass(frozen=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    def __add__(self, other: Usage) -> Usage:
        return Usage(self.input_tokens + other.input_tokens, self.output_tokens + other.output_tokens)

    def to_dict(self) -> dict[str, int]:
        return {"input_tokens": self.input_tokens, "output_tokens": self.output_tokens}

    @classmethod
    def from_dict(cls, data: dict | None) -> Usage:
        data = data or {}
        return cls(int(data.get("input_tokens", 0)), int(data.get("output_tokens", 0)))


@dataclass(frozen=True)
class Message:
    type: ClassVar[str] = "message"

    role: str
    content: list[ContentPart]
    uuid: str
    parent_uuid: str | None
    session_id: str
    timestamp: str = field(default_factory=utc_now)
    agent_id: str | None = None

    @property
    def text(self) -> str:
        return "\n".join(p.get("text", "") for p in self.content if p.get("type") == "text")

    @property
    def tool_uses(self) -> list[ContentPart]:
        return [p for p in self.content if p.get("type") == "tool_use"]

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type,
            "role": self.role,
            "content": self.content,
            "uuid": self.uuid,
            "parentUuid": self.parent_uuid,
            "sessionId": self.session_id,
            "timestamp": self.timestamp,
        }
        if self.agent_id is not None:
            data["agentId"] = self.agent_id
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            role=data["role"],
            content=normalize_content(data.get("content", [])),
            uuid=data["uuid"],
            parent_uuid=data.get("parentUuid"),
            session_id=data["sessionId"],
            timestamp=data.get("timestamp") or utc_now(),
            agent_id=data.get("agentId"),
        )


@dataclass(frozen=True)
class SystemMessage:
    """Sent once per session at initialization. Not part of the causal chain."""

    type: ClassVar[str] = "system"

    session_id: str
    model: str
    cwd: str
    tools: list[str]
    timestamp: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "sessionId": self.session_id,
            "model": self.model,
            "cwd": self.cwd,
            "tools": list(self.tools),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SystemMessage:
        return cls(
            session_id=data["sessionId"],
            model=data.get("model", ""),
            cwd=data.get("cwd", ""),
            tools=list(data.get("tools", [])),
            timestamp=data.get("timestamp") or utc_now(),
        )


@dataclass(frozen=True)
class ResultMessage:
    """Terminal marker for one top-level send."""

    type: ClassVar[str] = "result"

    session_id: str
    is_error: bool
    result: str
    content: list[ContentPart] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    num_turns: int = 0
    duration_ms: int = 0
    error: str | None = None
    seq: int | None = None
    uuid: str | None = None
    timestamp: str = field(default_factory=utc_now)

    @property
    def subtype(self) -> str:
        return "error" if self.is_error else "success"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "subtype": self.subtype,
            "sessionId": self.session_id,
            "isError": self.is_error,
            "result": self.result,
            "content": self.content,
            "usage": self.usage.to_dict(),
            "numTurns": self.num_turns,
            "durationMs": self.duration_ms,
            "error": self.error,
            "seq": self.seq,
            "uuid": self.uuid,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResultMessage:
        return cls(
            session_id=data["sessionId"],
            is_error=bool(data.get("isError", False)),
            result=data.get("result", ""),
            content=list(data.get("content", [])),
            usage=Usage.from_dict(data.get("usage")),
            num_turns=int(data.get("numTurns", 0)),
            duration_ms=int(data.get("durationMs", 0)),
            error=data.get("error"),
            seq=data.get("seq"),
            uuid=data.get("uuid"),
            timestamp=data.get("timestamp") or utc_now(),
        )


@dataclass(frozen=True)
class AgentProgressEvent:
    """One step of a nested sub-agent, attributed to the tool call that spawned it."""

    type: ClassVar[str] = "agent_progress"

    session_id: str
    parent_tool_use_id: str
    agent_id: str
    agent_type: str
    status: ProgressStatus
    message: Message | None = None
    error: str | None = None
    timestamp: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "sessionId": self.session_id,
            "parentToolUseId": self.parent_tool_use_id,
            "agentId": self.agent_id,
            "agentType": self.agent_type,
            "status": self.status,
            "message": self.message.to_dict() if self.message is not None else None,
            "error": self.error,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentProgressEvent:
        status = data.get("status")
        if status not in ("running", "completed", "failed"):
            raise ValueError(f"Unknown progress status: {status!r}")
        message = data.get("message")
        return cls(
            session_id=data["sessionId"],
            parent_tool_use_id=data["parentToolUseId"],
            agent_id=data["agentId"],
            agent_type=data.get("agentType", ""),
            status=status,
            message=Message.from_dict(message) if message else None,
            error=data.get("error"),
            timestamp=data.get("timestamp") or utc_now(),
        )


SessionItem = Union[SystemMessage, Message, AgentProgressEvent, ResultMessage]

_ITEM_TYPES: dict[str, type] = {
    SystemMessage.type: SystemMessage,
    Message.type: Message,
    AgentProgressEvent.type: AgentProgressEvent,
    ResultMessage.type: ResultMessage,
}


def item_from_dict(data: dict[str, Any]) -> SessionItem:
    item_type = data.get("type")
    cls = _ITEM_TYPES.get(item_type)  # type: ignore[arg-type]
    if cls is None:
        raise ValueError(f"Unknown session item type: {item_type!r}")
    return cls.from_dict(data)
