from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from flowbridge.config import DEFAULT_INSTANCE_OPTIONS


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return raw
    if not raw:
        return utcnow()
    return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))


@dataclass
class RemoteWorkflowConfig:
    base_url: str
    webhook_path: str
    api_key: Optional[str] = None
    timeout: int = 15000
    fallback_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "baseUrl": self.base_url,
            "webhookPath": self.webhook_path,
            "apiKey": self.api_key,
            "timeout": self.timeout,
            "fallbackPath": self.fallback_path,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RemoteWorkflowConfig":
        return cls(
            base_url=data["baseUrl"],
            webhook_path=data["webhookPath"],
            api_key=data.get("apiKey") or None,
            timeout=int(data.get("timeout") or 15000),
            fallback_path=data.get("fallbackPath") or None,
        )


_OPTION_KEYS = {
    "command_prefix": "commandPrefix",
    "process_self_messages": "processSelfMessages",
    "notify_unauthorized": "notifyUnauthorized",
    "max_conversation_length": "maxConversationLength",
    "show_typing_indicator": "showTypingIndicator",
    "enable_analytics": "enableAnalytics",
}


@dataclass
class InstanceOptions:
    command_prefix: str = DEFAULT_INSTANCE_OPTIONS["command_prefix"]
    process_self_messages: bool = DEFAULT_INSTANCE_OPTIONS["process_self_messages"]
    notify_unauthorized: bool = DEFAULT_INSTANCE_OPTIONS["notify_unauthorized"]
    max_conversation_length: int = DEFAULT_INSTANCE_OPTIONS["max_conversation_length"]
    show_typing_indicator: bool = DEFAULT_INSTANCE_OPTIONS["show_typing_indicator"]
    enable_analytics: bool = DEFAULT_INSTANCE_OPTIONS["enable_analytics"]

    def to_dict(self) -> Dict[str, Any]:
        return {camel: getattr(self, name) for name, camel in _OPTION_KEYS.items()}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "InstanceOptions":
        return cls().merged(data or {})

    def merged(self, data: Dict[str, Any]) -> "InstanceOptions":
        """Return a copy with the camelCase keys present in ``data`` applied."""
        changes = {
            name: data[camel]
            for name, camel in _OPTION_KEYS.items()
            if data.get(camel) is not None
        }
        return replace(self, **changes)


@dataclass
class InstanceConfig:
    instance_id: str
    name: str
    remote_workflow: RemoteWorkflowConfig
    allowed_users: List[str] = field(default_factory=list)
    allowed_groups: List[str] = field(default_factory=list)
    options: InstanceOptions = field(default_factory=InstanceOptions)
    status: str = "CREATED"
    created: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instanceId": self.instance_id,
            "name": self.name,
            "remoteWorkflowConfig": self.remote_workflow.to_dict(),
            "allowedUsers": list(self.allowed_users),
            "allowedGroups": list(self.allowed_groups),
            "options": self.options.to_dict(),
            "status": self.status,
            "created": self.created.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InstanceConfig":
        return cls(
            instance_id=data["instanceId"],
            name=data.get("name") or data["instanceId"],
            remote_workflow=RemoteWorkflowConfig.from_dict(data["remoteWorkflowConfig"]),
            allowed_users=list(data.get("allowedUsers") or []),
            allowed_groups=list(data.get("allowedGroups") or []),
            options=InstanceOptions.from_dict(data.get("options")),
            status=data.get("status") or "CREATED",
            created=_parse_datetime(data.get("created")),
            updated_at=_parse_datetime(data.get("updatedAt")),
        )


@dataclass(frozen=True)
class ConversationKey:
    """Scopes one message history: an instance plus a user or group id."""

    instance_id: str
    peer_id: str

    def __str__(self) -> str:
        return f"{self.instance_id}:{self.peer_id}"


@dataclass
class ConversationMessage:
    role: str
    content: str
    author: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.author:
            data["author"] = self.author
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationMessage":
        return cls(
            role=data["role"],
            content=data.get("content", ""),
            author=data.get("author"),
        )


@dataclass
class ConversationRecord:
    key: ConversationKey
    messages: List[ConversationMessage] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def append_turn(self, user_content: str, reply: str, *, author: Optional[str] = None) -> None:
        self.messages.append(ConversationMessage("user", user_content, author=author))
        self.messages.append(ConversationMessage("assistant", reply))

    def trim(self, max_length: int) -> None:
        """Keep the ``max_length`` most recent messages, oldest dropped first."""
        if max_length <= 0:
            self.messages = []
        elif len(self.messages) > max_length:
            self.messages = self.messages[-max_length:]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversationKey": str(self.key),
            "instanceId": self.key.instance_id,
            "peerId": self.key.peer_id,
            "messages": [m.to_dict() for m in self.messages],
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationRecord":
        return cls(
            key=ConversationKey(data["instanceId"], data["peerId"]),
            messages=[ConversationMessage.from_dict(m) for m in data.get("messages") or []],
            created_at=_parse_datetime(data.get("createdAt")),
            updated_at=_parse_datetime(data.get("updatedAt")),
        )
