"""Wire types exchanged with the coordinator."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class MonitoredAddress:
    """An address the coordinator wants probed during one heartbeat cycle."""

    address_id: Any
    value: str
    wol: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MonitoredAddress":
        return cls(
            address_id=data.get("addressId"),
            value=str(data.get("value") or ""),
            wol=bool(data.get("wol")),
        )


@dataclass
class HeartbeatRecord:
    address_id: Any
    alive: bool
    mac: str | None
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "addressId": self.address_id,
            "alive": self.alive,
            "mac": self.mac,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class Command:
    command_id: Any
    value: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Command":
        return cls(command_id=data.get("commandId"), value=str(data.get("value") or ""))


@dataclass
class CommandReply:
    command_id: Any
    replies: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"commandId": self.command_id, "replies": list(self.replies)}
