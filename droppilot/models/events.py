"""Typed records passed between components and published to listeners."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


@dataclass(frozen=True)
class ErrorInfo:
    code: str
    message: str


class ClaimKind(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class ClaimStatus:
    kind: ClaimKind
    message: str
    at: float
    code: str | None = None
    title: str | None = None


@dataclass(frozen=True)
class MinutesEarned:
    delta: int


@dataclass(frozen=True)
class DropClaimed:
    title: str
    game: str


@dataclass(frozen=True)
class AuthError:
    message: str | None = None


@dataclass(frozen=True)
class AutoSwitchInfo:
    at: float
    reason: str  # "offline" or "priority"
    from_channel: tuple[str, str] | None  # (id, name)
    to_channel: tuple[str, str]


@dataclass(frozen=True)
class AutoSwitch:
    info: AutoSwitchInfo


@dataclass(frozen=True)
class HeartbeatStats:
    last_ok: float | None = None
    last_error: ErrorInfo | None = None
    next_at: float | None = None


@dataclass(frozen=True)
class ActiveDropInfo:
    id: str
    title: str
    required_minutes: int
    earned_minutes: int
    virtual_earned: float
    remaining_minutes: float
    eta: float | None
    drop_instance_id: str | None = None
    campaign_id: str | None = None


@dataclass(frozen=True)
class TargetSummary:
    game: str
    target_drops: int
    total_drops: int
    claimed_drops: int
    required_minutes: int
    earned_minutes: int
