# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Chatfunnel Engine.
#
# Chatfunnel Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------

# Stored in place of a per-participant allowance for promotional chats.
UNLIMITED_QUOTA = -1

REASON_AWAITING_OTHER_PARTY = "own_free_quota_exhausted_awaiting_other_party"
REASON_INSUFFICIENT_FUNDS = "insufficient_funds"
REASON_WALLET_UNAVAILABLE = "wallet_unavailable"
REASON_NO_BILLABLE_PARTY = "no_billable_party"
REASON_CHAT_CLOSED = "chat_closed"

CLOSE_REASON_MANUAL = "manual"
CLOSE_REASON_EXPIRED = "expired"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def coerce_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if hasattr(value, "to_datetime"):
        return value.to_datetime()
    return datetime.fromisoformat(str(value))


def coerce_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------

class BillingMode(str, Enum):
    STANDARD = "STANDARD"
    PROMOTIONAL_FREE = "PROMOTIONAL_FREE"
    PLATFORM_ONLY = "PLATFORM_ONLY"


class ChatState(str, Enum):
    FREE = "FREE"
    PAID = "PAID"
    FULLY_FREE = "FULLY_FREE"


class PopularityTier(str, Enum):
    ROYAL = "royal"
    STANDARD = "standard"
    LOW_POPULARITY = "low_popularity"


# -----------------------------------------------------------------------------
# Quota helpers
# -----------------------------------------------------------------------------

def is_unlimited(limit: int) -> bool:
    return limit == UNLIMITED_QUOTA


def quota_exhausted(used: int, limit: int) -> bool:
    """True once `used` has reached a finite `limit`."""
    if is_unlimited(limit):
        return False
    return used >= limit


def quota_remaining(used: int, limit: int) -> Optional[int]:
    """Remaining free messages, or None when the allowance is unlimited."""
    if is_unlimited(limit):
        return None
    return max(0, limit - used)


# -----------------------------------------------------------------------------
# Participant snapshots (read-only inputs captured at match time)
# -----------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class PopularityMetrics:
    """Server-held visibility metrics for a would-be earner. None = not measured."""
    swipe_right_rate: Optional[float] = None
    matches_per_day: Optional[float] = None
    active_chats_per_week: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "swipe_right_rate": self.swipe_right_rate,
            "matches_per_day": self.matches_per_day,
            "active_chats_per_week": self.active_chats_per_week,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "PopularityMetrics":
        def _opt(key: str, cast):
            value = d.get(key)
            return cast(value) if value is not None else None

        return cls(
            swipe_right_rate=_opt("swipe_right_rate", float),
            matches_per_day=_opt("matches_per_day", float),
            active_chats_per_week=_opt("active_chats_per_week", int),
        )


@dataclass(frozen=True, slots=True)
class ParticipantSnapshot:
    user_id: str
    can_earn: bool = False
    tier: PopularityTier = PopularityTier.STANDARD
    earn_mode_on: bool = False
    metrics: Optional[PopularityMetrics] = None


@dataclass(frozen=True, slots=True)
class ResolvedRoles:
    earning_participant_id: Optional[str]
    paying_participant_id: Optional[str]
    tier: Optional[PopularityTier] = None
    earn_mode_on: bool = False

    @property
    def has_earner(self) -> bool:
        return self.earning_participant_id is not None


@dataclass(frozen=True, slots=True)
class FreeWindow:
    """Output of the free-window policy for a new chat."""
    billing_mode: BillingMode
    allowance: int
    policy_version: str

    def quotas_for(self, participant_a: str, participant_b: str) -> Dict[str, int]:
        return {participant_a: self.allowance, participant_b: self.allowance}

    @property
    def initial_state(self) -> ChatState:
        if self.billing_mode == BillingMode.PROMOTIONAL_FREE:
            return ChatState.FULLY_FREE
        return ChatState.FREE


# -----------------------------------------------------------------------------
# Chat Session
# -----------------------------------------------------------------------------

def build_pair_key(participant_a: str, participant_b: str) -> str:
    """Order-independent id for a matched pair. Safe as a Firestore document id."""
    low, high = sorted((participant_a, participant_b))
    raw = f"{low}:{high}:pair:v1"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass(frozen=True, slots=True)
class ChatSession:
    chat_id: str
    participant_a: str
    participant_b: str
    earning_participant_id: Optional[str]
    paying_participant_id: Optional[str]
    billing_mode: BillingMode
    free_quota_per_participant: Dict[str, int]
    free_messages_used: Dict[str, int]
    state: ChatState
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    # Snapshot of the inputs that produced the quotas (audit only).
    tier: Optional[PopularityTier] = None
    earn_mode_on: bool = False
    policy_version: str = ""
    promotion_region: Optional[str] = None
    message_count: int = 0

    # Set once when the chat is closed by a participant or by the inactivity sweep.
    closed_at: Optional[datetime] = None
    close_reason: Optional[str] = None

    @property
    def participants(self) -> Tuple[str, str]:
        return (self.participant_a, self.participant_b)

    def is_participant(self, user_id: str) -> bool:
        return user_id in (self.participant_a, self.participant_b)

    @property
    def pair_key(self) -> str:
        return build_pair_key(self.participant_a, self.participant_b)

    @property
    def is_closed(self) -> bool:
        return self.closed_at is not None

    def other_participant(self, user_id: str) -> str:
        if user_id == self.participant_a:
            return self.participant_b
        if user_id == self.participant_b:
            return self.participant_a
        raise KeyError(user_id)

    def used(self, user_id: str) -> int:
        return int(self.free_messages_used.get(user_id, 0))

    def limit(self, user_id: str) -> int:
        return int(self.free_quota_per_participant.get(user_id, 0))

    def is_exhausted(self, user_id: str) -> bool:
        return quota_exhausted(self.used(user_id), self.limit(user_id))

    def free_remaining(self, user_id: str) -> Optional[int]:
        return quota_remaining(self.used(user_id), self.limit(user_id))

    def jointly_exhausted(self) -> bool:
        return all(self.is_exhausted(p) for p in self.participants)

    def with_free_message(self, user_id: str, now: datetime) -> "ChatSession":
        used = dict(self.free_messages_used)
        used[user_id] = self.used(user_id) + 1
        return replace(
            self,
            free_messages_used=used,
            message_count=self.message_count + 1,
            updated_at=now,
        )

    def with_message(self, now: datetime) -> "ChatSession":
        return replace(self, message_count=self.message_count + 1, updated_at=now)

    def with_state(self, state: ChatState, now: datetime) -> "ChatSession":
        return replace(self, state=state, updated_at=now)

    def with_closed(self, reason: str, now: datetime) -> "ChatSession":
        return replace(self, closed_at=now, close_reason=reason, updated_at=now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chat_id": self.chat_id,
            "participant_a": self.participant_a,
            "participant_b": self.participant_b,
            "earning_participant_id": self.earning_participant_id,
            "paying_participant_id": self.paying_participant_id,
            "billing_mode": self.billing_mode.value,
            "free_quota_per_participant": dict(self.free_quota_per_participant),
            "free_messages_used": dict(self.free_messages_used),
            "state": self.state.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "tier": self.tier.value if self.tier else None,
            "earn_mode_on": self.earn_mode_on,
            "policy_version": self.policy_version,
            "promotion_region": self.promotion_region,
            "message_count": self.message_count,
            "pair_key": self.pair_key,
            "closed_at": self.closed_at,
            "close_reason": self.close_reason,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ChatSession":
        tier = data.get("tier")
        return cls(
            chat_id=data["chat_id"],
            participant_a=data["participant_a"],
            participant_b=data["participant_b"],
            earning_participant_id=data.get("earning_participant_id"),
            paying_participant_id=data.get("paying_participant_id"),
            billing_mode=BillingMode(data.get("billing_mode", BillingMode.STANDARD.value)),
            free_quota_per_participant={
                k: int(v) for k, v in (data.get("free_quota_per_participant") or {}).items()
            },
            free_messages_used={
                k: int(v) for k, v in (data.get("free_messages_used") or {}).items()
            },
            state=ChatState(data.get("state", ChatState.FREE.value)),
            created_at=coerce_datetime(data.get("created_at")) or utcnow(),
            updated_at=coerce_datetime(data.get("updated_at")) or utcnow(),
            tier=PopularityTier(tier) if tier else None,
            earn_mode_on=bool(data.get("earn_mode_on", False)),
            policy_version=data.get("policy_version") or "",
            promotion_region=data.get("promotion_region"),
            message_count=int(data.get("message_count", 0)),
            closed_at=coerce_datetime(data.get("closed_at")),
            close_reason=data.get("close_reason"),
        )


# -----------------------------------------------------------------------------
# Promotion quota
# -----------------------------------------------------------------------------

def promotion_quota_key(region: str, day: date) -> str:
    return f"{region}:{day.isoformat()}"


@dataclass(frozen=True, slots=True)
class PromotionQuota:
    region: str
    date: date
    granted_today: int = 0
    active_concurrent: int = 0

    @property
    def key(self) -> str:
        return promotion_quota_key(self.region, self.date)

    def to_dict(self) -> dict:
        return {
            "region": self.region,
            "date": self.date.isoformat(),
            "granted_today": self.granted_today,
            "active_concurrent": self.active_concurrent,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "PromotionQuota":
        return cls(
            region=d["region"],
            date=coerce_date(d["date"]),
            granted_today=int(d.get("granted_today", 0)),
            active_concurrent=int(d.get("active_concurrent", 0)),
        )


@dataclass(frozen=True, slots=True)
class PromotionGrant:
    """Remembers which quota document a chat's promotion was charged against."""
    chat_id: str
    earner_id: str
    region: str
    date: date
    granted_at: datetime = field(default_factory=utcnow)
    released: bool = False

    def to_dict(self) -> dict:
        return {
            "chat_id": self.chat_id,
            "earner_id": self.earner_id,
            "region": self.region,
            "date": self.date.isoformat(),
            "granted_at": self.granted_at,
            "released": self.released,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "PromotionGrant":
        return cls(
            chat_id=d["chat_id"],
            earner_id=d["earner_id"],
            region=d["region"],
            date=coerce_date(d["date"]),
            granted_at=coerce_datetime(d.get("granted_at")) or utcnow(),
            released=bool(d.get("released", False)),
        )


# -----------------------------------------------------------------------------
# Token split & message outcome
# -----------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class TokenSplit:
    earner_share: int
    platform_share: int

    @property
    def total(self) -> int:
        return self.earner_share + self.platform_share


@dataclass(frozen=True, slots=True)
class MessageOutcome:
    """Typed result handed back to the messaging backend."""
    allowed: bool
    billed: bool = False
    requires_deposit: bool = False
    reason: Optional[str] = None
    state: Optional[ChatState] = None
    gross_tokens: int = 0
    settlement_id: Optional[str] = None
    free_remaining: Optional[int] = None
    replayed: bool = False

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "billed": self.billed,
            "requires_deposit": self.requires_deposit,
            "reason": self.reason,
            "state": self.state.value if self.state else None,
            "gross_tokens": self.gross_tokens,
            "settlement_id": self.settlement_id,
            "free_remaining": self.free_remaining,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "MessageOutcome":
        state = d.get("state")
        return cls(
            allowed=bool(d.get("allowed", False)),
            billed=bool(d.get("billed", False)),
            requires_deposit=bool(d.get("requires_deposit", False)),
            reason=d.get("reason"),
            state=ChatState(state) if state else None,
            gross_tokens=int(d.get("gross_tokens", 0)),
            settlement_id=d.get("settlement_id"),
            free_remaining=d.get("free_remaining"),
        )
