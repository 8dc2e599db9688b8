# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Chatfunnel Engine.
#
# Chatfunnel Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Callable, List, Optional, Protocol, Tuple, TypeVar, runtime_checkable

from chatfunnel_core.monetization.ledger import TokenSettlementRecord
from chatfunnel_core.monetization.types import (
    ChatSession,
    MessageOutcome,
    ParticipantSnapshot,
    PromotionGrant,
    PromotionQuota,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------

class FunnelError(RuntimeError):
    pass


class ChatNotFoundError(FunnelError):
    pass


class NotAParticipantError(FunnelError):
    pass


class IdempotencyError(FunnelError):
    pass


class InvalidBillingModeForRoutingError(FunnelError):
    pass


class TransactionConflictError(FunnelError):
    pass


class WalletError(FunnelError):
    pass


class InsufficientFundsError(WalletError):
    pass


class WalletTimeoutError(WalletError):
    pass


# -----------------------------------------------------------------------------
# Admission (result of the per-chat transaction)
# -----------------------------------------------------------------------------

class AdmissionKind(str, Enum):
    FREE = "free"
    FULLY_FREE = "fully_free"
    AWAITING_OTHER_PARTY = "awaiting_other_party"
    BILLABLE = "billable"
    DUPLICATE = "duplicate"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class Admission:
    kind: AdmissionKind
    session: ChatSession | None
    changed: bool = False
    outcome: MessageOutcome | None = None
    transitioned_to_paid: bool = False

    @property
    def is_final(self) -> bool:
        """True when no wallet work is left for this message."""
        return self.kind != AdmissionKind.BILLABLE


AdmissionFn = Callable[[ChatSession], Admission]


# -----------------------------------------------------------------------------
# Store protocols
# -----------------------------------------------------------------------------

@runtime_checkable
class FunnelStore(Protocol):
    def get_chat(self, chat_id: str) -> ChatSession | None:
        ...

    def create_chat(self, session: ChatSession) -> Tuple[ChatSession, bool]:
        """
        Create once per chat id and once per participant pair. Returns
        (stored_session, created); when the pair already has a chat, that
        chat is returned with created=False.
        """
        ...

    def find_chat_for_pair(self, participant_a: str, participant_b: str) -> ChatSession | None:
        ...

    def admit_message(
        self,
        *,
        chat_id: str,
        idempotency_key: str,
        decide: AdmissionFn,
    ) -> Admission:
        """
        Run `decide` against the current session inside a serializable
        per-chat transaction. A processed idempotency key short-circuits to a
        DUPLICATE admission carrying the stored outcome. Accepted outcomes are
        recorded against the key in the same transaction.
        """
        ...

    def commit_message(
        self,
        *,
        chat_id: str,
        idempotency_key: str,
        outcome: MessageOutcome,
        settlement: TokenSettlementRecord | None = None,
        now: datetime | None = None,
    ) -> MessageOutcome:
        """Atomically record a paid-path message and its settlement (if any)."""
        ...

    def close_chat(self, *, chat_id: str, reason: str, now: datetime) -> Tuple[ChatSession, bool]:
        """Mark the chat closed once. Returns (session, closed_now)."""
        ...

    def list_idle_chats(self, *, idle_since: datetime, limit: int) -> List[ChatSession]:
        """Open chats whose last activity is older than `idle_since`."""
        ...

    def get_processed_message(self, chat_id: str, idempotency_key: str) -> MessageOutcome | None:
        ...

    def list_settlements(self, chat_id: str) -> List[TokenSettlementRecord]:
        ...


@runtime_checkable
class PromotionStore(Protocol):
    def get_promotion_quota(self, region: str, day: date) -> PromotionQuota:
        ...

    def get_promotion_grant(self, chat_id: str) -> PromotionGrant | None:
        ...

    def try_grant_promotion(
        self,
        *,
        region: str,
        day: date,
        max_per_day: int,
        max_concurrent: int,
        earner_id: str,
        chat_id: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Check both quotas and increment both counters in one transaction."""
        ...

    def release_promotion(self, chat_id: str) -> bool:
        ...


# -----------------------------------------------------------------------------
# External collaborators
# -----------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class DebitResult:
    success: bool
    new_balance: int


@dataclass(frozen=True, slots=True)
class CreditResult:
    success: bool


@runtime_checkable
class WalletLedger(Protocol):
    def debit(self, payer_id: str, amount: int, *, idempotency_key: str) -> DebitResult:
        """Raises InsufficientFundsError when the payer cannot cover `amount`."""
        ...

    def credit(self, earner_id: str, amount: int, *, idempotency_key: str) -> CreditResult:
        ...


@runtime_checkable
class ProfileProvider(Protocol):
    def get_snapshot(self, user_id: str) -> ParticipantSnapshot:
        ...


@runtime_checkable
class NotificationDispatcher(Protocol):
    def notify(self, user_id: str, event: str, payload: dict) -> None:
        ...


@runtime_checkable
class PricingPolicy(Protocol):
    def gross_tokens(self, session: ChatSession, word_count: int) -> int:
        ...


# -----------------------------------------------------------------------------
# Retry
# -----------------------------------------------------------------------------

def retry_on_conflict(
    fn: Callable[[], T],
    *,
    max_attempts: int,
    backoff_sec: float,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "transaction",
) -> T:
    """Run `fn`, retrying TransactionConflictError with exponential backoff."""
    attempts = max(1, max_attempts)
    last_error: Optional[TransactionConflictError] = None
    for attempt in range(attempts):
        if attempt > 0:
            sleep(backoff_sec * (2 ** (attempt - 1)))
            logger.debug("[Funnel] Retry %d/%d for %s", attempt + 1, attempts, label)
        try:
            return fn()
        except TransactionConflictError as e:
            last_error = e
            logger.warning("[Funnel] %s conflict on attempt %d: %s", label, attempt + 1, e)
    raise TransactionConflictError(f"{label} failed after {attempts} attempts: {last_error}")
