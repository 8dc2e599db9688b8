# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Chatfunnel Engine.
#
# Chatfunnel Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Chat Funnel State Machine.

States: FREE -> PAID (one way), or FULLY_FREE (terminal) for promotional
chats. The free window is per participant; the chat becomes PAID only once
BOTH participants have used their own allowance.

Processing a message:
1. Per-chat transaction: idempotency check, free-quota increment and the
   joint-exhaustion check happen together (see `admit_message`).
2. PAID messages: price -> compute split -> debit payer (bounded time) ->
   credit earner -> persist settlement + processed marker atomically.

A failure after the payer was debited aborts the message: the earner credit
(if any) is reversed, the payer is refunded and the error propagates. Wallet
keys carry the settlement record id of the run, so a retried message is a
fresh run rather than a replay of the compensated one. A run that finds its
key already settled by a concurrent run is undone the same way.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Callable

from chatfunnel_core.monetization.services.base import (
    Admission,
    AdmissionKind,
    FunnelStore,
    InsufficientFundsError,
    NotAParticipantError,
    NotificationDispatcher,
    PricingPolicy,
    WalletLedger,
    WalletTimeoutError,
    retry_on_conflict,
)
from chatfunnel_core.monetization.ledger import (
    TokenSettlementRecord,
    build_wallet_idempotency_key,
    new_record_id,
)
from chatfunnel_core.monetization.services.router import TokenRouter
from chatfunnel_core.monetization.types import (
    REASON_AWAITING_OTHER_PARTY,
    REASON_CHAT_CLOSED,
    REASON_INSUFFICIENT_FUNDS,
    REASON_NO_BILLABLE_PARTY,
    REASON_WALLET_UNAVAILABLE,
    ChatSession,
    ChatState,
    FreeWindow,
    MessageOutcome,
    ResolvedRoles,
    utcnow,
)

if TYPE_CHECKING:
    from chatfunnel_core.monetization.config import FunnelConfig

logger = logging.getLogger(__name__)

EVENT_FREE_QUOTA_LOW = "free_quota_low"
EVENT_FREE_QUOTA_EXHAUSTED = "free_quota_exhausted"
EVENT_CHAT_NOW_PAID = "chat_now_paid"


def new_chat_session(
    *,
    chat_id: str,
    participant_a: str,
    participant_b: str,
    roles: ResolvedRoles,
    window: FreeWindow,
    promotion_region: str | None = None,
    now: datetime | None = None,
) -> ChatSession:
    now = now or utcnow()
    return ChatSession(
        chat_id=chat_id,
        participant_a=participant_a,
        participant_b=participant_b,
        earning_participant_id=roles.earning_participant_id,
        paying_participant_id=roles.paying_participant_id,
        billing_mode=window.billing_mode,
        free_quota_per_participant=window.quotas_for(participant_a, participant_b),
        free_messages_used={participant_a: 0, participant_b: 0},
        state=window.initial_state,
        created_at=now,
        updated_at=now,
        tier=roles.tier,
        earn_mode_on=roles.earn_mode_on,
        policy_version=window.policy_version,
        promotion_region=promotion_region,
    )


def admit_message(session: ChatSession, sender_id: str, now: datetime) -> Admission:
    """
    Decide what happens to one message given the current session.

    Pure; the store runs it inside the per-chat transaction so the increment
    and the joint-exhaustion check observe the same snapshot.
    """
    if not session.is_participant(sender_id):
        raise NotAParticipantError(f"{sender_id} is not a participant of chat {session.chat_id}")

    if session.is_closed:
        return Admission(
            kind=AdmissionKind.CLOSED,
            session=session,
            outcome=MessageOutcome(allowed=False, billed=False, reason=REASON_CHAT_CLOSED, state=session.state),
        )

    if session.state == ChatState.FULLY_FREE:
        updated = session.with_message(now)
        return Admission(
            kind=AdmissionKind.FULLY_FREE,
            session=updated,
            changed=True,
            outcome=MessageOutcome(allowed=True, billed=False, state=ChatState.FULLY_FREE),
        )

    if session.state == ChatState.FREE:
        if not session.is_exhausted(sender_id):
            updated = session.with_free_message(sender_id, now)
            transitioned = False
            if updated.jointly_exhausted():
                updated = updated.with_state(ChatState.PAID, now)
                transitioned = True
            return Admission(
                kind=AdmissionKind.FREE,
                session=updated,
                changed=True,
                outcome=MessageOutcome(
                    allowed=True,
                    billed=False,
                    state=updated.state,
                    free_remaining=updated.free_remaining(sender_id),
                ),
                transitioned_to_paid=transitioned,
            )

        if session.jointly_exhausted():
            # Both exhausted but the flip was never written; heal it and bill.
            return Admission(
                kind=AdmissionKind.BILLABLE,
                session=session.with_state(ChatState.PAID, now),
                changed=True,
                transitioned_to_paid=True,
            )

        return Admission(
            kind=AdmissionKind.AWAITING_OTHER_PARTY,
            session=session,
            outcome=MessageOutcome(
                allowed=False,
                billed=False,
                reason=REASON_AWAITING_OTHER_PARTY,
                state=ChatState.FREE,
                free_remaining=0,
            ),
        )

    return Admission(kind=AdmissionKind.BILLABLE, session=session)


class ChatFunnel:
    """Per-message entry point of the funnel."""

    def __init__(
        self,
        *,
        store: FunnelStore,
        wallet: WalletLedger,
        pricing: PricingPolicy,
        cfg: "FunnelConfig",
        notifier: NotificationDispatcher | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.wallet = wallet
        self.pricing = pricing
        self.cfg = cfg
        self.router = TokenRouter(wallet, cfg)
        self.notifier = notifier
        self._clock = clock

    def process_message(
        self,
        chat_id: str,
        sender_id: str,
        word_count: int,
        *,
        idempotency_key: str,
    ) -> MessageOutcome:
        if not idempotency_key:
            raise ValueError("idempotency_key is required")
        if word_count < 0:
            raise ValueError("word_count must be non-negative")

        now = self._clock()
        admission = retry_on_conflict(
            lambda: self.store.admit_message(
                chat_id=chat_id,
                idempotency_key=idempotency_key,
                decide=lambda session: admit_message(session, sender_id, now),
            ),
            max_attempts=self.cfg.transaction_max_attempts,
            backoff_sec=self.cfg.transaction_backoff_sec,
            label=f"admit chat={chat_id}",
        )

        if admission.kind == AdmissionKind.DUPLICATE:
            logger.debug("[Funnel] chat=%s key=%s replayed", chat_id, idempotency_key)
            return admission.outcome

        session = admission.session
        self._notify_after_admission(session, sender_id, admission)

        if admission.is_final:
            return admission.outcome

        return self._process_paid(session, idempotency_key, word_count, now)

    def _process_paid(
        self,
        session: ChatSession,
        idempotency_key: str,
        word_count: int,
        now: datetime,
    ) -> MessageOutcome:
        chat_id = session.chat_id
        payer_id = session.paying_participant_id

        if payer_id is None:
            return self._commit(
                chat_id,
                idempotency_key,
                MessageOutcome(
                    allowed=True,
                    billed=False,
                    reason=REASON_NO_BILLABLE_PARTY,
                    state=ChatState.PAID,
                ),
                now=now,
            )

        gross = self.pricing.gross_tokens(session, word_count)
        # Validates the billing mode before any tokens move.
        self.router.route_tokens(chat_id, gross, session.billing_mode, session.earning_participant_id)

        record_id = new_record_id()
        try:
            self.wallet.debit(
                payer_id,
                gross,
                idempotency_key=build_wallet_idempotency_key(chat_id, idempotency_key, "debit", attempt=record_id),
            )
        except InsufficientFundsError:
            logger.info("[Funnel] chat=%s payer=%s needs deposit for %d tokens", chat_id, payer_id, gross)
            return MessageOutcome(
                allowed=False,
                billed=False,
                requires_deposit=True,
                reason=REASON_INSUFFICIENT_FUNDS,
                state=ChatState.PAID,
                gross_tokens=gross,
            )
        except WalletTimeoutError:
            logger.warning("[Funnel] chat=%s debit outcome unknown; message not sent", chat_id)
            return MessageOutcome(
                allowed=False,
                billed=False,
                reason=REASON_WALLET_UNAVAILABLE,
                state=ChatState.PAID,
                gross_tokens=gross,
            )

        record: TokenSettlementRecord | None = None
        try:
            record = self.router.settle(
                chat_id=chat_id,
                message_key=idempotency_key,
                gross_tokens=gross,
                billing_mode=session.billing_mode,
                earning_participant_id=session.earning_participant_id,
                payer_id=payer_id,
                now=now,
                record_id=record_id,
            )
            outcome = MessageOutcome(
                allowed=True,
                billed=True,
                state=ChatState.PAID,
                gross_tokens=gross,
                settlement_id=record.record_id,
            )
            committed = self._commit(chat_id, idempotency_key, outcome, settlement=record, now=now)
        except Exception as e:
            logger.error("[Funnel] chat=%s key=%s failed after debit: %s", chat_id, idempotency_key, e)
            self._compensate(chat_id, idempotency_key, payer_id, gross, record_id, record)
            raise

        if committed.replayed:
            # A concurrent run settled this key first; undo this run's transfers.
            logger.info(
                "[Funnel] chat=%s key=%s already settled by %s", chat_id, idempotency_key, committed.settlement_id
            )
            self._compensate(chat_id, idempotency_key, payer_id, gross, record_id, record)
        return committed

    def _compensate(
        self,
        chat_id: str,
        idempotency_key: str,
        payer_id: str,
        gross: int,
        record_id: str,
        record: TokenSettlementRecord | None,
    ) -> None:
        """Undo the wallet side of an aborted paid message. Failures are logged."""
        if record is not None and record.earner_id and record.earner_share_tokens > 0:
            try:
                self.wallet.debit(
                    record.earner_id,
                    record.earner_share_tokens,
                    idempotency_key=build_wallet_idempotency_key(
                        chat_id, idempotency_key, "reversal", attempt=record_id
                    ),
                )
            except Exception as e:
                logger.error(
                    "[Funnel] chat=%s reversal of %d tokens from %s failed: %s",
                    chat_id, record.earner_share_tokens, record.earner_id, e,
                )
        try:
            self.wallet.credit(
                payer_id,
                gross,
                idempotency_key=build_wallet_idempotency_key(chat_id, idempotency_key, "refund", attempt=record_id),
            )
            logger.info("[Funnel] chat=%s refunded %d tokens to %s", chat_id, gross, payer_id)
        except Exception as e:
            logger.error("[Funnel] chat=%s refund of %d tokens to %s failed: %s", chat_id, gross, payer_id, e)

    def _commit(self, chat_id, idempotency_key, outcome, settlement=None, now=None) -> MessageOutcome:
        now = now or self._clock()
        return retry_on_conflict(
            lambda: self.store.commit_message(
                chat_id=chat_id,
                idempotency_key=idempotency_key,
                outcome=outcome,
                settlement=settlement,
                now=now,
            ),
            max_attempts=self.cfg.transaction_max_attempts,
            backoff_sec=self.cfg.transaction_backoff_sec,
            label=f"commit chat={chat_id}",
        )

    # ------------------------------------------------------------------
    # Notifications (fire-and-forget)
    # ------------------------------------------------------------------

    def _notify_after_admission(self, session: ChatSession, sender_id: str, admission: Admission) -> None:
        if self.notifier is None:
            return
        if admission.kind == AdmissionKind.FREE:
            remaining = session.free_remaining(sender_id)
            if remaining == 0:
                self._notify(sender_id, EVENT_FREE_QUOTA_EXHAUSTED, {"chat_id": session.chat_id})
            elif remaining is not None and remaining <= self.cfg.low_quota_threshold:
                self._notify(
                    sender_id,
                    EVENT_FREE_QUOTA_LOW,
                    {"chat_id": session.chat_id, "remaining": remaining},
                )
        if admission.transitioned_to_paid:
            for participant in session.participants:
                self._notify(participant, EVENT_CHAT_NOW_PAID, {"chat_id": session.chat_id})

    def _notify(self, user_id: str, event: str, payload: dict) -> None:
        try:
            self.notifier.notify(user_id, event, payload)
        except Exception as e:
            logger.warning("[Funnel] Notification %s to %s failed: %s", event, user_id, e)
