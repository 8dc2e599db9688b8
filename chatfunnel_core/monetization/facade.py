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
from datetime import datetime, timedelta
from typing import Callable, List

from chatfunnel_core.monetization.config import FunnelConfig
from chatfunnel_core.monetization.ledger import TokenSettlementRecord
from chatfunnel_core.monetization.schema import (
    MatchCreatedEvent,
    ProcessMessageRequest,
    ProcessMessageResponse,
)
from chatfunnel_core.monetization.services.base import (
    FunnelError,
    FunnelStore,
    NotificationDispatcher,
    PricingPolicy,
    ProfileProvider,
    PromotionStore,
    WalletLedger,
)
from chatfunnel_core.monetization.services.free_window import compute_free_window
from chatfunnel_core.monetization.services.funnel import ChatFunnel, new_chat_session
from chatfunnel_core.monetization.services.pricing import WordBucketPricing
from chatfunnel_core.monetization.services.promotion import PromotionEligibilityGate
from chatfunnel_core.monetization.services.roles import resolve_roles
from chatfunnel_core.monetization.services.wallet import GuardedWallet
from chatfunnel_core.monetization.types import (
    CLOSE_REASON_EXPIRED,
    CLOSE_REASON_MANUAL,
    ChatSession,
    ChatState,
    MessageOutcome,
    PopularityTier,
    utcnow,
)

logger = logging.getLogger(__name__)


class ChatFunnelFacade:
    """Entry point for the messaging backend: match bootstrap and per-message calls."""

    def __init__(
        self,
        *,
        store: FunnelStore,
        promotion_store: PromotionStore,
        wallet: WalletLedger,
        profiles: ProfileProvider,
        notifier: NotificationDispatcher | None = None,
        pricing: PricingPolicy | None = None,
        config: FunnelConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._profiles = profiles
        self._config = config or FunnelConfig()
        self._clock = clock
        self._wallet = GuardedWallet(wallet, timeout_sec=self._config.wallet_timeout_sec)
        self._gate = PromotionEligibilityGate(promotion_store, self._config.promotion, clock=clock)
        self._funnel = ChatFunnel(
            store=store,
            wallet=self._wallet,
            pricing=pricing or WordBucketPricing(self._config.pricing),
            cfg=self._config,
            notifier=notifier,
            clock=clock,
        )

    @property
    def promotion_gate(self) -> PromotionEligibilityGate:
        return self._gate

    def on_match_created(
        self,
        chat_id: str,
        participant_a: str,
        participant_b: str,
        *,
        region: str,
    ) -> ChatSession:
        """
        Initialize the chat for a new match. Safe to call again: a pair of
        users has one chat, so a repeated match (same chat id or a new one
        for the same two users) returns the first session unchanged.
        """
        existing = self._store.get_chat(chat_id) or self._store.find_chat_for_pair(participant_a, participant_b)
        if existing is not None:
            logger.debug("[Facade] chat=%s already initialized as %s", chat_id, existing.chat_id)
            return existing

        snapshot_a = self._profiles.get_snapshot(participant_a)
        snapshot_b = self._profiles.get_snapshot(participant_b)
        roles = resolve_roles(snapshot_a, snapshot_b)

        promotion_eligible = False
        if roles.has_earner and roles.tier == PopularityTier.LOW_POPULARITY:
            earner = snapshot_a if snapshot_a.user_id == roles.earning_participant_id else snapshot_b
            promotion_eligible = self._gate.check_promotion_eligibility(
                earner.user_id,
                region,
                earner.metrics,
                chat_id=chat_id,
            )

        window = compute_free_window(roles, promotion_eligible, self._config.free_window)
        session = new_chat_session(
            chat_id=chat_id,
            participant_a=participant_a,
            participant_b=participant_b,
            roles=roles,
            window=window,
            promotion_region=region if promotion_eligible else None,
            now=self._clock(),
        )
        stored, created = self._store.create_chat(session)
        if created:
            logger.info(
                "[Facade] chat=%s initialized mode=%s allowance=%d earner=%s",
                chat_id,
                window.billing_mode.value,
                window.allowance,
                roles.earning_participant_id,
            )
        elif stored.chat_id != chat_id:
            logger.info("[Facade] chat=%s duplicates pair chat=%s", chat_id, stored.chat_id)
            if promotion_eligible:
                self._gate.release(chat_id)
        return stored

    def handle_match_created(self, event: MatchCreatedEvent) -> ChatSession:
        return self.on_match_created(
            event.chat_id,
            event.participant_a,
            event.participant_b,
            region=event.region,
        )

    def process_message(
        self,
        chat_id: str,
        sender_id: str,
        word_count: int,
        *,
        idempotency_key: str,
    ) -> MessageOutcome:
        return self._funnel.process_message(
            chat_id,
            sender_id,
            word_count,
            idempotency_key=idempotency_key,
        )

    def handle_message(self, request: ProcessMessageRequest) -> ProcessMessageResponse:
        outcome = self.process_message(
            request.chat_id,
            request.sender_id,
            request.word_count,
            idempotency_key=request.idempotency_key,
        )
        return ProcessMessageResponse.from_outcome(outcome)

    def close_chat(self, chat_id: str, reason: str = CLOSE_REASON_MANUAL) -> ChatSession:
        """
        Close the chat: later messages are rejected and a promotion grant, if
        any, goes back to the regional pool. Billing state is left as is.
        """
        session, closed_now = self._store.close_chat(chat_id=chat_id, reason=reason, now=self._clock())
        if session.promotion_region is not None:
            self._gate.release(chat_id)
        if closed_now:
            logger.info("[Facade] chat=%s closed reason=%s state=%s", chat_id, reason, session.state.value)
        return session

    def expire_inactive_chats(self, now: datetime | None = None, *, limit: int = 500) -> int:
        """
        Close chats idle past their limit: `paid_inactivity_hours` once the
        chat is PAID, `inactivity_hours` otherwise. Returns how many closed.
        """
        now = now or self._clock()
        paid_cutoff = now - timedelta(hours=self._config.paid_inactivity_hours)
        total_cutoff = now - timedelta(hours=self._config.inactivity_hours)

        expired = 0
        for session in self._store.list_idle_chats(idle_since=paid_cutoff, limit=limit):
            if session.state != ChatState.PAID and session.updated_at >= total_cutoff:
                continue
            try:
                _, closed_now = self._store.close_chat(
                    chat_id=session.chat_id,
                    reason=CLOSE_REASON_EXPIRED,
                    now=now,
                )
                if session.promotion_region is not None:
                    self._gate.release(session.chat_id)
            except FunnelError as e:
                logger.error("[Facade] chat=%s expiry failed: %s", session.chat_id, e)
                continue
            if closed_now:
                expired += 1
        if expired:
            logger.info("[Facade] Expired %d inactive chats", expired)
        return expired

    def release_promotion(self, chat_id: str) -> bool:
        return self._gate.release(chat_id)

    def get_chat(self, chat_id: str) -> ChatSession | None:
        return self._store.get_chat(chat_id)

    def list_settlements(self, chat_id: str) -> List[TokenSettlementRecord]:
        return self._store.list_settlements(chat_id)

    def close(self) -> None:
        self._wallet.close()
