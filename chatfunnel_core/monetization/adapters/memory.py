# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Chatfunnel Engine.
#
# Chatfunnel Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import date, datetime
from typing import Dict, List, Tuple

from chatfunnel_core.monetization.ledger import TokenSettlementRecord
from chatfunnel_core.monetization.services.base import (
    Admission,
    AdmissionFn,
    AdmissionKind,
    ChatNotFoundError,
    CreditResult,
    DebitResult,
    FunnelStore,
    IdempotencyError,
    InsufficientFundsError,
    PromotionStore,
    WalletLedger,
)
from chatfunnel_core.monetization.types import (
    ChatSession,
    MessageOutcome,
    PromotionGrant,
    PromotionQuota,
    build_pair_key,
    promotion_quota_key,
    utcnow,
)


class InMemoryFunnelStore(FunnelStore, PromotionStore):
    """
    Process-local store. Each chat has its own lock so chats never contend
    with each other; promotion quotas share one lock (one region/day document
    in the Firestore adapter).
    """

    def __init__(self) -> None:
        self._chats: Dict[str, ChatSession] = {}
        self._pairs: Dict[str, str] = {}
        self._processed: Dict[Tuple[str, str], MessageOutcome] = {}
        self._settlements: Dict[str, TokenSettlementRecord] = {}
        self._quotas: Dict[str, PromotionQuota] = {}
        self._grants: Dict[str, PromotionGrant] = {}
        self._chat_locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._promotion_lock = threading.Lock()

    def _lock_for(self, chat_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._chat_locks.get(chat_id)
            if lock is None:
                lock = threading.Lock()
                self._chat_locks[chat_id] = lock
            return lock

    # ------------------------------------------------------------------
    # Chats
    # ------------------------------------------------------------------

    def get_chat(self, chat_id: str) -> ChatSession | None:
        return self._chats.get(chat_id)

    def create_chat(self, session: ChatSession) -> Tuple[ChatSession, bool]:
        pair_key = session.pair_key
        with self._lock_for("pair:" + pair_key), self._lock_for(session.chat_id):
            existing = self._chats.get(session.chat_id)
            if existing is not None:
                return existing, False
            paired_id = self._pairs.get(pair_key)
            if paired_id is not None:
                return self._chats[paired_id], False
            self._chats[session.chat_id] = session
            self._pairs[pair_key] = session.chat_id
            return session, True

    def find_chat_for_pair(self, participant_a: str, participant_b: str) -> ChatSession | None:
        chat_id = self._pairs.get(build_pair_key(participant_a, participant_b))
        return self._chats.get(chat_id) if chat_id else None

    def admit_message(
        self,
        *,
        chat_id: str,
        idempotency_key: str,
        decide: AdmissionFn,
    ) -> Admission:
        with self._lock_for(chat_id):
            processed = self._processed.get((chat_id, idempotency_key))
            if processed is not None:
                return Admission(
                    kind=AdmissionKind.DUPLICATE,
                    session=self._chats.get(chat_id),
                    outcome=replace(processed, replayed=True),
                )
            session = self._chats.get(chat_id)
            if session is None:
                raise ChatNotFoundError(f"Chat {chat_id} not found")

            admission = decide(session)
            if admission.changed:
                self._chats[chat_id] = admission.session
            if admission.outcome is not None and admission.outcome.allowed:
                self._processed[(chat_id, idempotency_key)] = admission.outcome
            return admission

    def commit_message(
        self,
        *,
        chat_id: str,
        idempotency_key: str,
        outcome: MessageOutcome,
        settlement: TokenSettlementRecord | None = None,
        now: datetime | None = None,
    ) -> MessageOutcome:
        with self._lock_for(chat_id):
            processed = self._processed.get((chat_id, idempotency_key))
            if processed is not None:
                return replace(processed, replayed=True)
            session = self._chats.get(chat_id)
            if session is None:
                raise ChatNotFoundError(f"Chat {chat_id} not found")
            if settlement is not None:
                if settlement.record_id in self._settlements:
                    raise IdempotencyError("Settlement record already exists.")
                self._settlements[settlement.record_id] = settlement
            self._chats[chat_id] = session.with_message(now or utcnow())
            self._processed[(chat_id, idempotency_key)] = outcome
            return outcome

    def close_chat(self, *, chat_id: str, reason: str, now: datetime) -> Tuple[ChatSession, bool]:
        with self._lock_for(chat_id):
            session = self._chats.get(chat_id)
            if session is None:
                raise ChatNotFoundError(f"Chat {chat_id} not found")
            if session.is_closed:
                return session, False
            closed = session.with_closed(reason, now)
            self._chats[chat_id] = closed
            return closed, True

    def list_idle_chats(self, *, idle_since: datetime, limit: int) -> List[ChatSession]:
        idle = [s for s in self._chats.values() if not s.is_closed and s.updated_at < idle_since]
        return sorted(idle, key=lambda s: s.updated_at)[:limit]

    def get_processed_message(self, chat_id: str, idempotency_key: str) -> MessageOutcome | None:
        return self._processed.get((chat_id, idempotency_key))

    def list_settlements(self, chat_id: str) -> List[TokenSettlementRecord]:
        records = [r for r in self._settlements.values() if r.chat_id == chat_id]
        return sorted(records, key=lambda r: r.timestamp)

    # ------------------------------------------------------------------
    # Promotions
    # ------------------------------------------------------------------

    def get_promotion_quota(self, region: str, day: date) -> PromotionQuota:
        return self._quotas.get(promotion_quota_key(region, day)) or PromotionQuota(region=region, date=day)

    def get_promotion_grant(self, chat_id: str) -> PromotionGrant | None:
        return self._grants.get(chat_id)

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
        with self._promotion_lock:
            if chat_id is not None and chat_id in self._grants:
                return True
            quota = self.get_promotion_quota(region, day)
            if quota.granted_today >= max_per_day or quota.active_concurrent >= max_concurrent:
                return False
            self._quotas[quota.key] = replace(
                quota,
                granted_today=quota.granted_today + 1,
                active_concurrent=quota.active_concurrent + 1,
            )
            if chat_id is not None:
                self._grants[chat_id] = PromotionGrant(
                    chat_id=chat_id,
                    earner_id=earner_id,
                    region=region,
                    date=day,
                    granted_at=now or utcnow(),
                )
            return True

    def release_promotion(self, chat_id: str) -> bool:
        with self._promotion_lock:
            grant = self._grants.get(chat_id)
            if grant is None or grant.released:
                return False
            quota = self.get_promotion_quota(grant.region, grant.date)
            self._quotas[quota.key] = replace(
                quota,
                active_concurrent=max(0, quota.active_concurrent - 1),
            )
            self._grants[chat_id] = replace(grant, released=True)
            return True


class InMemoryWallet(WalletLedger):
    """Prepaid token balances keyed by user, idempotent per key."""

    def __init__(self, balances: Dict[str, int] | None = None) -> None:
        self._balances: Dict[str, int] = dict(balances or {})
        self._debits: Dict[str, DebitResult] = {}
        self._credits: Dict[str, CreditResult] = {}
        self._lock = threading.Lock()

    def balance(self, user_id: str) -> int:
        return self._balances.get(user_id, 0)

    def deposit(self, user_id: str, amount: int) -> int:
        with self._lock:
            self._balances[user_id] = self.balance(user_id) + amount
            return self._balances[user_id]

    def debit(self, payer_id: str, amount: int, *, idempotency_key: str) -> DebitResult:
        with self._lock:
            existing = self._debits.get(idempotency_key)
            if existing is not None:
                return existing
            current = self.balance(payer_id)
            if current < amount:
                raise InsufficientFundsError(f"{payer_id} has {current}, needs {amount}")
            result = DebitResult(success=True, new_balance=current - amount)
            self._balances[payer_id] = result.new_balance
            self._debits[idempotency_key] = result
            return result

    def credit(self, earner_id: str, amount: int, *, idempotency_key: str) -> CreditResult:
        with self._lock:
            existing = self._credits.get(idempotency_key)
            if existing is not None:
                return existing
            self._balances[earner_id] = self.balance(earner_id) + amount
            result = CreditResult(success=True)
            self._credits[idempotency_key] = result
            return result
