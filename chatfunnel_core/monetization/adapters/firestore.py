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
from dataclasses import replace
from datetime import date, datetime
from typing import Any, List, Tuple

from firebase_admin import firestore
from google.api_core import exceptions as gcp_exceptions

from chatfunnel_core.monetization.config import FunnelConfig
from chatfunnel_core.monetization.ledger import TokenSettlementRecord, build_message_doc_id
from chatfunnel_core.monetization.services.base import (
    Admission,
    AdmissionFn,
    AdmissionKind,
    ChatNotFoundError,
    FunnelStore,
    PromotionStore,
    TransactionConflictError,
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

logger = logging.getLogger(__name__)

_CONFLICT_ERRORS = (gcp_exceptions.Aborted, gcp_exceptions.Conflict)


class FirestoreFunnelStore(FunnelStore, PromotionStore):
    def __init__(self, db: firestore.Client, *, config: FunnelConfig | None = None) -> None:
        self._db = db
        self._config = config or FunnelConfig()
        self._chats = self._db.collection(self._config.chat_collection)
        self._processed = self._db.collection(self._config.processed_collection)
        self._settlements = self._db.collection(self._config.settlement_collection)
        self._quotas = self._db.collection(self._config.promotion_quota_collection)
        self._grants = self._db.collection(self._config.promotion_grant_collection)
        self._pairs = self._db.collection(self._config.pair_collection)

    def _transaction(self):
        return self._db.transaction(max_attempts=self._config.transaction_max_attempts)

    def _run(self, label: str, fn, transaction):
        try:
            return fn(transaction)
        except _CONFLICT_ERRORS as e:
            logger.warning("[Firestore] %s transaction conflict: %s", label, e)
            raise TransactionConflictError(str(e)) from e

    # ------------------------------------------------------------------
    # Chats
    # ------------------------------------------------------------------

    def get_chat(self, chat_id: str) -> ChatSession | None:
        snapshot = self._chats.document(chat_id).get()
        if not snapshot.exists:
            return None
        return ChatSession.from_dict(snapshot.to_dict() or {})

    def create_chat(self, session: ChatSession) -> Tuple[ChatSession, bool]:
        chat_ref = self._chats.document(session.chat_id)
        pair_ref = self._pairs.document(session.pair_key)

        @firestore.transactional
        def _create(transaction):  # type: ignore[no-untyped-def]
            snapshot = chat_ref.get(transaction=transaction)
            pair_snapshot = pair_ref.get(transaction=transaction)
            if snapshot.exists:
                return ChatSession.from_dict(snapshot.to_dict() or {}), False
            if pair_snapshot.exists:
                paired_id = (pair_snapshot.to_dict() or {}).get("chat_id")
                paired = self._chats.document(paired_id).get(transaction=transaction) if paired_id else None
                if paired is not None and paired.exists:
                    return ChatSession.from_dict(paired.to_dict() or {}), False
            transaction.set(chat_ref, self._session_to_dict(session))
            transaction.set(
                pair_ref,
                {
                    "chat_id": session.chat_id,
                    "participants": sorted(session.participants),
                    "created_at": firestore.SERVER_TIMESTAMP,
                },
            )
            return session, True

        return self._run("create_chat", _create, self._transaction())

    def find_chat_for_pair(self, participant_a: str, participant_b: str) -> ChatSession | None:
        snapshot = self._pairs.document(build_pair_key(participant_a, participant_b)).get()
        if not snapshot.exists:
            return None
        chat_id = (snapshot.to_dict() or {}).get("chat_id")
        return self.get_chat(chat_id) if chat_id else None

    def admit_message(
        self,
        *,
        chat_id: str,
        idempotency_key: str,
        decide: AdmissionFn,
    ) -> Admission:
        chat_ref = self._chats.document(chat_id)
        processed_ref = self._processed.document(build_message_doc_id(chat_id, idempotency_key))

        @firestore.transactional
        def _admit(transaction):  # type: ignore[no-untyped-def]
            processed_snapshot = processed_ref.get(transaction=transaction)
            chat_snapshot = chat_ref.get(transaction=transaction)

            if processed_snapshot.exists:
                outcome = self._outcome_from_snapshot(processed_snapshot)
                session = ChatSession.from_dict(chat_snapshot.to_dict() or {}) if chat_snapshot.exists else None
                return Admission(kind=AdmissionKind.DUPLICATE, session=session, outcome=outcome)

            if not chat_snapshot.exists:
                raise ChatNotFoundError(f"Chat {chat_id} not found")

            session = ChatSession.from_dict(chat_snapshot.to_dict() or {})
            admission = decide(session)
            if admission.changed:
                transaction.set(chat_ref, self._session_to_dict(admission.session))
            if admission.outcome is not None and admission.outcome.allowed:
                transaction.set(
                    processed_ref,
                    self._processed_to_dict(chat_id, idempotency_key, admission.outcome),
                )
            return admission

        return self._run("admit_message", _admit, self._transaction())

    def commit_message(
        self,
        *,
        chat_id: str,
        idempotency_key: str,
        outcome: MessageOutcome,
        settlement: TokenSettlementRecord | None = None,
        now: datetime | None = None,
    ) -> MessageOutcome:
        chat_ref = self._chats.document(chat_id)
        processed_ref = self._processed.document(build_message_doc_id(chat_id, idempotency_key))

        @firestore.transactional
        def _commit(transaction):  # type: ignore[no-untyped-def]
            processed_snapshot = processed_ref.get(transaction=transaction)
            chat_snapshot = chat_ref.get(transaction=transaction)
            if processed_snapshot.exists:
                return self._outcome_from_snapshot(processed_snapshot)
            if not chat_snapshot.exists:
                raise ChatNotFoundError(f"Chat {chat_id} not found")

            if settlement is not None:
                settlement_ref = self._settlements.document(settlement.record_id)
                transaction.create(settlement_ref, settlement.to_dict())
            transaction.update(
                chat_ref,
                {
                    "message_count": firestore.Increment(1),
                    "updated_at": now or firestore.SERVER_TIMESTAMP,
                },
            )
            transaction.set(processed_ref, self._processed_to_dict(chat_id, idempotency_key, outcome))
            return outcome

        return self._run("commit_message", _commit, self._transaction())

    def close_chat(self, *, chat_id: str, reason: str, now: datetime) -> Tuple[ChatSession, bool]:
        chat_ref = self._chats.document(chat_id)

        @firestore.transactional
        def _close(transaction):  # type: ignore[no-untyped-def]
            snapshot = chat_ref.get(transaction=transaction)
            if not snapshot.exists:
                raise ChatNotFoundError(f"Chat {chat_id} not found")
            session = ChatSession.from_dict(snapshot.to_dict() or {})
            if session.is_closed:
                return session, False
            closed = session.with_closed(reason, now)
            transaction.update(
                chat_ref,
                {"closed_at": now, "close_reason": reason, "updated_at": now},
            )
            return closed, True

        return self._run("close_chat", _close, self._transaction())

    def list_idle_chats(self, *, idle_since: datetime, limit: int) -> List[ChatSession]:
        # Needs a composite index on (closed_at, updated_at).
        query = (
            self._chats.where("closed_at", "==", None)
            .where("updated_at", "<", idle_since)
            .limit(limit)
        )
        return [ChatSession.from_dict(doc.to_dict() or {}) for doc in query.stream()]

    def get_processed_message(self, chat_id: str, idempotency_key: str) -> MessageOutcome | None:
        snapshot = self._processed.document(build_message_doc_id(chat_id, idempotency_key)).get()
        if not snapshot.exists:
            return None
        return MessageOutcome.from_dict((snapshot.to_dict() or {}).get("outcome") or {})

    def list_settlements(self, chat_id: str) -> List[TokenSettlementRecord]:
        query = self._settlements.where("chat_id", "==", chat_id)
        records = [TokenSettlementRecord.from_dict(doc.to_dict() or {}) for doc in query.stream()]
        return sorted(records, key=lambda r: r.timestamp)

    # ------------------------------------------------------------------
    # Promotions
    # ------------------------------------------------------------------

    def get_promotion_quota(self, region: str, day: date) -> PromotionQuota:
        snapshot = self._quotas.document(promotion_quota_key(region, day)).get()
        return self._quota_from_snapshot(snapshot, region, day)

    def get_promotion_grant(self, chat_id: str) -> PromotionGrant | None:
        snapshot = self._grants.document(chat_id).get()
        if not snapshot.exists:
            return None
        return PromotionGrant.from_dict(snapshot.to_dict() or {})

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
        quota_ref = self._quotas.document(promotion_quota_key(region, day))
        grant_ref = self._grants.document(chat_id) if chat_id is not None else None

        @firestore.transactional
        def _grant(transaction):  # type: ignore[no-untyped-def]
            if grant_ref is not None:
                grant_snapshot = grant_ref.get(transaction=transaction)
                if grant_snapshot.exists:
                    return True
            quota = self._quota_from_snapshot(quota_ref.get(transaction=transaction), region, day)
            if quota.granted_today >= max_per_day or quota.active_concurrent >= max_concurrent:
                return False

            transaction.set(
                quota_ref,
                {
                    "region": region,
                    "date": day.isoformat(),
                    "granted_today": firestore.Increment(1),
                    "active_concurrent": firestore.Increment(1),
                    "updated_at": firestore.SERVER_TIMESTAMP,
                },
                merge=True,
            )
            if grant_ref is not None:
                grant = PromotionGrant(
                    chat_id=chat_id,
                    earner_id=earner_id,
                    region=region,
                    date=day,
                    granted_at=now or utcnow(),
                )
                transaction.set(grant_ref, grant.to_dict())
            return True

        return self._run("try_grant_promotion", _grant, self._transaction())

    def release_promotion(self, chat_id: str) -> bool:
        grant_ref = self._grants.document(chat_id)

        @firestore.transactional
        def _release(transaction):  # type: ignore[no-untyped-def]
            snapshot = grant_ref.get(transaction=transaction)
            if not snapshot.exists:
                return False
            grant = PromotionGrant.from_dict(snapshot.to_dict() or {})
            if grant.released:
                return False
            quota_ref = self._quotas.document(promotion_quota_key(grant.region, grant.date))
            transaction.set(
                quota_ref,
                {
                    "active_concurrent": firestore.Increment(-1),
                    "updated_at": firestore.SERVER_TIMESTAMP,
                },
                merge=True,
            )
            transaction.set(grant_ref, replace(grant, released=True).to_dict())
            return True

        return self._run("release_promotion", _release, self._transaction())

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def _session_to_dict(self, session: ChatSession) -> dict[str, Any]:
        data = session.to_dict()
        data["updated_at"] = firestore.SERVER_TIMESTAMP
        return data

    def _processed_to_dict(self, chat_id: str, idempotency_key: str, outcome: MessageOutcome) -> dict[str, Any]:
        return {
            "chat_id": chat_id,
            "idempotency_key": idempotency_key,
            "outcome": outcome.to_dict(),
            "processed_at": firestore.SERVER_TIMESTAMP,
        }

    def _outcome_from_snapshot(self, snapshot) -> MessageOutcome:
        data = snapshot.to_dict() or {}
        return replace(MessageOutcome.from_dict(data.get("outcome") or {}), replayed=True)

    def _quota_from_snapshot(self, snapshot, region: str, day: date) -> PromotionQuota:
        if not snapshot.exists:
            return PromotionQuota(region=region, date=day)
        data = snapshot.to_dict() or {}
        return PromotionQuota(
            region=region,
            date=day,
            granted_today=int(data.get("granted_today", 0)),
            active_concurrent=int(data.get("active_concurrent", 0)),
        )
