# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Chatfunnel Engine.
#
# Chatfunnel Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

from datetime import date
from unittest.mock import MagicMock

import pytest

from chatfunnel_core.monetization.adapters import firestore as firestore_adapter
from chatfunnel_core.monetization.adapters.firestore import FirestoreFunnelStore
from chatfunnel_core.monetization.ledger import TokenSettlementRecord, build_message_doc_id
from chatfunnel_core.monetization.services.base import Admission, AdmissionKind, ChatNotFoundError
from chatfunnel_core.monetization.types import (
    REASON_AWAITING_OTHER_PARTY,
    BillingMode,
    ChatSession,
    ChatState,
    MessageOutcome,
    PromotionGrant,
    build_pair_key,
)
from tests.fixtures.funnel_fixtures import FIXED_NOW

DAY = date(2026, 1, 15)


def _snapshot(data=None):
    snap = MagicMock()
    snap.exists = data is not None
    snap.to_dict.return_value = data
    return snap


@pytest.fixture
def collections():
    return {}


@pytest.fixture
def transaction():
    return MagicMock(name="transaction")


@pytest.fixture
def store(collections, transaction, monkeypatch):
    # Run the transactional bodies directly against the mock transaction.
    monkeypatch.setattr(firestore_adapter.firestore, "transactional", lambda fn: fn)
    db = MagicMock()
    db.collection.side_effect = lambda name: collections.setdefault(name, MagicMock(name=name))
    db.transaction.return_value = transaction
    return FirestoreFunnelStore(db)


def _documents(collections, name, existing=None):
    """Give each document id its own ref whose get() returns the stored data."""
    existing = existing or {}
    refs = {}

    def _ref(doc_id):
        if doc_id not in refs:
            ref = MagicMock(name=f"{name}/{doc_id}")
            ref.get.return_value = _snapshot(existing.get(doc_id))
            refs[doc_id] = ref
        return refs[doc_id]

    collections[name].document.side_effect = _ref
    return refs


def _session(chat_id="c1", a="payer", b="bob", **overrides):
    data = dict(
        chat_id=chat_id,
        participant_a=a,
        participant_b=b,
        earning_participant_id=b,
        paying_participant_id=a,
        billing_mode=BillingMode.STANDARD,
        free_quota_per_participant={a: 8, b: 8},
        free_messages_used={a: 0, b: 0},
        state=ChatState.FREE,
        created_at=FIXED_NOW,
        updated_at=FIXED_NOW,
    )
    data.update(overrides)
    return ChatSession(**data)


def test_missing_chat_returns_none(store, collections):
    collections["chat_sessions"].document.return_value.get.return_value = _snapshot()
    assert store.get_chat("c1") is None
    collections["chat_sessions"].document.assert_called_with("c1")


def test_chat_loaded_from_document(store, collections):
    collections["chat_sessions"].document.return_value.get.return_value = _snapshot(
        {
            "chat_id": "c1",
            "participant_a": "a",
            "participant_b": "b",
            "billing_mode": "PLATFORM_ONLY",
            "free_quota_per_participant": {"a": 10, "b": 10},
            "free_messages_used": {"a": 10, "b": 10},
            "state": "PAID",
        }
    )
    session = store.get_chat("c1")
    assert session.state.value == "PAID"
    assert session.jointly_exhausted()


def test_processed_message_lookup(store, collections):
    outcome = MessageOutcome(allowed=True, billed=True, gross_tokens=2, settlement_id="r1")
    collections["chat_processed_messages"].document.return_value.get.return_value = _snapshot(
        {"chat_id": "c1", "idempotency_key": "m1", "outcome": outcome.to_dict()}
    )
    assert store.get_processed_message("c1", "m1") == outcome


def test_promotion_quota_defaults_to_zero(store, collections):
    collections["promotion_quotas"].document.return_value.get.return_value = _snapshot()
    quota = store.get_promotion_quota("eu-west", date(2026, 1, 15))
    collections["promotion_quotas"].document.assert_called_with("eu-west:2026-01-15")
    assert quota.granted_today == 0
    assert quota.active_concurrent == 0


def test_list_settlements_sorted(store, collections):
    docs = []
    for record_id, ts in (("r2", "2026-01-15T12:05:00+00:00"), ("r1", "2026-01-15T12:00:00+00:00")):
        doc = MagicMock()
        doc.to_dict.return_value = {
            "record_id": record_id,
            "chat_id": "c1",
            "gross_tokens": 1,
            "earner_share_tokens": 1,
            "platform_share_tokens": 0,
            "billing_mode": "STANDARD",
            "timestamp": ts,
        }
        docs.append(doc)
    collections["token_settlements"].where.return_value.stream.return_value = docs

    records = store.list_settlements("c1")

    assert [r.record_id for r in records] == ["r1", "r2"]


class TestCreateChat:
    def test_new_pair_writes_chat_and_pair_documents(self, store, collections, transaction):
        chats = _documents(collections, "chat_sessions")
        pairs = _documents(collections, "chat_pairs")
        session = _session()

        stored, created = store.create_chat(session)

        assert created is True
        assert stored is session
        pair_key = build_pair_key("payer", "bob")
        written = {call.args[0]: call.args[1] for call in transaction.set.call_args_list}
        assert written[chats["c1"]]["chat_id"] == "c1"
        assert written[pairs[pair_key]]["chat_id"] == "c1"
        assert written[pairs[pair_key]]["participants"] == ["bob", "payer"]

    def test_second_chat_id_for_same_pair_returns_first_chat(self, store, collections, transaction):
        first = _session("c1")
        _documents(collections, "chat_sessions", {"c1": first.to_dict()})
        _documents(collections, "chat_pairs", {build_pair_key("bob", "payer"): {"chat_id": "c1"}})

        stored, created = store.create_chat(_session("c2", a="bob", b="payer"))

        assert created is False
        assert stored.chat_id == "c1"
        transaction.set.assert_not_called()


class TestAdmitMessage:
    def test_processed_key_short_circuits(self, store, collections, transaction):
        stored = MessageOutcome(allowed=True, free_remaining=3, state=ChatState.FREE)
        _documents(collections, "chat_sessions", {"c1": _session().to_dict()})
        _documents(
            collections,
            "chat_processed_messages",
            {build_message_doc_id("c1", "m1"): {"outcome": stored.to_dict()}},
        )
        decide = MagicMock()

        admission = store.admit_message(chat_id="c1", idempotency_key="m1", decide=decide)

        assert admission.kind == AdmissionKind.DUPLICATE
        assert admission.outcome.replayed is True
        assert admission.outcome.free_remaining == 3
        decide.assert_not_called()
        transaction.set.assert_not_called()

    def test_rejected_outcome_is_not_recorded(self, store, collections, transaction):
        session = _session()
        _documents(collections, "chat_sessions", {"c1": session.to_dict()})
        _documents(collections, "chat_processed_messages")
        rejected = Admission(
            kind=AdmissionKind.AWAITING_OTHER_PARTY,
            session=session,
            outcome=MessageOutcome(allowed=False, reason=REASON_AWAITING_OTHER_PARTY, state=ChatState.FREE),
        )

        admission = store.admit_message(chat_id="c1", idempotency_key="m1", decide=lambda s: rejected)

        assert admission is rejected
        transaction.set.assert_not_called()

    def test_accepted_outcome_writes_session_and_marker(self, store, collections, transaction):
        session = _session()
        chats = _documents(collections, "chat_sessions", {"c1": session.to_dict()})
        processed = _documents(collections, "chat_processed_messages")
        outcome = MessageOutcome(allowed=True, state=ChatState.FREE, free_remaining=7)

        store.admit_message(
            chat_id="c1",
            idempotency_key="m1",
            decide=lambda s: Admission(
                kind=AdmissionKind.FREE,
                session=s.with_free_message("payer", FIXED_NOW),
                changed=True,
                outcome=outcome,
            ),
        )

        written = {call.args[0]: call.args[1] for call in transaction.set.call_args_list}
        assert written[chats["c1"]]["free_messages_used"] == {"payer": 1, "bob": 0}
        assert written[chats["c1"]]["updated_at"] is firestore_adapter.firestore.SERVER_TIMESTAMP
        marker = written[processed[build_message_doc_id("c1", "m1")]]
        assert marker["outcome"] == outcome.to_dict()

    def test_missing_chat_raises(self, store, collections):
        _documents(collections, "chat_sessions")
        _documents(collections, "chat_processed_messages")

        with pytest.raises(ChatNotFoundError):
            store.admit_message(chat_id="c1", idempotency_key="m1", decide=MagicMock())


class TestCommitMessage:
    def _record(self):
        return TokenSettlementRecord(
            record_id="r1",
            chat_id="c1",
            idempotency_key="m1",
            payer_id="payer",
            earner_id="bob",
            gross_tokens=3,
            earner_share_tokens=2,
            platform_share_tokens=1,
            billing_mode=BillingMode.STANDARD,
            timestamp=FIXED_NOW,
        )

    def test_settlement_and_counter_written_together(self, store, collections, transaction):
        chats = _documents(collections, "chat_sessions", {"c1": _session(state=ChatState.PAID).to_dict()})
        _documents(collections, "chat_processed_messages")
        settlements = _documents(collections, "token_settlements")
        outcome = MessageOutcome(allowed=True, billed=True, gross_tokens=3, settlement_id="r1")

        result = store.commit_message(
            chat_id="c1",
            idempotency_key="m1",
            outcome=outcome,
            settlement=self._record(),
            now=FIXED_NOW,
        )

        assert result == outcome
        transaction.create.assert_called_once_with(settlements["r1"], self._record().to_dict())
        ref, update = transaction.update.call_args.args
        assert ref is chats["c1"]
        assert isinstance(update["message_count"], firestore_adapter.firestore.Increment)
        assert update["message_count"].value == 1
        assert update["updated_at"] == FIXED_NOW
        assert transaction.set.call_count == 1

    def test_already_committed_key_writes_nothing(self, store, collections, transaction):
        stored = MessageOutcome(allowed=True, billed=True, settlement_id="r0")
        _documents(collections, "chat_sessions", {"c1": _session().to_dict()})
        _documents(
            collections,
            "chat_processed_messages",
            {build_message_doc_id("c1", "m1"): {"outcome": stored.to_dict()}},
        )

        result = store.commit_message(
            chat_id="c1",
            idempotency_key="m1",
            outcome=MessageOutcome(allowed=True, billed=True, settlement_id="r1"),
            settlement=self._record(),
        )

        assert result.settlement_id == "r0"
        assert result.replayed is True
        transaction.create.assert_not_called()
        transaction.update.assert_not_called()
        transaction.set.assert_not_called()


class TestPromotionTransactions:
    def _grant_kwargs(self, **overrides):
        kwargs = dict(
            region="eu-west",
            day=DAY,
            max_per_day=100,
            max_concurrent=1000,
            earner_id="shy",
            chat_id="c1",
            now=FIXED_NOW,
        )
        kwargs.update(overrides)
        return kwargs

    def test_grant_increments_both_counters(self, store, collections, transaction):
        quotas = _documents(collections, "promotion_quotas", {"eu-west:2026-01-15": {"granted_today": 4}})
        grants = _documents(collections, "promotion_grants")

        assert store.try_grant_promotion(**self._grant_kwargs()) is True

        calls = {call.args[0]: call for call in transaction.set.call_args_list}
        quota_call = calls[quotas["eu-west:2026-01-15"]]
        assert quota_call.kwargs == {"merge": True}
        written = quota_call.args[1]
        for counter in ("granted_today", "active_concurrent"):
            assert isinstance(written[counter], firestore_adapter.firestore.Increment)
            assert written[counter].value == 1
        grant = PromotionGrant.from_dict(calls[grants["c1"]].args[1])
        assert (grant.chat_id, grant.earner_id, grant.region, grant.date) == ("c1", "shy", "eu-west", DAY)

    def test_daily_cap_writes_nothing(self, store, collections, transaction):
        _documents(collections, "promotion_quotas", {"eu-west:2026-01-15": {"granted_today": 100}})
        _documents(collections, "promotion_grants")

        assert store.try_grant_promotion(**self._grant_kwargs()) is False
        transaction.set.assert_not_called()

    def test_concurrent_cap_writes_nothing(self, store, collections, transaction):
        _documents(
            collections,
            "promotion_quotas",
            {"eu-west:2026-01-15": {"granted_today": 1, "active_concurrent": 2}},
        )
        _documents(collections, "promotion_grants")

        assert store.try_grant_promotion(**self._grant_kwargs(max_concurrent=2)) is False
        transaction.set.assert_not_called()

    def test_existing_grant_is_not_charged_again(self, store, collections, transaction):
        _documents(collections, "promotion_quotas", {"eu-west:2026-01-15": {"granted_today": 100}})
        existing = PromotionGrant(chat_id="c1", earner_id="shy", region="eu-west", date=DAY, granted_at=FIXED_NOW)
        _documents(collections, "promotion_grants", {"c1": existing.to_dict()})

        assert store.try_grant_promotion(**self._grant_kwargs()) is True
        transaction.set.assert_not_called()

    def test_release_decrements_once(self, store, collections, transaction):
        quotas = _documents(collections, "promotion_quotas")
        grant = PromotionGrant(chat_id="c1", earner_id="shy", region="eu-west", date=DAY, granted_at=FIXED_NOW)
        grants = _documents(collections, "promotion_grants", {"c1": grant.to_dict()})

        assert store.release_promotion("c1") is True

        calls = {call.args[0]: call for call in transaction.set.call_args_list}
        decrement = calls[quotas["eu-west:2026-01-15"]].args[1]["active_concurrent"]
        assert isinstance(decrement, firestore_adapter.firestore.Increment)
        assert decrement.value == -1
        assert calls[grants["c1"]].args[1]["released"] is True

    def test_release_of_released_grant_writes_nothing(self, store, collections, transaction):
        _documents(collections, "promotion_quotas")
        grant = PromotionGrant(
            chat_id="c1", earner_id="shy", region="eu-west", date=DAY, granted_at=FIXED_NOW, released=True
        )
        _documents(collections, "promotion_grants", {"c1": grant.to_dict()})

        assert store.release_promotion("c1") is False
        assert store.release_promotion("unknown") is False
        transaction.set.assert_not_called()


class TestCloseChat:
    def test_close_records_time_and_reason(self, store, collections, transaction):
        chats = _documents(collections, "chat_sessions", {"c1": _session(state=ChatState.PAID).to_dict()})

        session, closed_now = store.close_chat(chat_id="c1", reason="manual", now=FIXED_NOW)

        assert closed_now is True
        assert session.closed_at == FIXED_NOW
        assert session.state == ChatState.PAID
        transaction.update.assert_called_once_with(
            chats["c1"],
            {"closed_at": FIXED_NOW, "close_reason": "manual", "updated_at": FIXED_NOW},
        )

    def test_closed_chat_is_left_alone(self, store, collections, transaction):
        closed = _session().with_closed("expired", FIXED_NOW)
        _documents(collections, "chat_sessions", {"c1": closed.to_dict()})

        session, closed_now = store.close_chat(chat_id="c1", reason="manual", now=FIXED_NOW)

        assert closed_now is False
        assert session.close_reason == "expired"
        transaction.update.assert_not_called()

    def test_idle_query_filters_open_chats_by_activity(self, store, collections):
        chats = collections["chat_sessions"]
        query = chats.where.return_value.where.return_value.limit.return_value
        doc = MagicMock()
        doc.to_dict.return_value = _session().to_dict()
        query.stream.return_value = [doc]

        idle = store.list_idle_chats(idle_since=FIXED_NOW, limit=50)

        assert [s.chat_id for s in idle] == ["c1"]
        chats.where.assert_called_once_with("closed_at", "==", None)
        chats.where.return_value.where.assert_called_once_with("updated_at", "<", FIXED_NOW)
        chats.where.return_value.where.return_value.limit.assert_called_once_with(50)
