# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Chatfunnel Engine.
#
# Chatfunnel Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Unit tests for request/response models."""

import pytest
from pydantic import ValidationError

from chatfunnel_core.monetization.schema import (
    MatchCreatedEvent,
    ProcessMessageRequest,
    ProcessMessageResponse,
)
from chatfunnel_core.monetization.types import (
    REASON_INSUFFICIENT_FUNDS,
    ChatState,
    MessageOutcome,
    PopularityTier,
)
from tests.fixtures.funnel_fixtures import earner, payer


class TestMatchCreatedEvent:
    def test_valid_event(self):
        event = MatchCreatedEvent(chat_id="c1", participant_a="a", participant_b="b", region="eu-west")

        assert event.region == "eu-west"

    def test_same_participant_rejected(self):
        with pytest.raises(ValidationError):
            MatchCreatedEvent(chat_id="c1", participant_a="a", participant_b="a", region="eu-west")


class TestProcessMessageRequest:
    def test_negative_word_count_rejected(self):
        with pytest.raises(ValidationError):
            ProcessMessageRequest(chat_id="c1", sender_id="a", word_count=-1, idempotency_key="k")

    def test_empty_idempotency_key_rejected(self):
        with pytest.raises(ValidationError):
            ProcessMessageRequest(chat_id="c1", sender_id="a", word_count=3, idempotency_key="")


def test_response_from_outcome():
    outcome = MessageOutcome(
        allowed=False,
        requires_deposit=True,
        reason=REASON_INSUFFICIENT_FUNDS,
        state=ChatState.PAID,
        gross_tokens=2,
    )

    response = ProcessMessageResponse.from_outcome(outcome)

    assert response.allowed is False
    assert response.requires_deposit is True
    assert response.reason == "insufficient_funds"
    assert response.state == "PAID"


def test_facade_handles_typed_requests(facade, profiles, wallet):
    profiles.add(payer("a"))
    profiles.add(earner("b", PopularityTier.STANDARD))
    session = facade.handle_match_created(
        MatchCreatedEvent(chat_id="c1", participant_a="a", participant_b="b", region="eu-west")
    )

    response = facade.handle_message(
        ProcessMessageRequest(chat_id="c1", sender_id="a", word_count=4, idempotency_key="m1")
    )

    assert session.chat_id == "c1"
    assert response.allowed is True
    assert response.billed is False
    assert response.free_remaining == 7
