# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Chatfunnel Engine.
#
# Chatfunnel Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Request/response models exchanged with the messaging backend."""

from typing import Optional

from pydantic import BaseModel, Field, model_validator

from chatfunnel_core.monetization.types import MessageOutcome


class MatchCreatedEvent(BaseModel):
    chat_id: str = Field(..., min_length=1, description="Identifier of the chat opened for the match")
    participant_a: str = Field(..., min_length=1)
    participant_b: str = Field(..., min_length=1)
    region: str = Field(..., min_length=1, description="Region used for promotion quotas")

    @model_validator(mode="after")
    def _distinct_participants(self) -> "MatchCreatedEvent":
        if self.participant_a == self.participant_b:
            raise ValueError("participant_a and participant_b must differ")
        return self


class ProcessMessageRequest(BaseModel):
    chat_id: str = Field(..., min_length=1)
    sender_id: str = Field(..., min_length=1)
    word_count: int = Field(0, ge=0, description="Billable words in the message")
    idempotency_key: str = Field(..., min_length=1, description="Stable per message across client resends")


class ProcessMessageResponse(BaseModel):
    allowed: bool
    billed: bool = False
    requires_deposit: bool = False
    reason: Optional[str] = None
    state: Optional[str] = None
    free_remaining: Optional[int] = None

    @classmethod
    def from_outcome(cls, outcome: MessageOutcome) -> "ProcessMessageResponse":
        return cls(
            allowed=outcome.allowed,
            billed=outcome.billed,
            requires_deposit=outcome.requires_deposit,
            reason=outcome.reason,
            state=outcome.state.value if outcome.state else None,
            free_remaining=outcome.free_remaining,
        )
