# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Chatfunnel Engine.
#
# Chatfunnel Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional
import hashlib
import uuid

from chatfunnel_core.monetization.types import BillingMode, TokenSplit, coerce_datetime, utcnow


@dataclass(frozen=True, slots=True)
class TokenSettlementRecord:
    """One billed message. Immutable once written; feeds the wallet ledger."""
    record_id: str
    chat_id: str
    idempotency_key: str
    payer_id: Optional[str]
    earner_id: Optional[str]
    gross_tokens: int
    earner_share_tokens: int
    platform_share_tokens: int
    billing_mode: BillingMode
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def split(self) -> TokenSplit:
        return TokenSplit(
            earner_share=self.earner_share_tokens,
            platform_share=self.platform_share_tokens,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "chat_id": self.chat_id,
            "idempotency_key": self.idempotency_key,
            "payer_id": self.payer_id,
            "earner_id": self.earner_id,
            "gross_tokens": self.gross_tokens,
            "earner_share_tokens": self.earner_share_tokens,
            "platform_share_tokens": self.platform_share_tokens,
            "billing_mode": self.billing_mode.value,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenSettlementRecord":
        return cls(
            record_id=data["record_id"],
            chat_id=data["chat_id"],
            idempotency_key=data.get("idempotency_key", ""),
            payer_id=data.get("payer_id"),
            earner_id=data.get("earner_id"),
            gross_tokens=int(data.get("gross_tokens", 0)),
            earner_share_tokens=int(data.get("earner_share_tokens", 0)),
            platform_share_tokens=int(data.get("platform_share_tokens", 0)),
            billing_mode=BillingMode(data.get("billing_mode", BillingMode.STANDARD.value)),
            timestamp=coerce_datetime(data.get("timestamp")) or utcnow(),
        )


def new_record_id() -> str:
    return uuid.uuid4().hex


def build_idempotency_key(*parts: str) -> str:
    cleaned = [p.strip() for p in parts if p and p.strip()]
    return ":".join(cleaned)


def build_wallet_idempotency_key(
    chat_id: str,
    message_key: str,
    operation: str,
    attempt: Optional[str] = None,
) -> str:
    """
    Key handed to the wallet ledger.

    `attempt` is the settlement record id of one paid-path run, so a run that
    was aborted and compensated never shares keys with the next run of the
    same message.
    """
    return build_idempotency_key("chat", chat_id, "msg", message_key, attempt or "", operation)


def build_message_doc_id(chat_id: str, message_key: str) -> str:
    """
    Document id for a processed message.
    Client keys may contain characters Firestore rejects in ids, so hash them.
    """
    raw = f"{chat_id}:{message_key}:processed:v1"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
