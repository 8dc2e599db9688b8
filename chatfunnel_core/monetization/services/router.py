# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Chatfunnel Engine.
#
# Chatfunnel Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Token Router.

Single source of truth for how gross tokens of a paid message are split
between the earning participant and the platform:

- STANDARD:      earner = round_half_up(gross * 0.65), platform = remainder
- PLATFORM_ONLY: earner = 0, platform = gross
- PROMOTIONAL_FREE: never billed; routing is a programming error
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from chatfunnel_core.monetization.ledger import (
    TokenSettlementRecord,
    build_wallet_idempotency_key,
    new_record_id,
)
from chatfunnel_core.monetization.services.base import (
    InvalidBillingModeForRoutingError,
    WalletLedger,
)
from chatfunnel_core.monetization.types import BillingMode, TokenSplit, utcnow

if TYPE_CHECKING:
    from chatfunnel_core.monetization.config import FunnelConfig

logger = logging.getLogger(__name__)

DEFAULT_EARNER_SHARE_RATIO = Decimal("0.65")


def split_tokens(
    gross_tokens: int,
    billing_mode: BillingMode,
    *,
    earner_share_ratio: Decimal = DEFAULT_EARNER_SHARE_RATIO,
) -> TokenSplit:
    if gross_tokens < 0:
        raise ValueError("gross_tokens must be non-negative")
    if billing_mode == BillingMode.STANDARD:
        earner = int((Decimal(gross_tokens) * earner_share_ratio).to_integral_value(rounding=ROUND_HALF_UP))
        return TokenSplit(earner_share=earner, platform_share=gross_tokens - earner)
    if billing_mode == BillingMode.PLATFORM_ONLY:
        return TokenSplit(earner_share=0, platform_share=gross_tokens)
    raise InvalidBillingModeForRoutingError(f"Cannot route tokens for billing mode {billing_mode.value}")


class TokenRouter:
    """Splits gross tokens, credits the earner and produces the settlement record."""

    def __init__(self, wallet: WalletLedger, cfg: "FunnelConfig"):
        self.wallet = wallet
        self.cfg = cfg

    def route_tokens(
        self,
        chat_id: str,
        gross_tokens: int,
        billing_mode: BillingMode,
        earning_participant_id: str | None,
    ) -> TokenSplit:
        """Compute the split. Moves no tokens, so it is safe to call before debiting."""
        split = split_tokens(
            gross_tokens,
            billing_mode,
            earner_share_ratio=self.cfg.earner_share_ratio,
        )
        if split.earner_share > 0 and not earning_participant_id:
            raise InvalidBillingModeForRoutingError(
                f"Chat {chat_id} has an earner share but no earning participant"
            )
        return split

    def settle(
        self,
        *,
        chat_id: str,
        message_key: str,
        gross_tokens: int,
        billing_mode: BillingMode,
        earning_participant_id: str | None,
        payer_id: str | None,
        now: datetime | None = None,
        record_id: str | None = None,
    ) -> TokenSettlementRecord:
        """
        Credit the earner's share (skipped when zero) and return the
        immutable settlement record for the caller to persist.
        `record_id` also scopes the wallet credit key to this attempt.
        """
        record_id = record_id or new_record_id()
        split = self.route_tokens(chat_id, gross_tokens, billing_mode, earning_participant_id)

        if split.earner_share > 0:
            self.wallet.credit(
                earning_participant_id,
                split.earner_share,
                idempotency_key=build_wallet_idempotency_key(
                    chat_id, message_key, "credit", attempt=record_id
                ),
            )

        record = TokenSettlementRecord(
            record_id=record_id,
            chat_id=chat_id,
            idempotency_key=message_key,
            payer_id=payer_id,
            earner_id=earning_participant_id,
            gross_tokens=gross_tokens,
            earner_share_tokens=split.earner_share,
            platform_share_tokens=split.platform_share,
            billing_mode=billing_mode,
            timestamp=now or utcnow(),
        )
        logger.info(
            "[Router] chat=%s gross=%d earner=%d platform=%d mode=%s",
            chat_id,
            gross_tokens,
            split.earner_share,
            split.platform_share,
            billing_mode.value,
        )
        return record
