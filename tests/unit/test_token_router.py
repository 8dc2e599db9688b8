# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Chatfunnel Engine.
#
# Chatfunnel Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Unit tests for TokenRouter."""

from decimal import Decimal

import pytest

from chatfunnel_core.monetization.adapters.memory import InMemoryWallet
from chatfunnel_core.monetization.config import FunnelConfig
from chatfunnel_core.monetization.services.base import InvalidBillingModeForRoutingError
from chatfunnel_core.monetization.services.router import TokenRouter, split_tokens
from chatfunnel_core.monetization.types import BillingMode
from tests.fixtures.funnel_fixtures import FIXED_NOW


class RecordingWallet(InMemoryWallet):
    def __init__(self):
        super().__init__()
        self.credit_calls = []

    def credit(self, earner_id, amount, *, idempotency_key):
        self.credit_calls.append((earner_id, amount, idempotency_key))
        return super().credit(earner_id, amount, idempotency_key=idempotency_key)


class TestSplitTokens:
    @pytest.mark.parametrize(
        "gross,earner,platform",
        [
            (0, 0, 0),
            (1, 1, 0),
            (2, 1, 1),
            (3, 2, 1),
            (10, 7, 3),
            (100, 65, 35),
        ],
    )
    def test_standard_split_rounds_half_up(self, gross, earner, platform):
        split = split_tokens(gross, BillingMode.STANDARD)

        assert (split.earner_share, split.platform_share) == (earner, platform)
        assert split.total == gross

    def test_platform_only_keeps_everything(self):
        split = split_tokens(100, BillingMode.PLATFORM_ONLY)

        assert split.earner_share == 0
        assert split.platform_share == 100

    def test_promotional_chat_cannot_be_routed(self):
        with pytest.raises(InvalidBillingModeForRoutingError):
            split_tokens(5, BillingMode.PROMOTIONAL_FREE)

    def test_negative_gross_rejected(self):
        with pytest.raises(ValueError):
            split_tokens(-1, BillingMode.STANDARD)

    def test_custom_ratio(self):
        split = split_tokens(10, BillingMode.STANDARD, earner_share_ratio=Decimal("0.5"))

        assert (split.earner_share, split.platform_share) == (5, 5)


class TestTokenRouter:
    def test_settle_credits_earner_and_builds_record(self):
        wallet = RecordingWallet()
        router = TokenRouter(wallet, FunnelConfig())

        record = router.settle(
            chat_id="c1",
            message_key="m1",
            gross_tokens=100,
            billing_mode=BillingMode.STANDARD,
            earning_participant_id="earner",
            payer_id="payer",
            now=FIXED_NOW,
            record_id="r1",
        )

        assert wallet.credit_calls == [("earner", 65, "chat:c1:msg:m1:r1:credit")]
        assert record.record_id == "r1"
        assert wallet.balance("earner") == 65
        assert record.chat_id == "c1"
        assert record.idempotency_key == "m1"
        assert record.gross_tokens == 100
        assert record.earner_share_tokens == 65
        assert record.platform_share_tokens == 35
        assert record.timestamp == FIXED_NOW

    def test_zero_share_skips_credit(self):
        wallet = RecordingWallet()
        router = TokenRouter(wallet, FunnelConfig())

        record = router.settle(
            chat_id="c1",
            message_key="m1",
            gross_tokens=40,
            billing_mode=BillingMode.PLATFORM_ONLY,
            earning_participant_id="earner",
            payer_id="payer",
        )

        assert wallet.credit_calls == []
        assert record.platform_share_tokens == 40

    def test_route_requires_earner_for_earner_share(self):
        router = TokenRouter(InMemoryWallet(), FunnelConfig())

        with pytest.raises(InvalidBillingModeForRoutingError):
            router.route_tokens("c1", 10, BillingMode.STANDARD, None)

    def test_settlement_records_are_unique(self):
        router = TokenRouter(InMemoryWallet(), FunnelConfig())
        kwargs = dict(
            chat_id="c1",
            gross_tokens=1,
            billing_mode=BillingMode.STANDARD,
            earning_participant_id="earner",
            payer_id="payer",
        )

        first = router.settle(message_key="m1", **kwargs)
        second = router.settle(message_key="m2", **kwargs)

        assert first.record_id != second.record_id
