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
from decimal import Decimal

from chatfunnel_core.monetization.types import PopularityTier


@dataclass(frozen=True, slots=True)
class FreeWindowConfig:
    """Per-participant free-message allowances. Bump `version` when tuning."""

    version: str = "free_window_v1"
    royal_allowance: int = 6
    standard_allowance: int = 8
    low_popularity_allowance: int = 10
    # Earner resolved but their earn toggle is OFF (PLATFORM_ONLY billing)
    earn_off_allowance: int = 10
    # Neither participant can earn
    no_earner_allowance: int = 10

    def __post_init__(self):
        for name in (
            "royal_allowance",
            "standard_allowance",
            "low_popularity_allowance",
            "earn_off_allowance",
            "no_earner_allowance",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")

    def allowance_for_tier(self, tier: PopularityTier) -> int:
        if tier == PopularityTier.ROYAL:
            return self.royal_allowance
        if tier == PopularityTier.LOW_POPULARITY:
            return self.low_popularity_allowance
        return self.standard_allowance


@dataclass(frozen=True, slots=True)
class PromotionConfig:
    max_promo_per_day: int = 100
    max_concurrent_promo_per_region: int = 1000

    # Low-visibility signals (any one qualifies)
    max_swipe_right_rate: float = 0.05
    max_matches_per_day: float = 1.0
    max_active_chats_per_week: int = 2


@dataclass(frozen=True, slots=True)
class PricingConfig:
    words_per_token_standard: int = 11
    words_per_token_royal: int = 7
    min_tokens_per_message: int = 1


@dataclass(frozen=True, slots=True)
class FunnelConfig:
    """Configuration for the chat funnel."""

    # Firestore paths
    chat_collection: str = "chat_sessions"
    processed_collection: str = "chat_processed_messages"
    settlement_collection: str = "token_settlements"
    promotion_quota_collection: str = "promotion_quotas"
    promotion_grant_collection: str = "promotion_grants"
    pair_collection: str = "chat_pairs"

    # Earner share for STANDARD billing; platform keeps the remainder
    earner_share_ratio: Decimal = Decimal("0.65")

    # Wallet calls never block a message longer than this
    wallet_timeout_sec: float = 3.0

    # Transaction conflict retries
    transaction_max_attempts: int = 5
    transaction_backoff_sec: float = 0.05

    # "Running low" notification once remaining free messages hit this
    low_quota_threshold: int = 2

    # Inactivity expiry: a PAID chat idle this long, or any chat idle the longer limit
    paid_inactivity_hours: int = 48
    inactivity_hours: int = 72

    free_window: FreeWindowConfig = field(default_factory=FreeWindowConfig)
    promotion: PromotionConfig = field(default_factory=PromotionConfig)
    pricing: PricingConfig = field(default_factory=PricingConfig)
