# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Chatfunnel Engine.
#
# Chatfunnel Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Funnel configuration loader."""

from __future__ import annotations

import json
import logging
import os
from decimal import Decimal
from pathlib import Path

from chatfunnel_core.monetization.config import (
    FreeWindowConfig,
    FunnelConfig,
    PricingConfig,
    PromotionConfig,
)

logger = logging.getLogger(__name__)


def load_funnel_config(config_path: str | Path | None = None) -> FunnelConfig:
    """
    Load funnel configuration from JSON with ENV overrides.

    Priority (highest to lowest):
    1. Environment variables (CHATFUNNEL_*)
    2. Provided config_path
    3. Default funnel JSON

    Args:
        config_path: Optional path to custom funnel config JSON

    Returns:
        FunnelConfig instance
    """
    if config_path:
        with open(config_path) as f:
            data = json.load(f)
    else:
        default_path = Path(__file__).parent / "default_funnel.json"
        if default_path.exists():
            with open(default_path) as f:
                data = json.load(f)
        else:
            data = {}

    window = data.get("free_window", {})
    promo = data.get("promotion", {})
    pricing = data.get("pricing", {})

    free_window = FreeWindowConfig(
        version=os.environ.get("CHATFUNNEL_FREE_WINDOW_VERSION", window.get("version", "free_window_v1")),
        royal_allowance=int(os.environ.get("CHATFUNNEL_ROYAL_ALLOWANCE", window.get("royal_allowance", 6))),
        standard_allowance=int(
            os.environ.get("CHATFUNNEL_STANDARD_ALLOWANCE", window.get("standard_allowance", 8))
        ),
        low_popularity_allowance=int(
            os.environ.get("CHATFUNNEL_LOW_POPULARITY_ALLOWANCE", window.get("low_popularity_allowance", 10))
        ),
        earn_off_allowance=int(
            os.environ.get("CHATFUNNEL_EARN_OFF_ALLOWANCE", window.get("earn_off_allowance", 10))
        ),
        no_earner_allowance=int(
            os.environ.get("CHATFUNNEL_NO_EARNER_ALLOWANCE", window.get("no_earner_allowance", 10))
        ),
    )

    promotion = PromotionConfig(
        max_promo_per_day=int(os.environ.get("CHATFUNNEL_MAX_PROMO_PER_DAY", promo.get("max_promo_per_day", 100))),
        max_concurrent_promo_per_region=int(
            os.environ.get(
                "CHATFUNNEL_MAX_CONCURRENT_PROMO_PER_REGION",
                promo.get("max_concurrent_promo_per_region", 1000),
            )
        ),
        max_swipe_right_rate=float(promo.get("max_swipe_right_rate", 0.05)),
        max_matches_per_day=float(promo.get("max_matches_per_day", 1.0)),
        max_active_chats_per_week=int(promo.get("max_active_chats_per_week", 2)),
    )

    pricing_cfg = PricingConfig(
        words_per_token_standard=int(pricing.get("words_per_token_standard", 11)),
        words_per_token_royal=int(pricing.get("words_per_token_royal", 7)),
        min_tokens_per_message=int(pricing.get("min_tokens_per_message", 1)),
    )

    earner_share_ratio = Decimal(
        str(os.environ.get("CHATFUNNEL_EARNER_SHARE_RATIO", data.get("earner_share_ratio", "0.65")))
    )
    if not Decimal("0") <= earner_share_ratio <= Decimal("1"):
        raise ValueError(f"earner_share_ratio out of range: {earner_share_ratio}")

    wallet_timeout_sec = float(
        os.environ.get("CHATFUNNEL_WALLET_TIMEOUT_SEC", data.get("wallet_timeout_sec", 3.0))
    )

    paid_inactivity_hours = int(
        os.environ.get("CHATFUNNEL_PAID_INACTIVITY_HOURS", data.get("paid_inactivity_hours", 48))
    )
    inactivity_hours = int(os.environ.get("CHATFUNNEL_INACTIVITY_HOURS", data.get("inactivity_hours", 72)))
    if not 0 < paid_inactivity_hours <= inactivity_hours:
        raise ValueError(
            f"inactivity limits out of order: paid={paid_inactivity_hours}h total={inactivity_hours}h"
        )

    config = FunnelConfig(
        earner_share_ratio=earner_share_ratio,
        wallet_timeout_sec=wallet_timeout_sec,
        transaction_max_attempts=int(data.get("transaction_max_attempts", 5)),
        transaction_backoff_sec=float(data.get("transaction_backoff_sec", 0.05)),
        low_quota_threshold=int(data.get("low_quota_threshold", 2)),
        paid_inactivity_hours=paid_inactivity_hours,
        inactivity_hours=inactivity_hours,
        free_window=free_window,
        promotion=promotion,
        pricing=pricing_cfg,
    )
    logger.debug(
        "[Config] Loaded funnel config: free_window=%s earner_share=%s wallet_timeout=%.1fs",
        free_window.version,
        earner_share_ratio,
        wallet_timeout_sec,
    )
    return config
