# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Chatfunnel Engine.
#
# Chatfunnel Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

from __future__ import annotations

from chatfunnel_core.monetization.config import FreeWindowConfig
from chatfunnel_core.monetization.types import (
    UNLIMITED_QUOTA,
    BillingMode,
    FreeWindow,
    PopularityTier,
    ResolvedRoles,
)


def compute_free_window(
    roles: ResolvedRoles,
    promotion_eligible: bool,
    config: FreeWindowConfig | None = None,
) -> FreeWindow:
    """
    Free-message allowance (per participant) and billing mode for a new chat.

    Both participants always get the same allowance, so the total free
    exchange is twice the allowance.
    """
    cfg = config or FreeWindowConfig()

    if not roles.has_earner:
        return FreeWindow(BillingMode.STANDARD, cfg.no_earner_allowance, cfg.version)

    if promotion_eligible:
        return FreeWindow(BillingMode.PROMOTIONAL_FREE, UNLIMITED_QUOTA, cfg.version)

    if not roles.earn_mode_on:
        return FreeWindow(BillingMode.PLATFORM_ONLY, cfg.earn_off_allowance, cfg.version)

    tier = roles.tier or PopularityTier.STANDARD
    return FreeWindow(BillingMode.STANDARD, cfg.allowance_for_tier(tier), cfg.version)
