# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Chatfunnel Engine.
#
# Chatfunnel Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

from chatfunnel_core.monetization.config import (
    FreeWindowConfig,
    FunnelConfig,
    PricingConfig,
    PromotionConfig,
)
from chatfunnel_core.monetization.config_loader import load_funnel_config
from chatfunnel_core.monetization.facade import ChatFunnelFacade
from chatfunnel_core.monetization.ledger import TokenSettlementRecord
from chatfunnel_core.monetization.adapters.firestore import FirestoreFunnelStore
from chatfunnel_core.monetization.adapters.memory import InMemoryFunnelStore, InMemoryWallet
from chatfunnel_core.monetization.types import (
    CLOSE_REASON_EXPIRED,
    CLOSE_REASON_MANUAL,
    UNLIMITED_QUOTA,
    BillingMode,
    ChatSession,
    ChatState,
    MessageOutcome,
    ParticipantSnapshot,
    PopularityMetrics,
    PopularityTier,
    PromotionQuota,
    ResolvedRoles,
    TokenSplit,
)

__all__ = [
    "FreeWindowConfig",
    "FunnelConfig",
    "PricingConfig",
    "PromotionConfig",
    "load_funnel_config",
    "ChatFunnelFacade",
    "TokenSettlementRecord",
    "FirestoreFunnelStore",
    "InMemoryFunnelStore",
    "InMemoryWallet",
    "CLOSE_REASON_EXPIRED",
    "CLOSE_REASON_MANUAL",
    "UNLIMITED_QUOTA",
    "BillingMode",
    "ChatSession",
    "ChatState",
    "MessageOutcome",
    "ParticipantSnapshot",
    "PopularityMetrics",
    "PopularityTier",
    "PromotionQuota",
    "ResolvedRoles",
    "TokenSplit",
]
