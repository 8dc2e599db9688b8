# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Chatfunnel Engine.
#
# Chatfunnel Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

from chatfunnel_core.monetization.services.base import (
    ChatNotFoundError,
    FunnelError,
    FunnelStore,
    IdempotencyError,
    InsufficientFundsError,
    InvalidBillingModeForRoutingError,
    NotAParticipantError,
    PromotionStore,
    TransactionConflictError,
    WalletError,
    WalletLedger,
    WalletTimeoutError,
)
from chatfunnel_core.monetization.services.free_window import compute_free_window
from chatfunnel_core.monetization.services.funnel import ChatFunnel, admit_message
from chatfunnel_core.monetization.services.pricing import WordBucketPricing, count_billable_words
from chatfunnel_core.monetization.services.promotion import PromotionEligibilityGate
from chatfunnel_core.monetization.services.roles import resolve_roles
from chatfunnel_core.monetization.services.router import TokenRouter, split_tokens

__all__ = [
    # Errors
    "FunnelError",
    "ChatNotFoundError",
    "NotAParticipantError",
    "IdempotencyError",
    "InsufficientFundsError",
    "InvalidBillingModeForRoutingError",
    "TransactionConflictError",
    "WalletError",
    "WalletTimeoutError",
    # Protocols
    "FunnelStore",
    "PromotionStore",
    "WalletLedger",
    # Services
    "resolve_roles",
    "compute_free_window",
    "ChatFunnel",
    "admit_message",
    "WordBucketPricing",
    "count_billable_words",
    "PromotionEligibilityGate",
    "TokenRouter",
    "split_tokens",
]
