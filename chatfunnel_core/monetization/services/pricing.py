# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Chatfunnel Engine.
#
# Chatfunnel Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Word-bucket pricing for paid chat messages."""

from __future__ import annotations

import math
import re

from chatfunnel_core.monetization.config import PricingConfig
from chatfunnel_core.monetization.services.base import PricingPolicy
from chatfunnel_core.monetization.types import ChatSession, PopularityTier

_URL_RE = re.compile(r"https?://\S+", re.IGNORECASE)
_EMOJI_RE = re.compile("[\U0001F000-\U0001FFFF\u2600-\u27BF\uFE0F]")


def count_billable_words(text: str) -> int:
    """Count words, ignoring URLs and emoji."""
    if not text or not text.strip():
        return 0
    cleaned = _URL_RE.sub(" ", text)
    cleaned = _EMOJI_RE.sub(" ", cleaned)
    return len(cleaned.split())


class WordBucketPricing(PricingPolicy):
    """Tokens = ceil(words / words_per_token); Royal earners bill faster."""

    def __init__(self, config: PricingConfig | None = None):
        self.cfg = config or PricingConfig()

    def words_per_token(self, session: ChatSession) -> int:
        if session.tier == PopularityTier.ROYAL:
            return self.cfg.words_per_token_royal
        return self.cfg.words_per_token_standard

    def gross_tokens(self, session: ChatSession, word_count: int) -> int:
        if word_count < 0:
            raise ValueError("word_count must be non-negative")
        tokens = math.ceil(word_count / self.words_per_token(session))
        return max(self.cfg.min_tokens_per_message, tokens)
