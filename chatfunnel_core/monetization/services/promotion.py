# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Chatfunnel Engine.
#
# Chatfunnel Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Promotion Eligibility Gate.

Decides whether a struggling low-visibility earner gets a permanently free
(PROMOTIONAL_FREE) chat. Bounded per region and UTC day:

1. Any one low-visibility signal qualifies (swipe-right rate, matches/day,
   active chats/week).
2. grantedToday < max_promo_per_day
3. activeConcurrent < max_concurrent_promo_per_region

Metrics must come from server-held data; there is no client override.
Missing metrics are treated as "not measured" and never qualify.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from chatfunnel_core.monetization.config import PromotionConfig
from chatfunnel_core.monetization.services.base import PromotionStore
from chatfunnel_core.monetization.types import PopularityMetrics, utcnow

logger = logging.getLogger(__name__)


def has_low_visibility(metrics: PopularityMetrics | None, cfg: PromotionConfig) -> bool:
    """Unmeasured signals never qualify; a profile without metrics is not promoted."""
    if metrics is None:
        return False
    signals = (
        (metrics.swipe_right_rate, cfg.max_swipe_right_rate),
        (metrics.matches_per_day, cfg.max_matches_per_day),
        (metrics.active_chats_per_week, cfg.max_active_chats_per_week),
    )
    return any(value is not None and value <= limit for value, limit in signals)


class PromotionEligibilityGate:
    def __init__(
        self,
        store: PromotionStore,
        cfg: PromotionConfig | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.cfg = cfg or PromotionConfig()
        self._clock = clock

    def check_promotion_eligibility(
        self,
        candidate_earner_id: str,
        region: str,
        metrics: PopularityMetrics | None,
        *,
        chat_id: str | None = None,
    ) -> bool:
        """
        Returns True and consumes one grant when the candidate qualifies.
        Quota exhaustion is an ordinary False, never an exception.
        A chat that already holds a grant keeps it without consuming another.
        """
        if chat_id is not None:
            existing = self.store.get_promotion_grant(chat_id)
            if existing is not None:
                return True

        if not has_low_visibility(metrics, self.cfg):
            return False

        now = self._clock()
        granted = self.store.try_grant_promotion(
            region=region,
            day=now.date(),
            max_per_day=self.cfg.max_promo_per_day,
            max_concurrent=self.cfg.max_concurrent_promo_per_region,
            earner_id=candidate_earner_id,
            chat_id=chat_id,
            now=now,
        )
        if granted:
            logger.info("[Promotion] Granted free chat to %s in %s", candidate_earner_id, region)
        else:
            logger.info("[Promotion] Quota reached for %s on %s", region, now.date().isoformat())
        return granted

    def release(self, chat_id: str) -> bool:
        """Free one concurrent slot when a promotional chat closes."""
        released = self.store.release_promotion(chat_id)
        if released:
            logger.debug("[Promotion] Released slot for chat %s", chat_id)
        return released
