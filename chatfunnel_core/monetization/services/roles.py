# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Chatfunnel Engine.
#
# Chatfunnel Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Tier/role resolution for a new chat.

Decides which participant (if any) earns and which one pays once the free
window is over. Pure and deterministic over the two snapshots.
"""

from __future__ import annotations

import logging

from chatfunnel_core.monetization.types import ParticipantSnapshot, ResolvedRoles

logger = logging.getLogger(__name__)


def _seniority_key(user_id: str) -> tuple[int, str]:
    # Shorter ids were issued first ("u9" before "u10"); same length compares as text.
    return len(user_id), user_id


def _senior(a: ParticipantSnapshot, b: ParticipantSnapshot) -> ParticipantSnapshot:
    return a if _seniority_key(a.user_id) <= _seniority_key(b.user_id) else b


def resolve_roles(a: ParticipantSnapshot, b: ParticipantSnapshot) -> ResolvedRoles:
    """
    Resolve earner/payer roles for a chat between `a` and `b`.

    - Neither can earn: no earner, no payer; the chat is never billed.
    - Exactly one can earn: that participant earns, the other pays. An OFF
      earn toggle is reported via `earn_mode_on` (PLATFORM_ONLY later).
    - Both can earn: upstream should prevent this. The senior account wins
      and the anomaly is logged.
    """
    if a.user_id == b.user_id:
        raise ValueError("A chat needs two distinct participants")

    if a.can_earn and b.can_earn:
        earner = _senior(a, b)
        logger.warning(
            "[Roles] Both participants claim earner eligibility (%s, %s); picking %s",
            a.user_id,
            b.user_id,
            earner.user_id,
        )
    elif a.can_earn:
        earner = a
    elif b.can_earn:
        earner = b
    else:
        return ResolvedRoles(earning_participant_id=None, paying_participant_id=None)

    payer = b if earner is a else a
    return ResolvedRoles(
        earning_participant_id=earner.user_id,
        paying_participant_id=payer.user_id,
        tier=earner.tier,
        earn_mode_on=earner.earn_mode_on,
    )
