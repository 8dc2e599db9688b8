# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Chatfunnel Engine.
#
# Chatfunnel Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Bounded-time access to the external wallet ledger."""

from __future__ import annotations

import concurrent.futures
import logging
from typing import Callable, TypeVar

from chatfunnel_core.monetization.services.base import (
    CreditResult,
    DebitResult,
    WalletLedger,
    WalletTimeoutError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class GuardedWallet:
    """
    Wraps a WalletLedger so every call either finishes within `timeout_sec`
    or raises WalletTimeoutError. Wallet errors (InsufficientFundsError etc.)
    propagate unchanged.
    """

    def __init__(self, wallet: WalletLedger, *, timeout_sec: float, max_workers: int = 8):
        self._wallet = wallet
        self._timeout_sec = timeout_sec
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="wallet",
        )

    def _call(self, label: str, fn: Callable[[], T]) -> T:
        future = self._executor.submit(fn)
        try:
            return future.result(timeout=self._timeout_sec)
        except concurrent.futures.TimeoutError as e:
            future.cancel()
            logger.warning("[Wallet] %s timed out after %.1fs", label, self._timeout_sec)
            raise WalletTimeoutError(f"Wallet {label} timed out") from e

    def debit(self, payer_id: str, amount: int, *, idempotency_key: str) -> DebitResult:
        return self._call(
            "debit",
            lambda: self._wallet.debit(payer_id, amount, idempotency_key=idempotency_key),
        )

    def credit(self, earner_id: str, amount: int, *, idempotency_key: str) -> CreditResult:
        return self._call(
            "credit",
            lambda: self._wallet.credit(earner_id, amount, idempotency_key=idempotency_key),
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False)
