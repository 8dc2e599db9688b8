# Copyright (C) 2025 Ivan Bondarenko
#
# This file is part of Chatfunnel Engine.
#
# Chatfunnel Engine is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.


import pytest

from chatfunnel_core.monetization.adapters.memory import InMemoryFunnelStore, InMemoryWallet
from chatfunnel_core.monetization.config import FunnelConfig
from chatfunnel_core.monetization.facade import ChatFunnelFacade
from tests.fixtures.funnel_fixtures import FIXED_NOW, FakeProfiles, RecordingNotifier


@pytest.fixture
def funnel_config():
    return FunnelConfig(transaction_backoff_sec=0.0)


@pytest.fixture
def store():
    return InMemoryFunnelStore()


@pytest.fixture
def wallet():
    return InMemoryWallet()


@pytest.fixture
def profiles():
    return FakeProfiles()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def facade(store, wallet, profiles, notifier, funnel_config):
    f = ChatFunnelFacade(
        store=store,
        promotion_store=store,
        wallet=wallet,
        profiles=profiles,
        notifier=notifier,
        config=funnel_config,
        clock=lambda: FIXED_NOW,
    )
    yield f
    f.close()
