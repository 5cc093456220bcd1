"""
Pytest configuration for CI tests
Provides common fixtures (transports simulés, horloge, scheduler)
"""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from core.notifier import Notifier
from core.task_scheduler import TaskScheduler
from twitchapi.auth_manager import AuthManager, BroadcasterTier, DeviceFlowState
from twitchapi.predictions import PredictionService
from twitchapi.transports.helix_client import HelixClient
from twitchapi.transports.oauth_client import TwitchOAuthClient


class FakeClock:
    """Horloge contrôlée par le test"""

    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class RecordingScheduler(TaskScheduler):
    """sleep() note le délai et rend la main une fois, sans attendre"""

    def __init__(self):
        super().__init__()
        self.sleeps = []

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        await asyncio.sleep(0)


class RecordingNotifier(Notifier):
    """Garde les messages opérateur pour les assertions"""

    def __init__(self):
        super().__init__()
        self.messages = []
        self.subscribe(lambda level, message, color: self.messages.append((level, message)))

    def texts(self):
        return [message for _, message in self.messages]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler():
    return RecordingScheduler()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def oauth_client():
    return AsyncMock(spec=TwitchOAuthClient)


@pytest.fixture
def helix_client():
    return AsyncMock(spec=HelixClient)


@pytest.fixture
def auth_manager(oauth_client, helix_client, scheduler, notifier, clock):
    return AuthManager(
        oauth_client,
        helix_client,
        scheduler,
        notifier=notifier,
        clock=clock,
        open_browser=lambda url: True
    )


@pytest.fixture
def authorized_auth(auth_manager, clock):
    """Session déjà autorisée : affiliate, token valide 4h"""
    session = auth_manager.session
    session.access_token = "access-1"
    session.refresh_token = "refresh-1"
    session.access_token_expires_at = clock() + timedelta(hours=4)
    session.broadcaster_id = "1234"
    session.broadcaster_login = "streamer"
    session.broadcaster_type = "affiliate"
    session.broadcaster_tier = BroadcasterTier.AFFILIATE_OR_PARTNER
    session.device_flow_state = DeviceFlowState.AUTHORIZED
    return auth_manager


@pytest.fixture
def prediction_service(authorized_auth, helix_client, notifier):
    service = PredictionService(authorized_auth, helix_client, title="Match Winner", notifier=notifier)
    authorized_auth.set_prediction_guard(service.is_active)
    return service


@pytest.fixture
def created_prediction_payload():
    """Réponse Helix (data[0]) pour deux équipes"""
    return {
        "id": "pred-1",
        "title": "Match Winner",
        "outcomes": [
            {"id": "outcome-a", "title": "alice, bob"},
            {"id": "outcome-b", "title": "carol"},
        ],
    }
