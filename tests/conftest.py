"""
Shared pytest fixtures available to every test file automatically.
No imports needed in test files; pytest discovers this by convention.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio
from fastapi import FastAPI
from fastapi.testclient import TestClient
from tortoise import Tortoise, connections

from app import settings
from app.deps import (
    can_accept_booking,
    can_admin_read_booking,
    can_initiate_payment,
    can_rate_booking,
    can_read_booking,
    can_read_payment,
    can_write_booking,
    get_current_user,
    get_notifications_client,
)
from app.gateway import StkPushResult, TransferResult, get_gateway
from app.routers.booking import router as booking_router
from app.routers.payment import router as payment_router

from .factories import WEBHOOK_SECRET, make_admin, make_cleaner, make_client

# ---------------------------------------------------------------------------
# Default no-op client mocks: prevent real HTTP calls in tests
# ---------------------------------------------------------------------------


def _noop_notifications_client():
    mock = MagicMock()
    mock.notify = AsyncMock(return_value=True)
    mock.notify_many = AsyncMock(return_value=None)
    return mock


def _noop_gateway():
    mock = MagicMock()
    mock.stk_push = AsyncMock(
        return_value=StkPushResult(checkout_reference="INV-1", tracking_id="TRK-1")
    )
    mock.transfer_mpesa = AsyncMock(
        return_value=TransferResult(success=True, id="PAYOUT-1")
    )
    return mock


@pytest.fixture()
def notifications():
    return _noop_notifications_client()


@pytest.fixture()
def gateway():
    return _noop_gateway()


# ---------------------------------------------------------------------------
# Redis: never reach a real server from tests
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def no_redis():
    with (
        patch(
            "app.routers.booking.get_available_jobs_cache",
            AsyncMock(return_value=None),
        ) as get_cache,
        patch("app.routers.booking.set_available_jobs_cache", AsyncMock()) as set_cache,
        patch(
            "app.routers.booking.invalidate_available_jobs_cache", AsyncMock()
        ) as invalidate,
    ):
        yield MagicMock(get=get_cache, set=set_cache, invalidate=invalidate)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture()
def intasend_configured(monkeypatch):
    monkeypatch.setattr(settings, "intasend_public_key", "ISPubKey_test")
    monkeypatch.setattr(settings, "intasend_secret_key", "ISSecretKey_test")
    monkeypatch.setattr(settings, "intasend_webhook_secret", WEBHOOK_SECRET)


@pytest.fixture()
def intasend_unconfigured(monkeypatch):
    monkeypatch.setattr(settings, "intasend_public_key", "")
    monkeypatch.setattr(settings, "intasend_secret_key", "")
    monkeypatch.setattr(settings, "intasend_webhook_secret", "")


# ---------------------------------------------------------------------------
# Database: fresh in-memory SQLite per test
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def db():
    await Tortoise.init(db_url="sqlite://:memory:", modules={"models": ["app.models"]})
    await Tortoise.generate_schemas()
    yield
    await connections.close_all()


# ---------------------------------------------------------------------------
# App builder: used by all client fixtures
# ---------------------------------------------------------------------------


def build_app(current_user, notifications_client=None, gateway_client=None) -> FastAPI:
    """
    Fresh FastAPI app with auth/scope dependencies overridden to return
    `current_user` unconditionally.

    Pass `notifications_client` / `gateway_client` to inject custom mocks.
    Defaults to no-op mocks, avoiding real HTTP calls.
    """
    app = FastAPI()
    app.include_router(booking_router)
    app.include_router(payment_router)

    async def _user():
        return current_user

    for dep in (
        can_read_booking,
        can_write_booking,
        can_accept_booking,
        can_rate_booking,
        can_admin_read_booking,
        can_initiate_payment,
        can_read_payment,
        get_current_user,
    ):
        app.dependency_overrides[dep] = _user

    nc = (
        notifications_client
        if notifications_client is not None
        else _noop_notifications_client()
    )
    gw = gateway_client if gateway_client is not None else _noop_gateway()
    app.dependency_overrides[get_notifications_client] = lambda: nc
    app.dependency_overrides[get_gateway] = lambda: gw

    return app


# ---------------------------------------------------------------------------
# Reusable client fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def client_client():
    return TestClient(build_app(make_client()), raise_server_exceptions=True)


@pytest.fixture()
def cleaner_client():
    return TestClient(build_app(make_cleaner()), raise_server_exceptions=True)


@pytest.fixture()
def admin_client():
    return TestClient(build_app(make_admin()), raise_server_exceptions=True)


@pytest.fixture()
def anon_app():
    """
    Bare app with NO dependency overrides.
    Use this when you want real scope/auth deps to run so you can assert 401/403/422.
    """
    app = FastAPI()
    app.include_router(booking_router)
    app.include_router(payment_router)
    return app


@pytest.fixture()
def client_factory():
    def _make(
        current_user,
        notifications_client=None,
        gateway_client=None,
    ) -> TestClient:
        return TestClient(
            build_app(
                current_user,
                notifications_client=notifications_client,
                gateway_client=gateway_client,
            ),
            raise_server_exceptions=True,
        )

    return _make
