"""Tests for the Last Wish API endpoints."""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient

from app.core.datetime_utils import utc_now
from app.services import switch_store

pytestmark = pytest.mark.asyncio

RECIPIENT = {"email": "heir@example.com", "name": "Sam", "relationship": "sibling"}


class TestAuth:
    async def test_requires_session(self, client: AsyncClient):
        response = await client.get("/api/last-wish")

        assert response.status_code == 401

    async def test_expired_session_rejected(self, client: AsyncClient, session_factory):
        session = await session_factory(expired=True)
        client.cookies.set("session_id", str(session.id))

        response = await client.post("/api/last-wish/check-in")

        assert response.status_code == 401


class TestGetLastWish:
    async def test_not_configured(self, auth_client):
        client, _ = auth_client

        response = await client.get("/api/last-wish")

        assert response.status_code == 200
        data = response.json()
        assert data["configured"] is False
        assert data["frequency_days"] == 30

    async def test_configured_with_countdown(self, auth_client, switch_factory):
        client, user = auth_client
        await switch_factory(user=user, frequency_days=7, checked_in_days_ago=5)

        response = await client.get("/api/last-wish")

        data = response.json()
        assert data["configured"] is True
        assert data["countdown"]["days_left"] == 2
        assert data["countdown"]["urgency"] == "critical"
        assert data["delivery"]["is_delivered"] is False
        assert data["delivery"]["pending_since"] is None

    async def test_failed_delivery_shows_pending(self, auth_client, db_session, switch_factory):
        client, user = auth_client
        switch = await switch_factory(user=user, frequency_days=7, checked_in_days_ago=8)
        now = utc_now()
        token = await switch_store.claim(db_session, switch, now, 30)
        await switch_store.release_claim(db_session, switch.id, token, "smtp down", now)

        response = await client.get("/api/last-wish")

        delivery = response.json()["delivery"]
        assert delivery["pending_since"] is not None
        assert delivery["delivery_attempts"] == 1
        assert delivery["is_delivered"] is False


class TestSettings:
    async def test_first_save_creates_switch(self, auth_client):
        client, _ = auth_client

        response = await client.put(
            "/api/last-wish/settings",
            json={"frequency_days": 14, "recipients": [RECIPIENT], "message": "Hi"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["configured"] is True
        assert data["is_enabled"] is False
        assert data["frequency_days"] == 14
        assert data["recipients"][0]["email"] == "heir@example.com"
        assert data["recipients"][0]["id"]

    async def test_enable_without_recipients_rejected(self, auth_client):
        client, _ = auth_client

        response = await client.put("/api/last-wish/settings", json={"is_enabled": True})

        assert response.status_code == 400
        assert response.json()["code"] == "no_recipients"

    async def test_duplicate_recipients_collapsed(self, auth_client):
        client, _ = auth_client
        dup = {**RECIPIENT, "email": "HEIR@example.com"}

        response = await client.put(
            "/api/last-wish/settings", json={"recipients": [RECIPIENT, dup]}
        )

        assert len(response.json()["recipients"]) == 1

    async def test_frequency_bounds(self, auth_client):
        client, _ = auth_client

        too_small = await client.put("/api/last-wish/settings", json={"frequency_days": 0})
        too_large = await client.put("/api/last-wish/settings", json={"frequency_days": 10_000})

        assert too_small.status_code == 422
        assert too_large.status_code == 400

    async def test_frequency_change_keeps_check_in(self, auth_client, switch_factory, db_session):
        client, user = auth_client
        switch = await switch_factory(user=user, frequency_days=30, checked_in_days_ago=10)
        last_check_in = switch.last_check_in

        response = await client.put("/api/last-wish/settings", json={"frequency_days": 7})

        assert response.status_code == 200
        assert response.json()["countdown"]["is_overdue"] is True
        stored = await switch_store.get_switch(db_session, user.id)
        assert stored.last_check_in == last_check_in


class TestCheckIn:
    async def test_resets_overdue(self, auth_client, switch_factory):
        """An overdue switch is no longer overdue after checking in."""
        client, user = auth_client
        await switch_factory(user=user, frequency_days=7, checked_in_days_ago=8)

        response = await client.post("/api/last-wish/check-in")

        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is True
        assert data["countdown"]["is_overdue"] is False
        assert data["countdown"]["days_left"] == 7

    async def test_not_configured(self, auth_client):
        client, _ = auth_client

        response = await client.post("/api/last-wish/check-in")

        assert response.status_code == 404
        assert response.json()["code"] == "switch_not_found"

    async def test_delivered_is_final(self, auth_client, switch_factory):
        client, user = auth_client
        await switch_factory(user=user, checked_in_days_ago=8, delivered_at=utc_now())

        response = await client.post("/api/last-wish/check-in")

        assert response.status_code == 409
        data = response.json()
        assert data["code"] == "already_delivered"
        assert "already been delivered" in data["detail"]

    async def test_only_own_switch(self, auth_client, switch_factory, user_factory, db_session):
        """Checking in never touches another user's switch."""
        client, user = auth_client
        await switch_factory(user=user, checked_in_days_ago=1)
        other = await user_factory()
        other_switch = await switch_factory(user=other, checked_in_days_ago=6)
        before = other_switch.last_check_in

        await client.post("/api/last-wish/check-in")

        stored = await switch_store.get_switch(db_session, other.id)
        assert stored.last_check_in == before

    async def test_rate_limited(self, auth_client, switch_factory):
        client, user = auth_client
        await switch_factory(user=user, checked_in_days_ago=1)

        codes = [(await client.post("/api/last-wish/check-in")).status_code for _ in range(11)]

        assert codes[:10] == [200] * 10
        assert codes[10] == 429


class TestRearm:
    async def test_rearm_delivered_switch(self, auth_client, switch_factory):
        client, user = auth_client
        await switch_factory(user=user, checked_in_days_ago=20, delivered_at=utc_now() - timedelta(days=1))

        response = await client.post("/api/last-wish/rearm")

        assert response.status_code == 200
        data = response.json()
        assert data["delivery"]["is_delivered"] is False
        assert data["delivery"]["epoch"] == 2
        assert data["countdown"]["is_overdue"] is False

    async def test_rearm_undelivered_rejected(self, auth_client, switch_factory):
        client, user = auth_client
        await switch_factory(user=user, checked_in_days_ago=1)

        response = await client.post("/api/last-wish/rearm")

        assert response.status_code == 409
        assert response.json()["code"] == "not_delivered"


class TestTestEmailAndLog:
    async def test_test_email_logged(self, auth_client, switch_factory, mock_sender):
        client, user = auth_client
        await switch_factory(user=user, checked_in_days_ago=1)

        with patch("app.services.delivery.send_last_wish_email", mock_sender):
            response = await client.post("/api/last-wish/test-email")

        assert response.status_code == 200
        assert response.json() == {"ok": True, "sent": ["heir@example.com"], "failed": []}

        log = await client.get("/api/last-wish/deliveries")
        entries = log.json()
        assert len(entries) == 1
        assert entries[0]["is_test"] is True
        assert entries[0]["status"] == "sent"

        status = await client.get("/api/last-wish")
        assert status.json()["delivery"]["is_delivered"] is False

    async def test_test_email_all_failed(self, auth_client, switch_factory):
        client, user = auth_client
        await switch_factory(user=user, checked_in_days_ago=1)

        with patch("app.services.delivery.send_last_wish_email", AsyncMock(return_value=False)):
            response = await client.post("/api/last-wish/test-email")

        assert response.status_code == 502
        assert response.json()["code"] == "delivery_failed"
