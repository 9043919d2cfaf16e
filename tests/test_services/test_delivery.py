"""Tests for the Delivery Trigger."""

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from app.core.datetime_utils import utc_now
from app.core.exceptions import ClaimConflict, NoRecipients
from app.models import LastWishDelivery
from app.services import switch_store
from app.services.data_export import DataExportError, NullDataExporter
from app.services.delivery import deliver, included_sections, send_test_email

pytestmark = pytest.mark.asyncio


async def _claimed(db_session, switch, now):
    token = await switch_store.claim(db_session, switch, now, 30)
    assert token is not None
    return token


async def _log_rows(db_session, switch_id) -> list[LastWishDelivery]:
    result = await db_session.execute(
        select(LastWishDelivery)
        .where(LastWishDelivery.switch_id == switch_id)
        .order_by(LastWishDelivery.created_at)
    )
    return list(result.scalars().all())


class TestDeliver:
    async def test_sends_to_every_recipient(
        self, db_session, switch_factory, make_recipients, mock_sender
    ):
        switch = await switch_factory(
            checked_in_days_ago=8,
            recipients=make_recipients("a@example.com", "b@example.com"),
        )
        now = utc_now()
        token = await _claimed(db_session, switch, now)

        with patch("app.services.delivery.send_last_wish_email", mock_sender):
            result = await deliver(db_session, switch.id, token, now, exporter=NullDataExporter())

        assert result.delivered is True
        assert result.sent == ["a@example.com", "b@example.com"]
        assert mock_sender.await_count == 2

        rows = await _log_rows(db_session, switch.id)
        assert [r.status for r in rows] == ["sent", "sent"]
        assert all(r.is_test is False and r.epoch == 1 for r in rows)

    async def test_passes_owner_message_and_payload(
        self, db_session, user_factory, switch_factory, mock_sender
    ):
        owner = await user_factory("owner@example.com")
        switch = await switch_factory(
            user=owner, checked_in_days_ago=8, message="Passwords are in the safe."
        )
        now = utc_now()
        token = await _claimed(db_session, switch, now)
        exporter = AsyncMock()
        exporter.export.return_value = {"accounts": [{"name": "Checking"}]}

        with patch("app.services.delivery.send_last_wish_email", mock_sender):
            await deliver(db_session, switch.id, token, now, exporter=exporter)

        args, kwargs = mock_sender.await_args
        owner_email, recipient, message, payload, frequency_days = args
        assert owner_email == "owner@example.com"
        assert recipient["email"] == "heir@example.com"
        assert message == "Passwords are in the safe."
        assert payload == {"accounts": [{"name": "Checking"}]}
        assert frequency_days == 7
        assert kwargs["is_test"] is False

    async def test_already_delivered_is_skipped(self, db_session, switch_factory, mock_sender):
        """Invoking twice for the same switch never sends twice."""
        switch = await switch_factory(checked_in_days_ago=8)
        now = utc_now()
        token = await _claimed(db_session, switch, now)
        await switch_store.complete_delivery(db_session, switch.id, token, now)

        with patch("app.services.delivery.send_last_wish_email", mock_sender):
            result = await deliver(db_session, switch.id, token, now)

        assert result.delivered is True
        assert result.skipped is True
        mock_sender.assert_not_awaited()

    async def test_lost_claim_raises(self, db_session, switch_factory, mock_sender):
        switch = await switch_factory(checked_in_days_ago=8)
        now = utc_now()
        await _claimed(db_session, switch, now)

        with patch("app.services.delivery.send_last_wish_email", mock_sender):
            with pytest.raises(ClaimConflict):
                await deliver(db_session, switch.id, "not-the-token", now)

        mock_sender.assert_not_awaited()

    async def test_partial_failure_retries_only_remaining(
        self, db_session, switch_factory, make_recipients
    ):
        """Recipients already sent in this epoch are not sent again on retry."""
        switch = await switch_factory(
            checked_in_days_ago=8,
            recipients=make_recipients("ok@example.com", "flaky@example.com"),
        )
        now = utc_now()
        token = await _claimed(db_session, switch, now)

        async def first_attempt(owner, recipient, *args, **kwargs):
            return recipient["email"] == "ok@example.com"

        with patch("app.services.delivery.send_last_wish_email", AsyncMock(side_effect=first_attempt)):
            result = await deliver(db_session, switch.id, token, now)

        assert result.delivered is False
        assert result.sent == ["ok@example.com"]
        assert result.failed == ["flaky@example.com"]

        await switch_store.release_claim(db_session, switch.id, token, result.error, now)
        switch = await switch_store.get_switch_by_id(db_session, switch.id)
        token = await _claimed(db_session, switch, now)

        retry_sender = AsyncMock(return_value=True)
        with patch("app.services.delivery.send_last_wish_email", retry_sender):
            result = await deliver(db_session, switch.id, token, now)

        assert result.delivered is True
        assert result.sent == ["flaky@example.com"]
        assert retry_sender.await_count == 1

    async def test_export_failure_sends_nothing(self, db_session, switch_factory, mock_sender):
        switch = await switch_factory(checked_in_days_ago=8)
        now = utc_now()
        token = await _claimed(db_session, switch, now)
        exporter = AsyncMock()
        exporter.export.side_effect = DataExportError("ledger down")

        with patch("app.services.delivery.send_last_wish_email", mock_sender):
            result = await deliver(db_session, switch.id, token, now, exporter=exporter)

        assert result.delivered is False
        assert "ledger down" in result.error
        mock_sender.assert_not_awaited()

    async def test_no_recipients_is_a_failure(self, db_session, switch_factory, mock_sender):
        switch = await switch_factory(checked_in_days_ago=8, recipients=[])
        now = utc_now()
        token = await _claimed(db_session, switch, now)

        with patch("app.services.delivery.send_last_wish_email", mock_sender):
            result = await deliver(db_session, switch.id, token, now)

        assert result.delivered is False
        mock_sender.assert_not_awaited()


class TestIncludedSections:
    async def test_only_selected_sections(self, switch_factory):
        switch = await switch_factory()
        switch.include_data = {"accounts": True, "transactions": False, "savings": False}

        sections = included_sections(switch)

        assert "accounts" in sections
        assert "transactions" not in sections
        assert "savings" not in sections
        # Missing keys fall back to the default (included)
        assert "analytics" in sections


class TestSendTestEmail:
    async def test_marks_rows_as_test_and_never_delivers(
        self, db_session, switch_factory, mock_sender
    ):
        switch = await switch_factory(checked_in_days_ago=1)

        with patch("app.services.delivery.send_last_wish_email", mock_sender):
            result = await send_test_email(db_session, switch.user_id, utc_now())

        assert result.sent == ["heir@example.com"]
        assert mock_sender.await_args.kwargs["is_test"] is True

        rows = await _log_rows(db_session, switch.id)
        assert len(rows) == 1
        assert rows[0].is_test is True

        stored = await switch_store.get_switch(db_session, switch.user_id)
        assert stored.delivered_at is None
        assert stored.delivering is False

    async def test_test_sends_do_not_count_as_delivered(
        self, db_session, switch_factory, mock_sender
    ):
        """A later real delivery still sends to recipients who got a test email."""
        switch = await switch_factory(checked_in_days_ago=8)
        with patch("app.services.delivery.send_last_wish_email", mock_sender):
            await send_test_email(db_session, switch.user_id, utc_now())

        assert await switch_store.sent_recipients(db_session, switch.id, 1) == set()

    async def test_requires_recipients(self, db_session, switch_factory, mock_sender):
        switch = await switch_factory(recipients=[])

        with patch("app.services.delivery.send_last_wish_email", mock_sender):
            with pytest.raises(NoRecipients):
                await send_test_email(db_session, switch.user_id, utc_now())
