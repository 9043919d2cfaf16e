"""Tests for the Last Wish email transport."""

import json
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest

from app.config import Settings
from app.services.email_service import (
    build_attachment,
    render_last_wish_email,
    send_last_wish_email,
)

pytestmark = pytest.mark.asyncio

GENERATED_AT = datetime(2026, 5, 1, 9, 30)
RECIPIENT = {"id": "r1", "email": "heir@example.com", "name": "Sam", "relationship": "sibling"}
PAYLOAD = {"accounts": [{"name": "Checking"}, {"name": "Savings"}], "savings": []}


def _settings(api_key: str = "re_test") -> Settings:
    return Settings(resend_api_key=api_key, email_domain="lastwish.test")


class TestBuildAttachment:
    async def test_filename_and_content(self):
        filename, content = build_attachment("owner@example.com", PAYLOAD, GENERATED_AT)

        assert filename == "financial-data-owner@example.com-2026-05-01.json"
        document = json.loads(content)
        assert document["owner"] == "owner@example.com"
        assert document["data"] == PAYLOAD


class TestRender:
    async def test_includes_message_and_sections(self):
        html = render_last_wish_email(
            "owner@example.com",
            RECIPIENT,
            "Look after the cat.",
            PAYLOAD,
            30,
            "data.json",
            GENERATED_AT,
        )

        assert "Dear Sam" in html
        assert "Look after the cat." in html
        assert "Accounts (2 records)" in html
        assert "test of a Last Wish" not in html

    async def test_escapes_message(self):
        html = render_last_wish_email(
            "owner@example.com", RECIPIENT, "<script>x</script>", {}, 30, "d.json", GENERATED_AT
        )

        assert "<script>x</script>" not in html

    async def test_test_banner(self):
        html = render_last_wish_email(
            "owner@example.com", RECIPIENT, "", {}, 30, "d.json", GENERATED_AT, is_test=True
        )

        assert "test of a Last Wish" in html


class TestSendLastWishEmail:
    async def test_unconfigured_transport_is_failure(self):
        """No API key must never look like a successful delivery."""
        with patch("app.services.email_service.get_settings", return_value=_settings("")):
            with patch("app.services.email_service.resend.Emails.send") as send:
                ok = await send_last_wish_email("owner@example.com", RECIPIENT, "", PAYLOAD, 30)

        assert ok is False
        send.assert_not_called()

    async def test_sends_with_attachment(self):
        send = MagicMock(return_value={"id": "email_1"})
        with patch("app.services.email_service.get_settings", return_value=_settings()):
            with patch("app.services.email_service.resend.Emails.send", send):
                ok = await send_last_wish_email(
                    "owner@example.com", RECIPIENT, "hi", PAYLOAD, 30, now=GENERATED_AT
                )

        assert ok is True
        params = send.call_args.args[0]
        assert params["to"] == ["heir@example.com"]
        assert params["subject"] == "Important: Financial Data from owner@example.com - Last Wish"
        assert params["from"].endswith("<noreply@lastwish.test>")
        attachment = params["attachments"][0]
        assert attachment["filename"].endswith("2026-05-01.json")
        assert json.loads(bytes(attachment["content"]))["data"] == PAYLOAD

    async def test_test_subject_prefix(self):
        send = MagicMock()
        with patch("app.services.email_service.get_settings", return_value=_settings()):
            with patch("app.services.email_service.resend.Emails.send", send):
                await send_last_wish_email(
                    "owner@example.com", RECIPIENT, "", {}, 30, is_test=True
                )

        assert send.call_args.args[0]["subject"].startswith("[Test] ")

    async def test_transport_error_is_failure(self):
        send = MagicMock(side_effect=RuntimeError("503 from provider"))
        with patch("app.services.email_service.get_settings", return_value=_settings()):
            with patch("app.services.email_service.resend.Emails.send", send):
                ok = await send_last_wish_email("owner@example.com", RECIPIENT, "", {}, 30)

        assert ok is False
