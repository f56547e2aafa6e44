"""Billing reminder tests."""

import json

import httpx
import pytest

from app.services.billing import (
    DEFAULT_MESSAGE,
    BillingReminderService,
    ReminderType,
    UserNotFound,
    build_reminder_email,
    format_balance,
)
from app.services.email import EmailDeliveryError, InlineAttachment, SendGridMailer
from app.services.notification import NotificationEvent, NotificationService


class Outbox:
    """Records SendGrid requests; recipients in ``reject`` get a 400."""

    def __init__(self, reject=()):
        self.messages = []
        self.reject = set(reject)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        to = body["personalizations"][0]["to"][0]["email"]
        if to in self.reject:
            return httpx.Response(400, json={"errors": [{"message": "bad recipient"}]})
        self.messages.append((request, body))
        return httpx.Response(202)


def _mailer(outbox: Outbox, api_key: str = "SG.test") -> SendGridMailer:
    return SendGridMailer(api_key=api_key, transport=httpx.MockTransport(outbox))


class TestFormatting:
    def test_format_balance(self):
        assert format_balance(-1234) == "-$12.34"
        assert format_balance(500) == "$5.00"
        assert format_balance(0) == "$0.00"

    def test_reminder_type_labels(self):
        assert ReminderType.OVERDUE.label == "Gecikmiş Ödeme Bildirimi"
        assert ReminderType.PAYMENT_REQUEST.urgency == "İşlem Gerekli"
        assert ReminderType("balance") is ReminderType.BALANCE

    def test_email_body(self):
        body = build_reminder_email(
            to="ayse@example.com",
            user_name="Ayse",
            company_name="Ayse <Tekstil>",
            current_balance=-12500,
            minimum_balance=-5000,
            reminder_type=ReminderType.OVERDUE,
            subject="Ödeme",
            dashboard_url="https://app.moogship.test/",
            include_qr=True,
        )
        assert "Merhaba Ayse &lt;Tekstil&gt;," in body
        assert "-$125.00" in body
        assert "#dc2626" in body
        assert "Minimum Bakiye: -$50.00" in body
        assert DEFAULT_MESSAGE in body
        assert 'href="https://app.moogship.test/dashboard"' in body
        assert "cid:qr_code_image" in body

    def test_email_body_custom_message(self):
        body = build_reminder_email(
            to="a@b.com",
            user_name="Ali",
            current_balance=100,
            reminder_type=ReminderType.BALANCE,
            subject="Hi",
            custom_message="Please top up",
        )
        assert "Merhaba Ali," in body
        assert "Please top up" in body
        assert "#059669" in body
        assert "cid:qr_code_image" not in body
        assert "Minimum Bakiye" not in body


class TestSendGridMailer:
    @pytest.mark.asyncio
    async def test_send(self, tmp_path):
        outbox = Outbox()
        qr = tmp_path / "qr.jpg"
        qr.write_bytes(b"\xff\xd8jpeg")
        attachment = InlineAttachment.from_file(str(qr), "qr_code_image")

        await _mailer(outbox).send("a@b.com", "Ali", "Subject", "<p>hi</p>", [attachment])

        request, body = outbox.messages[0]
        assert request.headers["Authorization"] == "Bearer SG.test"
        assert body["from"]["email"] == "cs@moogship.com"
        assert body["attachments"][0]["content_id"] == "qr_code_image"
        assert body["attachments"][0]["disposition"] == "inline"

    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        with pytest.raises(EmailDeliveryError):
            await _mailer(Outbox(), api_key="").send("a@b.com", "A", "S", "x")

    @pytest.mark.asyncio
    async def test_rejected(self):
        with pytest.raises(EmailDeliveryError, match="400"):
            await _mailer(Outbox(reject={"a@b.com"})).send("a@b.com", "A", "S", "x")

    def test_missing_attachment_file(self, tmp_path):
        assert InlineAttachment.from_file(str(tmp_path / "none.jpg"), "cid") is None
        assert InlineAttachment.from_file("", "cid") is None


class TestBillingReminderService:
    @pytest.mark.asyncio
    async def test_negative_balance_users(self, db, create_user, admin):
        await create_user("low", balance=-20000)
        await create_user("mid", balance=-100)
        await create_user("rich", balance=5000)
        await create_user("unapproved", balance=-999, is_approved=False)

        svc = BillingReminderService(_mailer(Outbox()), NotificationService(), "")
        users = await svc.negative_balance_users(db)
        assert [u["username"] for u in users] == ["low", "mid"]
        assert users[0]["formatted_balance"] == "-$200.00"

        active = await svc.active_users(db)
        assert [u["username"] for u in active] == ["low", "mid", "rich"]

    @pytest.mark.asyncio
    async def test_send_reminder_success(self, db, customer, admin):
        outbox = Outbox()
        notifier = NotificationService()
        svc = BillingReminderService(_mailer(outbox), notifier, "")

        reminder = await svc.send_reminder(
            db, customer.id, admin, "Bakiye", "", ReminderType.OVERDUE, "called twice",
        )
        assert reminder.email_sent is True
        assert reminder.email_sent_at is not None
        assert reminder.email_error is None
        assert reminder.current_balance == -12500
        assert reminder.reminder_type == "overdue"
        assert reminder.sent_by == admin.id

        _, body = outbox.messages[0]
        assert body["personalizations"][0]["to"][0]["email"] == customer.email
        assert notifier.get_history()[0].event == NotificationEvent.BILLING_REMINDER_SENT

    @pytest.mark.asyncio
    async def test_send_reminder_failure_recorded(self, db, customer, admin):
        svc = BillingReminderService(
            _mailer(Outbox(reject={customer.email})), NotificationService(), "",
        )
        reminder = await svc.send_reminder(db, customer.id, admin, "Bakiye")
        assert reminder.email_sent is False
        assert "400" in reminder.email_error

    @pytest.mark.asyncio
    async def test_send_reminder_unknown_user(self, db, admin):
        svc = BillingReminderService(_mailer(Outbox()), NotificationService(), "")
        with pytest.raises(UserNotFound):
            await svc.send_reminder(db, 9999, admin, "Bakiye")

    @pytest.mark.asyncio
    async def test_bulk_and_history(self, db, create_user, customer, admin):
        bounced = await create_user("bounced", balance=-300)
        svc = BillingReminderService(
            _mailer(Outbox(reject={bounced.email})), NotificationService(), "",
        )

        results = await svc.send_bulk_reminders(
            db, [customer.id, bounced.id, 9999], admin, "Toplu hatırlatma",
        )
        assert [r["user_id"] for r in results["successful"]] == [customer.id]
        failed = {r["user_id"]: r["error"] for r in results["failed"]}
        assert failed == {bounced.id: "Email sending failed", 9999: "User not found"}

        history = await svc.history(db)
        assert len(history) == 2
        assert history[0]["user"]["username"] == "bounced"
        assert history[0]["admin"]["id"] == admin.id
        assert history[1]["formatted_balance"] == "-$125.00"
