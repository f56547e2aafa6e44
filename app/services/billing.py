"""Billing reminders for customers with outstanding balances.

Balances are stored in cents. Every reminder is persisted with a snapshot of
the balance at send time and the outcome of the email delivery.
"""

from __future__ import annotations

import html
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.models import User
from app.models.billing import BillingReminder
from app.services.email import EmailDeliveryError, InlineAttachment, SendGridMailer
from app.services.notification import NotificationService, notification_service

logger = logging.getLogger(__name__)

QR_CONTENT_ID = "qr_code_image"

DEFAULT_MESSAGE = (
    "Değerli müşterimiz, hesabınızda bekleyen bir bakiye olduğunu fark ettik. "
    "Lütfen hesabınızı gözden geçirin ve en kısa sürede ödemenizi gerçekleştirin. "
    "Devam eden işbirliğiniz için teşekkür ederiz. Saygılarımızla, MoogShip Ekibi"
)


class UserNotFound(LookupError):
    pass


class ReminderType(str, Enum):
    BALANCE = "balance"
    OVERDUE = "overdue"
    PAYMENT_REQUEST = "payment_request"

    @property
    def label(self) -> str:
        return _REMINDER_LABELS[self][0]

    @property
    def icon(self) -> str:
        return _REMINDER_LABELS[self][1]

    @property
    def urgency(self) -> str:
        return _REMINDER_LABELS[self][2]


_REMINDER_LABELS = {
    ReminderType.BALANCE: ("Bakiye Hatırlatması", "💰", "Bilgilendirme"),
    ReminderType.OVERDUE: ("Gecikmiş Ödeme Bildirimi", "⚠️", "Önemli"),
    ReminderType.PAYMENT_REQUEST: ("Ödeme Talebi", "💳", "İşlem Gerekli"),
}


def format_balance(cents: int) -> str:
    """-1234 -> ``-$12.34``."""
    sign = "-" if cents < 0 else ""
    return f"{sign}${abs(cents) / 100:.2f}"


def user_summary(user: User) -> dict:
    return {
        "id": user.id,
        "username": user.username,
        "name": user.name,
        "email": user.email,
        "company_name": user.company_name,
        "balance": user.balance,
        "minimum_balance": user.minimum_balance,
        "formatted_balance": format_balance(user.balance or 0),
    }


def build_reminder_email(
    *,
    to: str,
    user_name: str,
    current_balance: int,
    reminder_type: ReminderType,
    subject: str,
    company_name: Optional[str] = None,
    minimum_balance: Optional[int] = None,
    custom_message: Optional[str] = None,
    dashboard_url: str = "https://app.moogship.com",
    include_qr: bool = False,
) -> str:
    """Render the HTML body of a billing reminder."""
    esc = html.escape
    addressee = esc(company_name or user_name)
    balance_color = "#dc2626" if current_balance < 0 else "#059669"
    message = esc(custom_message or DEFAULT_MESSAGE)
    base = dashboard_url.rstrip("/")

    minimum_row = ""
    if minimum_balance:
        minimum_row = (
            '<p style="margin:0;color:#6b7280;font-size:14px;">'
            f"Minimum Bakiye: {format_balance(minimum_balance)}</p>"
        )

    qr_block = ""
    if include_qr:
        qr_block = (
            f'<img src="cid:{QR_CONTENT_ID}" alt="Banka Bilgileri QR Kodu" '
            'style="width:150px;height:150px;border-radius:8px;">'
        )

    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{esc(subject)}</title></head>
<body style="margin:0;padding:0;font-family:Arial,sans-serif;background-color:#f8fafc;">
  <div style="max-width:600px;margin:0 auto;background-color:white;border-radius:8px;">
    <div style="background:linear-gradient(135deg,#FFD700 0%,#FFA500 100%);padding:30px;text-align:center;">
      <h1 style="color:#1a1a1a;margin:0;">{reminder_type.icon} MoogShip Faturalama</h1>
      <p style="color:#333;margin:10px 0 0 0;">Küresel Kargo Çözümleri</p>
    </div>
    <div style="padding:40px 30px;">
      <h2 style="color:#1f2937;">Merhaba {addressee},</h2>
      <p><strong>Hatırlatma Türü:</strong> {reminder_type.label}<br>
         <strong>Öncelik:</strong> {reminder_type.urgency}</p>
      <div style="background-color:#f9fafb;padding:25px;border-radius:8px;border:1px solid #e5e7eb;">
        <span style="color:#6b7280;">Mevcut Bakiye:</span>
        <span style="color:{balance_color};font-size:24px;font-weight:bold;">{format_balance(current_balance)}</span>
        {minimum_row}
        <p style="margin:0;color:#6b7280;font-size:14px;"><strong>Hesap:</strong> {esc(user_name)} ({esc(to)})</p>
      </div>
      <div style="background-color:#fffbeb;padding:20px;border-left:4px solid #FFA500;margin:30px 0;">
        <p style="color:#78350f;margin:0;">{message}</p>
      </div>
      <div style="text-align:center;margin:30px 0;">
        <a href="{base}/dashboard">Paneli Görüntüle</a>
        <a href="{base}/my-balance">Bakiye Yönetimi</a>
      </div>
      <div style="background-color:#f0f9ff;padding:25px;border-radius:8px;">
        {qr_block}
        <p><strong>Hesap Adı:</strong><br>MOOGSHIP LOJİSTİK VE TİCARET LİMİTED ŞİRKETİ</p>
        <p style="font-size:12px;color:#ef4444;">Açıklama kısmına kullanıcı adınızı yazmayı unutmayın</p>
      </div>
    </div>
  </div>
</body>
</html>"""


class BillingReminderService:
    """Finds reminder targets, sends reminders and records their delivery."""

    def __init__(
        self,
        mailer: Optional[SendGridMailer] = None,
        notifier: Optional[NotificationService] = None,
        qr_image_path: Optional[str] = None,
    ):
        settings = get_settings()
        self.mailer = mailer or SendGridMailer()
        self.notifier = notifier or notification_service
        self.qr_image_path = settings.billing_qr_image_path if qr_image_path is None else qr_image_path
        self.dashboard_url = settings.dashboard_url

    async def negative_balance_users(self, db: AsyncSession) -> list[dict]:
        stmt = (
            select(User)
            .where(User.role == "user", User.is_approved.is_(True), User.balance < 0)
            .order_by(User.balance.asc())
        )
        result = await db.execute(stmt)
        return [user_summary(u) for u in result.scalars().all()]

    async def active_users(self, db: AsyncSession) -> list[dict]:
        stmt = (
            select(User)
            .where(User.role == "user", User.is_approved.is_(True))
            .order_by(User.balance.asc())
        )
        result = await db.execute(stmt)
        return [user_summary(u) for u in result.scalars().all()]

    async def _deliver(
        self,
        user: User,
        admin: User,
        reminder: BillingReminder,
        reminder_type: ReminderType,
    ) -> None:
        qr = InlineAttachment.from_file(self.qr_image_path, QR_CONTENT_ID) if self.qr_image_path else None
        body = build_reminder_email(
            to=user.email,
            user_name=user.name or user.username,
            company_name=user.company_name,
            current_balance=user.balance or 0,
            minimum_balance=user.minimum_balance,
            reminder_type=reminder_type,
            subject=reminder.subject,
            custom_message=reminder.message,
            dashboard_url=self.dashboard_url,
            include_qr=qr is not None,
        )
        try:
            await self.mailer.send(
                to=user.email,
                to_name=user.name or user.username,
                subject=reminder.subject,
                html=body,
                attachments=[qr] if qr else None,
            )
        except EmailDeliveryError as e:
            reminder.email_sent = False
            reminder.email_error = str(e)
            logger.error("Billing reminder %s to %s failed: %s", reminder.id, user.email, e)
            return

        reminder.email_sent = True
        reminder.email_sent_at = datetime.now(timezone.utc)
        logger.info("Billing reminder %s sent to %s by %s", reminder.id, user.email, admin.name)
        self.notifier.notify_billing_reminder({
            "reminder_id": reminder.id,
            "user_email": user.email,
            "reminder_type": reminder_type.value,
            "formatted_balance": format_balance(user.balance or 0),
        })

    async def send_reminder(
        self,
        db: AsyncSession,
        user_id: int,
        admin: User,
        subject: str,
        message: str = "",
        reminder_type: ReminderType = ReminderType.BALANCE,
        admin_notes: Optional[str] = None,
    ) -> BillingReminder:
        """Record a reminder and email it. Delivery failure is stored on the row."""
        user = await db.get(User, user_id)
        if not user:
            raise UserNotFound(f"User not found: {user_id}")

        reminder = BillingReminder(
            user_id=user.id,
            sent_by=admin.id,
            subject=subject,
            message=message or "",
            reminder_type=reminder_type.value,
            current_balance=user.balance or 0,
            minimum_balance=user.minimum_balance,
            admin_notes=admin_notes,
        )
        db.add(reminder)
        await db.flush()

        await self._deliver(user, admin, reminder, reminder_type)
        await db.commit()
        await db.refresh(reminder)
        return reminder

    async def send_bulk_reminders(
        self,
        db: AsyncSession,
        user_ids: list[int],
        admin: User,
        subject: str,
        message: str = "",
        reminder_type: ReminderType = ReminderType.BALANCE,
        admin_notes: Optional[str] = None,
    ) -> dict:
        successful: list[dict] = []
        failed: list[dict] = []

        for user_id in user_ids:
            try:
                reminder = await self.send_reminder(
                    db, user_id, admin, subject, message, reminder_type, admin_notes,
                )
            except UserNotFound:
                failed.append({"user_id": user_id, "error": "User not found"})
                continue

            user = await db.get(User, user_id)
            entry = {
                "user_id": user_id,
                "user_name": user.name,
                "user_email": user.email,
                "reminder_id": reminder.id,
            }
            if reminder.email_sent:
                successful.append(entry)
            else:
                failed.append({**entry, "error": "Email sending failed"})

        logger.info(
            "Bulk billing reminders: %d successful, %d failed",
            len(successful), len(failed),
        )
        return {"successful": successful, "failed": failed}

    async def history(self, db: AsyncSession) -> list[dict]:
        result = await db.execute(
            select(BillingReminder).order_by(
                BillingReminder.created_at.desc(), BillingReminder.id.desc(),
            )
        )
        reminders = result.scalars().all()

        user_ids = {r.user_id for r in reminders} | {r.sent_by for r in reminders}
        users: dict[int, User] = {}
        if user_ids:
            rows = await db.execute(select(User).where(User.id.in_(user_ids)))
            users = {u.id: u for u in rows.scalars().all()}

        history = []
        for r in reminders:
            user = users.get(r.user_id)
            admin = users.get(r.sent_by)
            history.append({
                "id": r.id,
                "subject": r.subject,
                "message": r.message,
                "reminder_type": r.reminder_type,
                "current_balance": r.current_balance,
                "minimum_balance": r.minimum_balance,
                "formatted_balance": format_balance(r.current_balance),
                "admin_notes": r.admin_notes,
                "email_sent": r.email_sent,
                "email_sent_at": r.email_sent_at,
                "email_error": r.email_error,
                "created_at": r.created_at,
                "user": {
                    "id": user.id,
                    "username": user.username,
                    "name": user.name,
                    "email": user.email,
                    "company_name": user.company_name,
                } if user else None,
                "admin": {
                    "id": admin.id,
                    "username": admin.username,
                    "name": admin.name,
                } if admin else None,
            })
        return history
