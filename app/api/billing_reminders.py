"""Admin billing reminder API."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.models import User
from app.schemas import BulkReminderSend, ReminderSend
from app.services.auth import require_admin
from app.services.billing import BillingReminderService, ReminderType, UserNotFound

router = APIRouter(prefix="/billing-reminders", tags=["billing-reminders"])

_service = None


def get_billing_service() -> BillingReminderService:
    global _service
    if _service is None:
        _service = BillingReminderService()
    return _service


async def _admin_user(db: AsyncSession, admin: dict) -> User:
    user = await db.get(User, admin["uid"])
    if not user or user.role != "admin":
        raise HTTPException(403, "Admin access required")
    return user


@router.get("/users-with-negative-balance")
async def users_with_negative_balance(
    db: AsyncSession = Depends(get_db),
    svc: BillingReminderService = Depends(get_billing_service),
    _admin: dict = Depends(require_admin),
):
    return await svc.negative_balance_users(db)


@router.get("/all-users")
async def all_users(
    db: AsyncSession = Depends(get_db),
    svc: BillingReminderService = Depends(get_billing_service),
    _admin: dict = Depends(require_admin),
):
    return await svc.active_users(db)


@router.post("/send-reminder")
async def send_reminder(
    body: ReminderSend,
    db: AsyncSession = Depends(get_db),
    svc: BillingReminderService = Depends(get_billing_service),
    admin: dict = Depends(require_admin),
):
    sender = await _admin_user(db, admin)
    try:
        reminder = await svc.send_reminder(
            db,
            body.user_id,
            sender,
            body.subject,
            body.message or "",
            ReminderType(body.reminder_type),
            body.admin_notes,
        )
    except UserNotFound:
        raise HTTPException(404, "User not found")

    if not reminder.email_sent:
        raise HTTPException(
            502,
            detail={
                "message": "Reminder recorded but email sending failed",
                "reminder_id": reminder.id,
                "error": reminder.email_error,
            },
        )
    return {
        "success": True,
        "message": "Billing reminder sent successfully",
        "reminder_id": reminder.id,
    }


@router.post("/send-bulk-reminders")
async def send_bulk_reminders(
    body: BulkReminderSend,
    db: AsyncSession = Depends(get_db),
    svc: BillingReminderService = Depends(get_billing_service),
    admin: dict = Depends(require_admin),
):
    sender = await _admin_user(db, admin)
    results = await svc.send_bulk_reminders(
        db,
        body.user_ids,
        sender,
        body.subject,
        body.message or "",
        ReminderType(body.reminder_type),
        body.admin_notes,
    )
    return {
        "success": True,
        "message": (
            f"Bulk reminders processed: {len(results['successful'])} successful, "
            f"{len(results['failed'])} failed"
        ),
        "results": results,
    }


@router.get("/history")
async def reminder_history(
    db: AsyncSession = Depends(get_db),
    svc: BillingReminderService = Depends(get_billing_service),
    _admin: dict = Depends(require_admin),
):
    return await svc.history(db)
