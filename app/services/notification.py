"""Back-office notification service.

Fans shipment, refund, billing and account events out to log, webhook and
email channels, and keeps a bounded in-memory history for the admin panel.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Optional
import asyncio
import functools
import html
import inspect
import json
import logging

import httpx

logger = logging.getLogger(__name__)


class NotificationEvent(str, Enum):
    """Back-office events."""
    LABEL_PURCHASED = "shipment.label_purchased"
    LABEL_FAILED = "shipment.label_failed"
    REFUND_REQUESTED = "refund.requested"
    REFUND_APPROVED = "refund.approved"
    REFUND_REJECTED = "refund.rejected"
    BILLING_REMINDER_SENT = "billing.reminder_sent"
    USER_APPROVED = "user.approved"


class NotificationChannel(str, Enum):
    """Notification delivery channels."""
    LOG = "log"
    WEBHOOK = "webhook"
    EMAIL = "email"


class DecimalEncoder(json.JSONEncoder):
    def default(self, obj):
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)


@dataclass
class Notification:
    """A single notification."""
    event: NotificationEvent
    title: str
    message: str
    data: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    channel: NotificationChannel = NotificationChannel.LOG
    delivered: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "event": self.event.value,
            "title": self.title,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "channel": self.channel.value,
            "delivered": self.delivered,
            "error": self.error,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), cls=DecimalEncoder)


class NotificationService:
    """Manages notification dispatch across channels."""

    def __init__(self, max_history: int = 1000):
        self._handlers: dict[NotificationChannel, list[Callable]] = {}
        self._history: list[Notification] = []
        self._subscriptions: dict[NotificationEvent, list[NotificationChannel]] = {}
        self._max_history = max_history
        self._pending: set[asyncio.Task] = set()

    def register_handler(
        self,
        channel: NotificationChannel,
        handler: Callable[[Notification], Any],
    ) -> None:
        self._handlers.setdefault(channel, []).append(handler)

    def subscribe(
        self,
        event: NotificationEvent,
        channels: list[NotificationChannel],
    ) -> None:
        self._subscriptions[event] = channels

    def subscribe_all(self, channels: list[NotificationChannel]) -> None:
        for event in NotificationEvent:
            self.subscribe(event, channels)

    def notify(
        self,
        event: NotificationEvent,
        title: str,
        message: str,
        data: Optional[dict] = None,
    ) -> list[Notification]:
        """Send notification to all subscribed channels for an event."""
        channels = self._subscriptions.get(event, [NotificationChannel.LOG])
        results = []

        for channel in channels:
            notification = Notification(
                event=event,
                title=title,
                message=message,
                data=data or {},
                channel=channel,
            )

            handlers = self._handlers.get(channel, [])
            if not handlers:
                self._default_log_handler(notification)
                notification.delivered = True
            else:
                for handler in handlers:
                    try:
                        outcome = handler(notification)
                    except Exception as e:
                        self._mark_failed(notification, e)
                        continue
                    if inspect.iscoroutine(outcome):
                        self._dispatch(notification, outcome)
                    else:
                        notification.delivered = True

            self._history.append(notification)
            results.append(notification)

        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

        return results

    def notify_labels_purchased(self, batch: dict) -> list[Notification]:
        """Summarize a batch label purchase; failures get their own event."""
        ok = batch.get("shipment_ids", [])
        failed = batch.get("failed_shipment_ids", [])
        results = []
        if ok:
            results += self.notify(
                event=NotificationEvent.LABEL_PURCHASED,
                title=f"Labels purchased: {len(ok)}",
                message=batch.get("message", ""),
                data={
                    "shipment_ids": ok,
                    "carrier_tracking_numbers": batch.get("carrier_tracking_numbers", {}),
                },
            )
        if failed:
            results += self.notify(
                event=NotificationEvent.LABEL_FAILED,
                title=f"Label purchase failed: {len(failed)}",
                message=", ".join(
                    f"#{sid}: {err}"
                    for sid, err in batch.get("shipment_errors", {}).items()
                ),
                data={"failed_shipment_ids": failed},
            )
        return results

    def notify_refund_requested(self, refund: dict) -> list[Notification]:
        refund_id = refund.get("id", "N/A")
        shipments = refund.get("shipment_ids", [])
        return self.notify(
            event=NotificationEvent.REFUND_REQUESTED,
            title=f"Refund request #{refund_id}",
            message=f"User {refund.get('user_id')} requested a refund for shipments "
                    f"{', '.join(str(s) for s in shipments)}",
            data=refund,
        )

    def notify_refund_processed(self, refund: dict) -> list[Notification]:
        refund_id = refund.get("id", "N/A")
        status = refund.get("status", "")
        event = (
            NotificationEvent.REFUND_APPROVED
            if status == "approved"
            else NotificationEvent.REFUND_REJECTED
        )
        amount = refund.get("processed_amount") or 0
        return self.notify(
            event=event,
            title=f"Refund #{refund_id} {status}",
            message=f"Refund #{refund_id} {status}, ${amount / 100:.2f} credited"
                    if status == "approved"
                    else f"Refund #{refund_id} {status}",
            data=refund,
        )

    def notify_billing_reminder(self, reminder: dict) -> list[Notification]:
        return self.notify(
            event=NotificationEvent.BILLING_REMINDER_SENT,
            title=f"Billing reminder to {reminder.get('user_email', 'N/A')}",
            message=f"{reminder.get('reminder_type', 'balance')} reminder, "
                    f"balance {reminder.get('formatted_balance', '')}",
            data=reminder,
        )

    def notify_user_approved(self, user: dict) -> list[Notification]:
        return self.notify(
            event=NotificationEvent.USER_APPROVED,
            title=f"User approved: {user.get('username', 'N/A')}",
            message=f"{user.get('email', '')} can now create shipments",
            data=user,
        )

    def get_history(
        self,
        event: Optional[NotificationEvent] = None,
        channel: Optional[NotificationChannel] = None,
        limit: int = 50,
    ) -> list[Notification]:
        items = self._history
        if event:
            items = [n for n in items if n.event == event]
        if channel:
            items = [n for n in items if n.channel == channel]
        return items[-limit:]

    def stats(self) -> dict:
        total = len(self._history)
        delivered = sum(1 for n in self._history if n.delivered)
        failed = sum(1 for n in self._history if n.error)
        by_event: dict[str, int] = {}
        by_channel: dict[str, int] = {}
        for n in self._history:
            by_event[n.event.value] = by_event.get(n.event.value, 0) + 1
            by_channel[n.channel.value] = by_channel.get(n.channel.value, 0) + 1
        return {
            "total": total,
            "delivered": delivered,
            "failed": failed,
            "by_event": by_event,
            "by_channel": by_channel,
        }

    def clear(self) -> None:
        self._history.clear()

    async def drain(self) -> None:
        """Wait for scheduled deliveries to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _dispatch(self, notification: Notification, send) -> None:
        """Run an async delivery, as a task when an event loop is running.

        The notification counts as delivered only once the send succeeds.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            try:
                asyncio.run(send)
            except Exception as e:
                self._mark_failed(notification, e)
            else:
                notification.delivered = True
            return
        task = loop.create_task(send)
        self._pending.add(task)
        task.add_done_callback(functools.partial(self._settle, notification))

    def _settle(self, notification: Notification, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            notification.error = "Delivery cancelled"
        elif task.exception() is not None:
            self._mark_failed(notification, task.exception())
        else:
            notification.delivered = True

    @staticmethod
    def _mark_failed(notification: Notification, exc: BaseException) -> None:
        notification.delivered = False
        notification.error = str(exc)
        logger.error("Notification failed: %s - %s", notification.channel.value, exc)

    @staticmethod
    def _default_log_handler(notification: Notification) -> None:
        logger.info("[%s] %s: %s", notification.event.value, notification.title, notification.message)


def create_webhook_handler(url: str, timeout: int = 10, transport: Optional[httpx.AsyncBaseTransport] = None):
    """Create a webhook notification handler.

    The handler returns a coroutine; ``NotificationService`` schedules it.
    """

    async def handler(notification: Notification) -> None:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            resp = await client.post(
                url,
                content=notification.to_json(),
                headers={"Content-Type": "application/json"},
            )
            resp.raise_for_status()

    return handler


def create_email_handler(mailer, to: str):
    """Create an email handler that mails each notification through ``mailer``."""

    async def handler(notification: Notification) -> None:
        await mailer.send(
            to=to,
            to_name="MoogShip Admin",
            subject=f"[MoogShip] {notification.title}",
            html=f"<p>{html.escape(notification.message)}</p>",
        )

    return handler


# Module-level singleton
notification_service = NotificationService()
