"""MoogShip v1.0: FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import select

from app.config import get_settings
from app.database import engine, Base, async_session
from app.api import auth_routes, users, shipments, aramex, tariffs
from app.api import refunds, billing_reminders, notifications
from app.middleware.rate_limit import RateLimiter, RateLimitMiddleware
from app.models import User
from app.services.auth import hash_password
from app.services.email import SendGridMailer
from app.services.notification import (
    NotificationChannel,
    create_email_handler,
    create_webhook_handler,
    notification_service,
)

VERSION = "1.0.0"

settings = get_settings()
logger = logging.getLogger("app")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def configure_notifications() -> None:
    channels = [NotificationChannel.LOG]
    if settings.notification_webhook_url:
        notification_service.register_handler(
            NotificationChannel.WEBHOOK,
            create_webhook_handler(settings.notification_webhook_url),
        )
        channels.append(NotificationChannel.WEBHOOK)
    if settings.notification_email and settings.sendgrid_api_key:
        notification_service.register_handler(
            NotificationChannel.EMAIL,
            create_email_handler(SendGridMailer(), settings.notification_email),
        )
        channels.append(NotificationChannel.EMAIL)
    notification_service.subscribe_all(channels)


async def seed_admin() -> None:
    """Create the configured admin account if it does not exist yet."""
    async with async_session() as db:
        result = await db.execute(select(User).where(User.email == settings.admin_email))
        if result.scalar_one_or_none():
            return
        db.add(User(
            username="admin",
            name="Administrator",
            email=settings.admin_email,
            password_hash=hash_password(settings.admin_password),
            role="admin",
            is_approved=True,
            balance=0,
        ))
        await db.commit()
        logger.info("Seeded admin account %s", settings.admin_email)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create tables on startup (use Alembic in production)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await seed_admin()
    yield
    await notification_service.drain()
    await engine.dispose()


configure_logging(settings.log_level)
configure_notifications()

app = FastAPI(
    title=settings.app_name,
    version=VERSION,
    description="Shipping back office: Aramex rates and labels, HTS tariff "
                "lookup, refund requests and billing reminders",
    lifespan=lifespan,
)

rate_limiter = RateLimiter(settings.rate_limit_per_minute, settings.rate_limit_burst)
app.add_middleware(
    RateLimitMiddleware, limiter=rate_limiter, trust_proxy=settings.rate_limit_trust_proxy,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(auth_routes.router, prefix="/api/v1")
app.include_router(users.router, prefix="/api/v1")
app.include_router(shipments.router, prefix="/api/v1")
app.include_router(aramex.router, prefix="/api/v1")
app.include_router(tariffs.router, prefix="/api/v1")
app.include_router(refunds.router, prefix="/api/v1")
app.include_router(billing_reminders.router, prefix="/api/v1")
app.include_router(notifications.router, prefix="/api/v1")


@app.get("/health")
async def health():
    return {"status": "ok", "service": settings.app_name, "version": VERSION}
