"""User registration and admin approval API."""

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.models import User
from app.schemas import UserApprove, UserOut, UserRegister
from app.services.auth import hash_password, require_admin
from app.services.notification import notification_service

router = APIRouter(prefix="/users", tags=["users"])


@router.post("/register", response_model=UserOut, status_code=201)
async def register(data: UserRegister, db: AsyncSession = Depends(get_db)):
    existing = await db.execute(
        select(User).where(or_(User.email == data.email, User.username == data.username))
    )
    if existing.scalar_one_or_none():
        raise HTTPException(409, "Username or email already registered")

    user = User(
        username=data.username,
        email=data.email,
        name=data.name,
        company_name=data.company_name,
        password_hash=hash_password(data.password),
        role="user",
        is_approved=False,
        balance=0,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


@router.get("/", response_model=list[UserOut])
async def list_users(
    pending: bool = False,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    _admin: dict = Depends(require_admin),
):
    stmt = select(User)
    if pending:
        stmt = stmt.where(User.is_approved.is_(False))
    stmt = stmt.order_by(User.created_at.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return result.scalars().all()


@router.post("/{user_id}/approve", response_model=UserOut)
async def approve_user(
    user_id: int,
    data: UserApprove,
    db: AsyncSession = Depends(get_db),
    _admin: dict = Depends(require_admin),
):
    user = await db.get(User, user_id)
    if not user:
        raise HTTPException(404, "User not found")
    if user.is_approved:
        raise HTTPException(400, "User is already approved")

    user.is_approved = True
    if data.minimum_balance is not None:
        user.minimum_balance = data.minimum_balance
    await db.commit()
    await db.refresh(user)

    notification_service.notify_user_approved({
        "id": user.id,
        "username": user.username,
        "email": user.email,
    })
    return user
