from typing import Annotated
from datetime import timedelta, datetime, timezone
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
from jose import jwt, JWTError

from app.config import settings
from app.database import get_db
from app.auth import schemas, security, dependencies
from app.models.user import User
from app.models.auth import RefreshToken
from app.core.responses import StandardResponse

router = APIRouter()


def _to_utc_datetime(value: int | float | datetime) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.fromtimestamp(value, tz=timezone.utc)


async def _persist_refresh_token(db: AsyncSession, user_id: int, refresh_token: str):
    payload = jwt.decode(refresh_token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    jti = payload.get("jti")
    exp = payload.get("exp")
    if not jti or exp is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid refresh token payload")

    db.add(
        RefreshToken(
            user_id=user_id,
            jti=str(jti),
            token_hash=security.hash_token(refresh_token),
            expires_at=_to_utc_datetime(exp),
        )
    )


def _credentials_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


async def _issue_tokens(db: AsyncSession, user: User) -> schemas.Token:
    access_token = security.create_access_token(
        subject=user.email, expires_delta=timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    refresh_token = security.create_refresh_token(subject=user.email)
    await _persist_refresh_token(db, user.id, refresh_token)
    await db.commit()
    return schemas.Token(access_token=access_token, refresh_token=refresh_token, token_type="bearer")


@router.post("/login", response_model=StandardResponse[schemas.Token])
async def login(
    login_data: schemas.LoginRequest,
    db: Annotated[AsyncSession, Depends(get_db)]
):
    user = await dependencies.get_user_by_email(db, login_data.email)

    if not user or not security.verify_password(login_data.password, user.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not user.is_active:
        raise HTTPException(status_code=400, detail="Inactive user")

    return StandardResponse(data=await _issue_tokens(db, user), message="Login Successful")

@router.post("/refresh", response_model=StandardResponse[schemas.Token])
async def refresh_token(
    token: Annotated[str, Depends(dependencies.oauth2_scheme)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    credentials_exception = _credentials_exception()

    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        username = payload.get("sub")
        token_type = payload.get("type")
        jti = payload.get("jti")
        if username is None or token_type != "refresh" or jti is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception

    user = await dependencies.get_user_by_email(db, username)
    if user is None:
        raise credentials_exception

    refresh_stmt = select(RefreshToken).where(
        RefreshToken.user_id == user.id,
        RefreshToken.jti == str(jti),
        RefreshToken.revoked_at.is_(None)
    )
    token_record = (await db.execute(refresh_stmt)).scalar_one_or_none()
    if token_record is None or token_record.token_hash != security.hash_token(token):
        raise credentials_exception

    now = datetime.now(timezone.utc)
    if _to_utc_datetime(token_record.expires_at) <= now:
        raise credentials_exception

    token_record.revoked_at = now
    return StandardResponse(data=await _issue_tokens(db, user), message="Token Refreshed")

@router.get("/me", response_model=StandardResponse[schemas.UserResponse])
async def read_users_me(
    current_user: Annotated[User, Depends(dependencies.get_current_active_user)],
):
    return StandardResponse(data=schemas.UserResponse.model_validate(current_user))


@router.post("/logout", response_model=StandardResponse)
async def logout(
    current_user: Annotated[User, Depends(dependencies.get_current_active_user)],
    db: Annotated[AsyncSession, Depends(get_db)]
):
    """Revoke every outstanding refresh token of the caller."""
    await db.execute(
        update(RefreshToken)
        .where(RefreshToken.user_id == current_user.id, RefreshToken.revoked_at.is_(None))
        .values(revoked_at=datetime.now(timezone.utc))
    )
    await db.commit()
    return StandardResponse(message="Logged out")
