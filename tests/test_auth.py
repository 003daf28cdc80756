import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession
from app.auth import security
from app.models.user import User
from app.models.enums import Role
from app.config import settings

@pytest.mark.asyncio
async def test_login_success(client: AsyncClient, db_session: AsyncSession):
    # Create a user
    email = "test@example.com"
    password = "password123"
    hashed_password = security.get_password_hash(password)
    user = User(email=email, hashed_password=hashed_password, role=Role.USER)
    db_session.add(user)
    await db_session.commit()

    response = await client.post(
        f"{settings.API_V1_STR}/auth/login",
        json={"email": email, "password": password}
    )
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert "access_token" in data["data"]
    assert "refresh_token" in data["data"]
    assert data["data"]["token_type"] == "bearer"

@pytest.mark.asyncio
async def test_login_invalid_credentials(client: AsyncClient, db_session: AsyncSession):
    response = await client.post(
        f"{settings.API_V1_STR}/auth/login",
        json={"email": "wrong@example.com", "password": "wrongpassword"}
    )
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_login_inactive_user(client: AsyncClient, make_user):
    await make_user("inactive@example.com", is_active=False)
    response = await client.post(
        f"{settings.API_V1_STR}/auth/login",
        json={"email": "inactive@example.com", "password": "password123"}
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_login_validation_error_carries_request_id(client: AsyncClient):
    response = await client.post(
        f"{settings.API_V1_STR}/auth/login",
        json={"email": "not-an-email", "password": "x"},
        headers={"X-Request-ID": "req-123"},
    )
    assert response.status_code == 422
    assert response.json()["request_id"] == "req-123"
    assert response.headers["x-request-id"] == "req-123"


@pytest.mark.asyncio
async def test_refresh_token_rotation_revokes_old_token(client: AsyncClient, make_user):
    await make_user("rotation@example.com")

    login_response = await client.post(
        f"{settings.API_V1_STR}/auth/login",
        json={"email": "rotation@example.com", "password": "password123"}
    )
    assert login_response.status_code == 200
    first_refresh = login_response.json()["data"]["refresh_token"]

    rotate_response = await client.post(
        f"{settings.API_V1_STR}/auth/refresh",
        headers={"Authorization": f"Bearer {first_refresh}"}
    )
    assert rotate_response.status_code == 200
    second_refresh = rotate_response.json()["data"]["refresh_token"]
    assert second_refresh != first_refresh

    reuse_old_response = await client.post(
        f"{settings.API_V1_STR}/auth/refresh",
        headers={"Authorization": f"Bearer {first_refresh}"}
    )
    assert reuse_old_response.status_code == 401


@pytest.mark.asyncio
async def test_access_token_cannot_refresh(client: AsyncClient, make_user, login):
    await make_user("access@example.com")
    headers = await login("access@example.com")
    response = await client.post(f"{settings.API_V1_STR}/auth/refresh", headers=headers)
    assert response.status_code == 401

@pytest.mark.asyncio
async def test_refresh_token_invalid(client: AsyncClient):
    response = await client.post(
        f"{settings.API_V1_STR}/auth/refresh",
        headers={"Authorization": "Bearer invalid_token"}
    )
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_me_returns_profile(client: AsyncClient, make_user, login):
    user = await make_user("me@example.com", role=Role.ADMIN)
    headers = await login("me@example.com")

    response = await client.get(f"{settings.API_V1_STR}/auth/me", headers=headers)
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["id"] == user.id
    assert data["email"] == "me@example.com"
    assert data["role"] == "ADMIN"


@pytest.mark.asyncio
async def test_me_requires_token(client: AsyncClient):
    response = await client.get(f"{settings.API_V1_STR}/auth/me")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_logout_revokes_refresh_tokens(client: AsyncClient, make_user):
    await make_user("logout@example.com")
    login_response = await client.post(
        f"{settings.API_V1_STR}/auth/login",
        json={"email": "logout@example.com", "password": "password123"}
    )
    tokens = login_response.json()["data"]

    response = await client.post(
        f"{settings.API_V1_STR}/auth/logout",
        headers={"Authorization": f"Bearer {tokens['access_token']}"}
    )
    assert response.status_code == 200

    reuse = await client.post(
        f"{settings.API_V1_STR}/auth/refresh",
        headers={"Authorization": f"Bearer {tokens['refresh_token']}"}
    )
    assert reuse.status_code == 401
