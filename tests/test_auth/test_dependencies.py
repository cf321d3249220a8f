"""Tests for auth dependencies — get_current_user edge cases."""

from datetime import timedelta

from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from subsync.auth.jwt import create_access_token
from subsync.models.user import User

ME_URL = "/api/v1/billing/entitlement"


class TestGetCurrentUser:
    """Test get_current_user via an authenticated billing endpoint."""

    async def test_expired_token_rejected(self, client: AsyncClient, test_user: User):
        token = create_access_token({"sub": test_user.id}, expires_delta=timedelta(seconds=-1))
        response = await client.get(ME_URL, headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    async def test_invalid_token_format(self, client: AsyncClient):
        response = await client.get(ME_URL, headers={"Authorization": "Bearer not.a.valid.jwt"})
        assert response.status_code == 401

    async def test_missing_sub_rejected(self, client: AsyncClient):
        token = create_access_token({"email": "nobody@test.com"})
        response = await client.get(ME_URL, headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    async def test_unknown_user_rejected(self, client: AsyncClient):
        """Tokens for users the service has never seen are refused."""
        token = create_access_token({"sub": "user_not_synced"})
        response = await client.get(ME_URL, headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    async def test_inactive_user_rejected(self, client: AsyncClient, db_session: AsyncSession):
        user = User(id="user_banned", email="banned@test.com", is_active=False)
        db_session.add(user)
        await db_session.flush()

        token = create_access_token({"sub": user.id})
        response = await client.get(ME_URL, headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 403

    async def test_valid_token_accepted(self, client: AsyncClient, auth_headers: dict):
        response = await client.get(ME_URL, headers=auth_headers)
        assert response.status_code == 200
