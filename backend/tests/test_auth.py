"""
Ops Desk - Authentication Tests
===============================

Login, signup, current user and founder-only user management.
"""

from datetime import timedelta
from uuid import UUID, uuid4

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from opsdesk.api.deps import create_access_token
from opsdesk.core.events import EventType
from opsdesk.core.models import User, UserRole
from tests.conftest import TEST_PASSWORD, RecordingSubscriber, headers_for, make_user


# ==========================================================================
# Login Tests
# ==========================================================================

class TestLogin:
    """Tests for the login endpoint."""

    async def test_login_success(self, client: AsyncClient, founder: User):
        """Valid credentials return a bearer token."""
        response = await client.post(
            "/api/v1/auth/login",
            json={"username": "founder", "password": TEST_PASSWORD},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["token_type"] == "bearer"
        assert data["access_token"]
        assert data["expires_in"] > 0

    async def test_login_is_case_insensitive_on_username(self, client: AsyncClient, founder: User):
        response = await client.post(
            "/api/v1/auth/login",
            json={"username": "FOUNDER", "password": TEST_PASSWORD},
        )
        assert response.status_code == 200

    async def test_login_wrong_password(self, client: AsyncClient, founder: User):
        response = await client.post(
            "/api/v1/auth/login",
            json={"username": "founder", "password": "WrongPass123!"},
        )

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid credentials"

    async def test_login_unknown_user(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/auth/login",
            json={"username": "nobody", "password": TEST_PASSWORD},
        )
        assert response.status_code == 401

    async def test_login_inactive_user(self, client: AsyncClient, db_session: AsyncSession):
        await make_user(db_session, UserRole.SALES_LEAD, username="gone", is_active=False)

        response = await client.post(
            "/api/v1/auth/login",
            json={"username": "gone", "password": TEST_PASSWORD},
        )
        assert response.status_code == 401


# ==========================================================================
# Current User Tests
# ==========================================================================

class TestCurrentUser:
    """Tests for /auth/me."""

    async def test_me(self, client: AsyncClient, founder: User, founder_headers: dict):
        response = await client.get("/api/v1/auth/me", headers=founder_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["username"] == "founder"
        assert data["role"] == "FOUNDER"
        assert "password_hash" not in data

    async def test_me_without_token(self, client: AsyncClient):
        response = await client.get("/api/v1/auth/me")
        assert response.status_code == 401

    async def test_me_with_expired_token(self, client: AsyncClient, founder: User):
        token = create_access_token(founder.id, expires_delta=timedelta(minutes=-1))

        response = await client.get(
            "/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"}
        )
        assert response.status_code == 401


# ==========================================================================
# User Management Tests
# ==========================================================================

class TestUserManagement:
    """Founder-only account administration."""

    async def test_founder_creates_user(
        self,
        client: AsyncClient,
        founder_headers: dict,
        recorder: RecordingSubscriber,
    ):
        response = await client.post(
            "/api/v1/auth/users",
            headers=founder_headers,
            json={
                "username": "NewDesigner",
                "display_name": "New Designer",
                "password": "DesignPass123!",
                "role": "CREATIVE_SPECIALIST",
            },
        )

        assert response.status_code == 201
        data = response.json()
        assert data["username"] == "newdesigner"
        assert data["role"] == "CREATIVE_SPECIALIST"
        assert recorder.types == [EventType.USER_CREATED]

    async def test_duplicate_username(self, client: AsyncClient, founder_headers: dict):
        response = await client.post(
            "/api/v1/auth/users",
            headers=founder_headers,
            json={
                "username": "founder",
                "display_name": "Copy",
                "password": "CopyPass123!",
            },
        )
        assert response.status_code == 409

    async def test_non_founder_cannot_create_users(
        self, client: AsyncClient, lead_headers: dict
    ):
        response = await client.post(
            "/api/v1/auth/users",
            headers=lead_headers,
            json={
                "username": "sneaky",
                "display_name": "Sneaky",
                "password": "SneakyPass123!",
            },
        )

        assert response.status_code == 403
        assert response.json()["detail"] == "Insufficient permissions"

    async def test_founder_lists_users(
        self, client: AsyncClient, founder_headers: dict, sales_lead: User
    ):
        response = await client.get("/api/v1/auth/users", headers=founder_headers)

        assert response.status_code == 200
        usernames = {u["username"] for u in response.json()}
        assert {"founder", "sales"} <= usernames

    async def test_founder_changes_role(
        self, client: AsyncClient, founder_headers: dict, sales_lead: User
    ):
        response = await client.patch(
            f"/api/v1/auth/users/{sales_lead.id}",
            headers=founder_headers,
            json={"role": "DELIVERY_LEAD"},
        )

        assert response.status_code == 200
        assert response.json()["role"] == "DELIVERY_LEAD"

    async def test_founder_cannot_deactivate_self(
        self, client: AsyncClient, founder: User, founder_headers: dict
    ):
        response = await client.patch(
            f"/api/v1/auth/users/{founder.id}",
            headers=founder_headers,
            json={"is_active": False},
        )
        assert response.status_code == 400

    async def test_deactivated_user_token_rejected(
        self, client: AsyncClient, db_session: AsyncSession, founder_headers: dict
    ):
        user = await make_user(db_session, UserRole.AI_OPERATOR)
        await client.patch(
            f"/api/v1/auth/users/{user.id}",
            headers=founder_headers,
            json={"is_active": False},
        )

        response = await client.get("/api/v1/auth/me", headers=headers_for(user))
        assert response.status_code == 401


# ==========================================================================
# Signup Tests
# ==========================================================================

def signup_body(**overrides) -> dict:
    body = {
        "username": "new.designer",
        "display_name": "New Designer",
        "password": "DesignPass123!",
        "role": "CREATIVE_SPECIALIST",
    }
    body.update(overrides)
    return body


class TestSignup:
    """Self-service signup and founder approval."""

    async def test_signup_creates_inactive_account(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        recorder: RecordingSubscriber,
    ):
        response = await client.post("/api/v1/auth/signup", json=signup_body())

        assert response.status_code == 201
        data = response.json()
        assert data["username"] == "new.designer"
        assert data["message"] == "Account created. Awaiting admin approval."

        user = await db_session.get(User, UUID(data["id"]))
        assert user.is_active is False
        assert user.role == UserRole.CREATIVE_SPECIALIST

        assert recorder.types == [EventType.USER_CREATED]
        assert recorder.events[0].data["pending"] is True

    async def test_pending_account_cannot_log_in(self, client: AsyncClient):
        await client.post("/api/v1/auth/signup", json=signup_body())

        response = await client.post(
            "/api/v1/auth/login",
            json={"username": "new.designer", "password": "DesignPass123!"},
        )
        assert response.status_code == 401

    @pytest.mark.parametrize(
        "overrides",
        [
            {"username": "ab"},
            {"username": "Upper.Case"},
            {"username": "has space"},
            {"username": "x" * 31},
            {"password": "short"},
            {"role": "OVERLORD"},
        ],
    )
    async def test_signup_validation(self, client: AsyncClient, overrides: dict):
        response = await client.post("/api/v1/auth/signup", json=signup_body(**overrides))
        assert response.status_code == 422

    async def test_signup_username_taken(self, client: AsyncClient, founder: User):
        response = await client.post(
            "/api/v1/auth/signup", json=signup_body(username="founder")
        )

        assert response.status_code == 409
        assert response.json()["detail"] == "Username already taken"

    async def test_founder_lists_pending(
        self, client: AsyncClient, founder_headers: dict, sales_lead: User
    ):
        await client.post("/api/v1/auth/signup", json=signup_body())

        response = await client.get("/api/v1/auth/users/pending", headers=founder_headers)

        assert response.status_code == 200
        assert [u["username"] for u in response.json()] == ["new.designer"]

    async def test_non_founder_cannot_list_pending(self, client: AsyncClient, lead_headers: dict):
        response = await client.get("/api/v1/auth/users/pending", headers=lead_headers)
        assert response.status_code == 403

    async def test_founder_approves_with_role_override(
        self,
        client: AsyncClient,
        founder_headers: dict,
        recorder: RecordingSubscriber,
    ):
        created = await client.post("/api/v1/auth/signup", json=signup_body())
        user_id = created.json()["id"]

        response = await client.post(
            f"/api/v1/auth/users/{user_id}/approve",
            headers=founder_headers,
            json={"role": "DELIVERY_LEAD"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["is_active"] is True
        assert data["role"] == "DELIVERY_LEAD"
        assert recorder.types == [EventType.USER_CREATED, EventType.USER_UPDATED]

        login = await client.post(
            "/api/v1/auth/login",
            json={"username": "new.designer", "password": "DesignPass123!"},
        )
        assert login.status_code == 200

    async def test_approving_active_user_conflicts(
        self, client: AsyncClient, founder_headers: dict, sales_lead: User
    ):
        response = await client.post(
            f"/api/v1/auth/users/{sales_lead.id}/approve", headers=founder_headers, json={}
        )

        assert response.status_code == 409
        assert response.json()["detail"] == "User is already active"

    async def test_approve_unknown_user(self, client: AsyncClient, founder_headers: dict):
        response = await client.post(
            f"/api/v1/auth/users/{uuid4()}/approve", headers=founder_headers, json={}
        )
        assert response.status_code == 404

    async def test_non_founder_cannot_approve(
        self, client: AsyncClient, lead_headers: dict
    ):
        created = await client.post("/api/v1/auth/signup", json=signup_body())

        response = await client.post(
            f"/api/v1/auth/users/{created.json()['id']}/approve", headers=lead_headers, json={}
        )
        assert response.status_code == 403

    async def test_founder_rejects_signup(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        founder_headers: dict,
        recorder: RecordingSubscriber,
    ):
        created = await client.post("/api/v1/auth/signup", json=signup_body())
        user_id = UUID(created.json()["id"])

        response = await client.post(
            f"/api/v1/auth/users/{user_id}/reject", headers=founder_headers
        )

        assert response.status_code == 204
        assert await db_session.get(User, user_id) is None
        assert recorder.types[-1] == EventType.USER_REMOVED
