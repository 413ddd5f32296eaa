"""
Tests for user storage, the login/refresh/logout flow and the user service.
"""

import asyncio
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import closing

import grpc
import pytest

from narwhal import errors
from narwhal.auth import TokenError, TokenPair, UserHandler, bind_identity
from narwhal.auth import messages as pb
from narwhal.auth.jwt_handler import identity_from_claims

from conftest import AbortError, FakeContext

PASSWORD = "correct-horse-battery"


def _identity_of(user):
    return identity_from_claims(user.user_id, user.username, user.email, user.roles)


@pytest.fixture
def alice(users):
    return users.create_user("alice", "alice@example.com", PASSWORD, ["admin"])


@pytest.fixture
def user_handler(users, tokens, rbac):
    return UserHandler(users, tokens, rbac)


class TestUserDatabase:
    def test_create_and_lookup(self, user_db):
        """Users are found by id, username and email."""
        user = user_db.create_user("bob", "bob@example.com", PASSWORD, ["user"])

        assert user_db.get_user_by_id(user.user_id).username == "bob"
        assert user_db.get_user_by_username("bob").email == "bob@example.com"
        assert user_db.get_user_by_email("bob@example.com").roles == ["user"]
        assert user.password_hash != PASSWORD

    def test_duplicate(self, user_db):
        """Usernames and emails are unique."""
        user_db.create_user("bob", "bob@example.com", PASSWORD, ["user"])

        with pytest.raises(errors.AppError) as exc:
            user_db.create_user("bob", "other@example.com", PASSWORD, ["user"])
        assert errors.is_conflict(exc.value)

    def test_password(self, user_db):
        """Only the right password verifies."""
        user = user_db.create_user("bob", "bob@example.com", PASSWORD, ["user"])

        assert user_db.verify_password(user, PASSWORD)
        assert not user_db.verify_password(user, "wrong-password")

    def test_roles(self, user_db):
        """Assigning a role twice is a no-op."""
        user = user_db.create_user("bob", "bob@example.com", PASSWORD, ["user"])

        assert user_db.assign_role(user.user_id, "admin")
        assert not user_db.assign_role(user.user_id, "admin")
        assert sorted(user_db.get_user_roles(user.user_id)) == ["admin", "user"]

    def test_first_user_only_once(self, user_db):
        """Only an empty store accepts a first user."""
        user_db.create_first_user("root", "root@example.com", PASSWORD, ["admin"])

        with pytest.raises(errors.AppError) as exc:
            user_db.create_first_user("eve", "eve@example.com", PASSWORD, ["admin"])
        assert errors.is_forbidden(exc.value)
        assert user_db.get_user_by_username("eve") is None
        assert user_db.count_users() == 1

    def test_delete(self, user_db):
        """Deleting a user removes it."""
        user = user_db.create_user("bob", "bob@example.com", PASSWORD, ["user"])

        assert user_db.delete_user(user.user_id)
        assert user_db.get_user_by_id(user.user_id) is None
        assert user_db.count_users() == 0


class TestUserManager:
    def test_login_by_username_and_email(self, users, tokens, alice):
        """Login accepts either identifier and mints a usable access token."""
        pair, user = users.login("alice", PASSWORD)
        identity = tokens.verify_access(pair.access_token)

        assert user.user_id == alice.user_id
        assert identity.subject == alice.user_id
        assert identity.has_role("admin")
        assert pair.token_type == "Bearer"
        assert pair.expires_in == 15 * 60

        pair, _ = users.login("alice@example.com", PASSWORD)
        assert pair.access_token

    def test_login_failures(self, users, alice):
        """Wrong passwords and unknown users look the same."""
        for username, password in (("alice", "nope-nope-nope"), ("nobody", PASSWORD)):
            with pytest.raises(errors.AppError) as exc:
                users.login(username, password)
            assert errors.is_unauthorized(exc.value)
            assert exc.value.message == "invalid credentials"

    def test_inactive_user(self, users, user_db, alice):
        """Disabled accounts cannot log in."""
        with closing(sqlite3.connect(user_db.db_path)) as conn:
            conn.execute("UPDATE users SET is_active = 0 WHERE user_id = ?", (alice.user_id,))
            conn.commit()

        with pytest.raises(errors.AppError) as exc:
            users.login("alice", PASSWORD)
        assert errors.is_forbidden(exc.value)

    def test_refresh_rotates(self, users, alice):
        """A refresh token can be used once."""
        pair, _ = users.login("alice", PASSWORD)

        new_pair, user = users.refresh(pair.refresh_token)
        assert user.username == "alice"
        assert new_pair.refresh_token != pair.refresh_token

        with pytest.raises(errors.AppError) as exc:
            users.refresh(pair.refresh_token)
        assert exc.value.message == "invalid refresh token"

    def test_concurrent_refresh_single_winner(self, users, user_db, alice, monkeypatch):
        """Two refreshes racing on one token yield one new pair."""
        pair, _ = users.login("alice", PASSWORD)
        barrier = threading.Barrier(2, timeout=5)
        lookup = user_db.get_session_by_jti

        def lookup_together(jti):
            session = lookup(jti)
            barrier.wait()
            return session

        monkeypatch.setattr(user_db, "get_session_by_jti", lookup_together)

        def attempt(_):
            try:
                return users.refresh(pair.refresh_token)[0]
            except errors.AppError as e:
                return e

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(attempt, range(2)))

        assert sum(isinstance(r, TokenPair) for r in results) == 1
        failures = [r for r in results if isinstance(r, errors.AppError)]
        assert len(failures) == 1
        assert failures[0].message == "invalid refresh token"

    def test_refresh_rejects_access_token(self, users, alice):
        """Access tokens are not refresh tokens."""
        pair, _ = users.login("alice", PASSWORD)

        with pytest.raises(TokenError):
            users.refresh(pair.access_token)

    def test_logout(self, users, alice):
        """Logout revokes the session and is idempotent."""
        pair, _ = users.login("alice", PASSWORD)

        assert users.logout(alice.user_id, pair.refresh_token) is True
        assert users.logout(alice.user_id, pair.refresh_token) is False
        with pytest.raises(errors.AppError):
            users.refresh(pair.refresh_token)

    @pytest.mark.parametrize("username, email, password, roles", [
        ("al", "al@example.com", PASSWORD, None),
        ("has space", "x@example.com", PASSWORD, None),
        ("carol", "not-an-email", PASSWORD, None),
        ("carol", "carol@example.com", "short", None),
        ("carol", "carol@example.com", PASSWORD, ["superuser"]),
    ])
    def test_create_validation(self, users, username, email, password, roles):
        """Invalid input is a bad request."""
        with pytest.raises(errors.AppError) as exc:
            users.create_user(username, email, password, roles)
        assert errors.is_bad_request(exc.value)

    def test_first_user(self, users):
        """The first user is created once; later attempts are forbidden."""
        assert users.create_first_user("root", "root@example.com", PASSWORD, ["admin"]).roles == ["admin"]

        with pytest.raises(errors.AppError) as exc:
            users.create_first_user("eve", "eve@example.com", PASSWORD, ["admin"])
        assert errors.is_forbidden(exc.value)

    def test_default_role(self, users):
        """New users get the user role."""
        assert users.create_user("carol", "carol@example.com", PASSWORD).roles == ["user"]

    def test_assign_role(self, users, alice):
        """Assigned roles show up on the user."""
        bob = users.create_user("bob", "bob@example.com", PASSWORD)

        assert "guest" in users.assign_role(bob.user_id, "guest").roles
        with pytest.raises(errors.AppError):
            users.assign_role(bob.user_id, "superuser")
        with pytest.raises(errors.AppError) as exc:
            users.assign_role("missing", "guest")
        assert errors.is_not_found(exc.value)


class TestUserHandler:
    @pytest.mark.asyncio
    async def test_login(self, user_handler, alice):
        """Login returns tokens and the user profile."""
        response = await user_handler.Login(pb.LoginRequest(username="alice", password=PASSWORD), FakeContext())

        assert response.access_token
        assert response.user.username == "alice"
        assert response.user.roles == ["admin"]

    @pytest.mark.asyncio
    async def test_login_rejected(self, user_handler, alice):
        """Bad credentials are UNAUTHENTICATED."""
        context = FakeContext()
        with pytest.raises(AbortError):
            await user_handler.Login(pb.LoginRequest(username="alice", password="wrong-pass"), context)
        assert context.aborted == (grpc.StatusCode.UNAUTHENTICATED, "invalid credentials")

    @pytest.mark.asyncio
    async def test_bootstrap_first_user(self, user_handler):
        """The first user can be created without credentials."""
        response = await user_handler.CreateUser(pb.CreateUserRequest(
            username="root", email="root@example.com", password=PASSWORD, roles=["admin"],
        ), FakeContext())

        assert response.roles == ["admin"]

    @pytest.mark.asyncio
    async def test_concurrent_bootstrap(self, user_handler, user_db):
        """Racing unauthenticated calls on an empty store create one user."""
        requests = [
            pb.CreateUserRequest(username=name, email=f"{name}@example.com", password=PASSWORD, roles=["admin"])
            for name in ("first", "second")
        ]
        contexts = [FakeContext(), FakeContext()]

        results = await asyncio.gather(
            *(user_handler.CreateUser(r, c) for r, c in zip(requests, contexts)),
            return_exceptions=True,
        )

        created = [r for r in results if isinstance(r, pb.UserInfo)]
        assert len(created) == 1
        assert sum(isinstance(r, AbortError) for r in results) == 1
        assert [c.aborted[0] for c in contexts if c.aborted] == [grpc.StatusCode.UNAUTHENTICATED]
        assert user_db.count_users() == 1

    @pytest.mark.asyncio
    async def test_create_user_needs_admin(self, user_handler, users, tokens, alice):
        """Once users exist, creating one takes an administrator token."""
        request = pb.CreateUserRequest(username="bob", email="bob@example.com", password=PASSWORD)

        context = FakeContext()
        with pytest.raises(AbortError):
            await user_handler.CreateUser(request, context)
        assert context.aborted[0] == grpc.StatusCode.UNAUTHENTICATED

        carol = users.create_user("carol", "carol@example.com", PASSWORD)
        pair, _ = users.login("carol", PASSWORD)
        context = FakeContext(metadata=(("authorization", f"Bearer {pair.access_token}"),))
        with pytest.raises(AbortError):
            await user_handler.CreateUser(request, context)
        assert context.aborted[0] == grpc.StatusCode.PERMISSION_DENIED
        assert carol.roles == ["user"]

        pair, _ = users.login("alice", PASSWORD)
        context = FakeContext(metadata=(("authorization", f"Bearer {pair.access_token}"),))
        response = await user_handler.CreateUser(request, context)
        assert response.username == "bob"

    @pytest.mark.asyncio
    async def test_current_user(self, user_handler, alice):
        """GetCurrentUser reads the bound identity."""
        with bind_identity(_identity_of(alice)):
            response = await user_handler.GetCurrentUser(pb.Empty(), FakeContext())

        assert response.id == alice.user_id

    @pytest.mark.asyncio
    async def test_current_user_unauthenticated(self, user_handler):
        """Without identity the call is refused."""
        context = FakeContext()
        with pytest.raises(AbortError):
            await user_handler.GetCurrentUser(pb.Empty(), context)
        assert context.aborted[0] == grpc.StatusCode.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_refresh_and_logout(self, user_handler, alice):
        """Refresh rotates tokens; logout ends the session."""
        login = await user_handler.Login(pb.LoginRequest(username="alice", password=PASSWORD), FakeContext())

        refreshed = await user_handler.RefreshToken(
            pb.RefreshTokenRequest(refresh_token=login.refresh_token), FakeContext()
        )
        assert refreshed.refresh_token != login.refresh_token

        with bind_identity(_identity_of(alice)):
            await user_handler.Logout(pb.LogoutRequest(refresh_token=refreshed.refresh_token), FakeContext())

        context = FakeContext()
        with pytest.raises(AbortError):
            await user_handler.RefreshToken(pb.RefreshTokenRequest(refresh_token=refreshed.refresh_token), context)
        assert context.aborted[0] == grpc.StatusCode.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_delete_self_refused(self, user_handler, alice):
        """Users cannot delete themselves."""
        context = FakeContext()
        with bind_identity(_identity_of(alice)):
            with pytest.raises(AbortError):
                await user_handler.DeleteUser(pb.DeleteUserRequest(id=alice.user_id), context)
        assert context.aborted[0] == grpc.StatusCode.INVALID_ARGUMENT
