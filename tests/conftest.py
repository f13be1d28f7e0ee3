"""Shared fixtures: in-memory database, fake Discord guild and API client."""

import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("JWT_SECRET", "test-secret")

from typing import Dict, Iterable, List, Optional

import httpx
import pytest
import pytest_asyncio

from dansgaming.shared.config import Settings
from dansgaming.shared.database import (
    create_engine,
    create_session_factory,
    create_tables,
    get_db_session,
)
from dansgaming.web.api.app import api
from dansgaming.web.api.dependencies import (
    get_app_settings,
    get_discord_client,
    get_discord_oauth,
    get_member_cache,
    get_role_mapping,
    get_roster_locks,
)
from dansgaming.web.api.limiter import limiter
from dansgaming.web.discord import (
    DiscordAPIError,
    DiscordNotFoundError,
    GuildMember,
)
from dansgaming.web.member_cache import GuildMemberCache
from dansgaming.web.models import User
from dansgaming.web.roles import DEFAULT_RETIRED_ROLE_ID, DEFAULT_ROLE_IDS, Rank, RoleMapping
from dansgaming.web.roster import KeyedLocks, StaffRoster, fallback_staff_from_settings
from dansgaming.web.security import create_access_token

GUILD_ID = "guild-1"
FOUNDER_ROLE = DEFAULT_ROLE_IDS[Rank.FOUNDER]
MANAGEMENT_ROLE = DEFAULT_ROLE_IDS[Rank.MANAGEMENT]
ADMIN_ROLE = DEFAULT_ROLE_IDS[Rank.ADMIN]
RETIRED_ROLE = DEFAULT_RETIRED_ROLE_ID

limiter.enabled = False


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDiscordClient:
    """In-memory guild standing in for ``DiscordClient``.

    ``grant_role``/``revoke_role`` mutate member roles. Exceptions queued in
    ``failures`` under ``(operation, role_id)`` are raised once instead of
    performing the call; ``members_error`` is raised by member listing.
    """

    def __init__(self):
        self.members: Dict[str, dict] = {}
        self.fetch_members_calls = 0
        self.calls: List[tuple] = []
        self.failures: Dict[tuple, Exception] = {}
        self.members_error: Optional[Exception] = None
        self.roles = [
            {"id": GUILD_ID, "name": "@everyone", "color": 0, "managed": False},
            {"id": FOUNDER_ROLE, "name": "Founder", "color": 15844367, "managed": False},
            {"id": MANAGEMENT_ROLE, "name": "Management", "color": 3447003, "managed": False},
            {"id": ADMIN_ROLE, "name": "Admin", "color": 15158332, "managed": False},
            {"id": "bot-role", "name": "Bot", "color": 0, "managed": True},
        ]

    def add_member(
        self,
        user_id: str,
        username: str,
        roles: Iterable[str] = (),
        nick: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> None:
        self.members[user_id] = {
            "id": user_id,
            "username": username,
            "nick": nick,
            "avatar": avatar,
            "roles": set(roles),
        }

    def _member(self, user_id: str) -> GuildMember:
        data = self.members[user_id]
        return GuildMember(
            id=data["id"],
            username=data["username"],
            nick=data["nick"],
            avatar=data["avatar"],
            roles=tuple(sorted(data["roles"])),
        )

    def _maybe_fail(self, operation: str, role_id: Optional[str] = None) -> None:
        error = self.failures.pop((operation, role_id), None)
        if error is not None:
            raise error

    async def fetch_guild_members(self, guild_id: str) -> List[GuildMember]:
        self.fetch_members_calls += 1
        if self.members_error is not None:
            raise self.members_error
        return [self._member(user_id) for user_id in self.members]

    async def fetch_guild_member(self, guild_id: str, user_id: str) -> GuildMember:
        self._maybe_fail("fetch_member")
        if user_id not in self.members:
            raise DiscordNotFoundError(404, '{"message": "Unknown Member"}')
        return self._member(user_id)

    async def fetch_guild_roles(self, guild_id: str) -> List[dict]:
        return list(self.roles)

    async def fetch_guild_info(self, guild_id: str) -> dict:
        return {
            "id": guild_id,
            "name": "DansGaming",
            "icon": "abc123",
            "approximate_member_count": 1250,
            "approximate_presence_count": 310,
            "verification_level": 2,
            "premium_tier": 1,
            "premium_subscription_count": 4,
        }

    async def fetch_guild_channels(self, guild_id: str) -> List[dict]:
        return [{"id": "1", "type": 0}, {"id": "2", "type": 0}, {"id": "3", "type": 2}]

    async def fetch_audit_logs(self, guild_id: str, limit: int = 50) -> dict:
        return {"audit_log_entries": [], "users": []}

    async def grant_role(self, guild_id, user_id, role_id, reason=None) -> None:
        self.calls.append(("grant", user_id, role_id))
        self._maybe_fail("grant", role_id)
        if user_id not in self.members:
            raise DiscordNotFoundError(404, '{"message": "Unknown Member"}')
        self.members[user_id]["roles"].add(role_id)

    async def revoke_role(self, guild_id, user_id, role_id, reason=None) -> None:
        self.calls.append(("revoke", user_id, role_id))
        self._maybe_fail("revoke", role_id)
        if user_id not in self.members:
            raise DiscordNotFoundError(404, '{"message": "Unknown Member"}')
        self.members[user_id]["roles"].discard(role_id)


class FakeOAuth:
    def __init__(self, user: Optional[dict] = None, error: Optional[Exception] = None):
        self.user = user or {"id": "500", "username": "newstaff", "avatar": None}
        self.error = error

    def authorization_url(self, state=None):
        state = state or "state123"
        return f"https://discord.com/api/oauth2/authorize?client_id=cid&state={state}", state

    async def exchange_code(self, code: str) -> str:
        if self.error is not None:
            raise self.error
        return "user-access-token"

    async def fetch_current_user(self, access_token: str) -> dict:
        return dict(self.user)


def discord_error(status: int) -> DiscordAPIError:
    return DiscordAPIError(status, "failure")


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        environment="test",
        jwt_secret="test-secret",
        discord_guild_id=GUILD_ID,
        discord_bot_token="bot-token",
        discord_client_id="cid",
        discord_client_secret="secret",
        rate_limit_enabled=False,
    )


@pytest.fixture
def mapping():
    return RoleMapping()


@pytest_asyncio.fixture
async def engine():
    engine = create_engine("sqlite+aiosqlite:///:memory:")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(engine):
    factory = create_session_factory(engine)
    async with factory() as session:
        yield session


@pytest.fixture
def fake_discord():
    return FakeDiscordClient()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def member_cache(fake_discord, clock):
    return GuildMemberCache(fake_discord, GUILD_ID, ttl=300, clock=clock)


@pytest.fixture
def locks():
    return KeyedLocks()


@pytest.fixture
def roster(db_session, fake_discord, member_cache, mapping, locks, settings):
    return StaffRoster(
        db_session,
        client=fake_discord,
        cache=member_cache,
        mapping=mapping,
        guild_id=GUILD_ID,
        locks=locks,
        fallback=fallback_staff_from_settings(settings),
    )


@pytest.fixture
def fake_oauth():
    return FakeOAuth()


@pytest_asyncio.fixture
async def api_client(db_session, settings, mapping, fake_discord, member_cache, locks, fake_oauth):
    """HTTP client against the app with database and Discord replaced by fakes."""

    async def override_get_db_session():
        yield db_session

    api.dependency_overrides[get_db_session] = override_get_db_session
    api.dependency_overrides[get_app_settings] = lambda: settings
    api.dependency_overrides[get_role_mapping] = lambda: mapping
    api.dependency_overrides[get_discord_client] = lambda: fake_discord
    api.dependency_overrides[get_member_cache] = lambda: member_cache
    api.dependency_overrides[get_roster_locks] = lambda: locks
    api.dependency_overrides[get_discord_oauth] = lambda: fake_oauth

    transport = httpx.ASGITransport(app=api)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client

    api.dependency_overrides.clear()


@pytest_asyncio.fixture
async def make_user(db_session):
    async def _make_user(discord_id: Optional[str], username: str, role: str = "staff") -> User:
        user = User(
            discord_id=discord_id,
            username=username,
            email=f"{username}@discord.com",
            role=role,
        )
        db_session.add(user)
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _make_user


@pytest.fixture
def auth_headers(settings):
    def _auth_headers(user: User) -> Dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user, settings)}"}

    return _auth_headers
