"""Tests for the Discord server statistics endpoints."""

import pytest
import pytest_asyncio

from dansgaming.web.api.app import api
from dansgaming.web.api.dependencies import get_discord_client
from dansgaming.web.api.routers.discord_stats import describe_audit_entry
from dansgaming.web.discord import snowflake_time


@pytest_asyncio.fixture
async def headers(make_user, auth_headers):
    return auth_headers(await make_user("100", "bigdan"))


# Snowflakes in increasing creation order
OLDER = "1100000000000000000"
NEWER = "1200000000000000000"


class TestDescribeAuditEntry:
    def test_ban_with_reason(self):
        users = {"1": {"id": "1", "username": "mod"}, "2": {"id": "2", "username": "spammer"}}
        entry = {"id": OLDER, "action_type": 22, "user_id": "1", "target_id": "2", "reason": "Spam"}

        activity = describe_audit_entry(entry, users)

        assert activity["details"] == "Banned spammer - Spam"
        assert activity["moderator"] == "mod"
        assert activity["timestamp"] == snowflake_time(OLDER).isoformat()

    def test_unknown_action_and_user(self):
        activity = describe_audit_entry({"id": OLDER, "action_type": 999, "user_id": "9"}, {})

        assert activity["details"] == "Action type 999 performed"
        assert activity["user"] == "Unknown User"


class TestServerStats:
    @pytest.mark.asyncio
    async def test_server_stats(self, api_client, headers):
        response = await api_client.get("/api/discord-stats/server-stats", headers=headers)

        assert response.status_code == 200
        assert response.json() == {
            "totalMembers": 1250,
            "onlineMembers": 310,
            "activeChannels": 2,
            "totalRoles": 3,
            "serverName": "DansGaming",
            "serverIcon": "https://cdn.discordapp.com/icons/guild-1/abc123.png",
            "verificationLevel": 2,
            "boostLevel": 1,
            "boostCount": 4,
        }

    @pytest.mark.asyncio
    async def test_unconfigured_discord(self, api_client, headers):
        api.dependency_overrides[get_discord_client] = lambda: None

        response = await api_client.get("/api/discord-stats/server-stats", headers=headers)

        assert response.status_code == 500
        body = response.json()
        assert body["error"] == "Discord configuration missing"
        assert body["missing"] == ["DISCORD_BOT_TOKEN"]


class TestRecentActivity:
    @pytest.mark.asyncio
    async def test_newest_first_without_duplicates(self, api_client, headers, fake_discord):
        audit_log = {
            "users": [{"id": "1", "username": "mod"}],
            "audit_log_entries": [
                {"id": OLDER, "action_type": 30, "user_id": "1"},
                {"id": NEWER, "action_type": 72, "user_id": "1"},
                {"id": OLDER, "action_type": 30, "user_id": "1"},
            ],
        }

        async def fetch_audit_logs(guild_id, limit=50):
            return audit_log

        fake_discord.fetch_audit_logs = fetch_audit_logs

        response = await api_client.get("/api/discord-stats/recent-activity", headers=headers)

        assert response.status_code == 200
        activities = response.json()
        assert [activity["id"] for activity in activities] == [NEWER, OLDER]
        assert activities[0]["details"] == "Message deleted"
