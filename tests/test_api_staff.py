"""HTTP tests for the staff roster endpoints."""

import pytest
import pytest_asyncio

from conftest import ADMIN_ROLE, FOUNDER_ROLE, MANAGEMENT_ROLE, RETIRED_ROLE, discord_error
from dansgaming.web.crud import PastStaffOperations, UserOperations
from dansgaming.web.discord import DiscordPermissionError, DiscordRateLimitError


@pytest_asyncio.fixture
async def founder(make_user, fake_discord):
    fake_discord.add_member("100", "bigdan", [FOUNDER_ROLE])
    return await make_user("100", "bigdan")


@pytest_asyncio.fixture
async def founder_headers(founder, auth_headers):
    return auth_headers(founder)


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_missing_token(self, api_client):
        response = await api_client.get("/api/staff/roster")

        assert response.status_code == 401
        assert response.json() == {"error": "Access token required"}

    @pytest.mark.asyncio
    async def test_invalid_token(self, api_client):
        response = await api_client.get(
            "/api/staff/roster", headers={"Authorization": "Bearer nonsense"}
        )

        assert response.status_code == 403
        assert response.json() == {"error": "Invalid or expired token"}

    @pytest.mark.asyncio
    async def test_non_staff_token(self, api_client, make_user, auth_headers):
        user = await make_user("200", "visitor", role="user")

        response = await api_client.get("/api/staff/roster", headers=auth_headers(user))

        assert response.status_code == 403
        assert response.json() == {"error": "Staff access required"}

    @pytest.mark.asyncio
    async def test_role_changes_need_live_staff_rank(
        self, api_client, make_user, auth_headers, fake_discord
    ):
        user = await make_user("300", "exstaff")
        fake_discord.add_member("300", "exstaff", [RETIRED_ROLE])
        fake_discord.add_member("9", "target")

        response = await api_client.post(
            "/api/staff/add-role",
            json={"userId": "9", "roleName": "Admin"},
            headers=auth_headers(user),
        )

        assert response.status_code == 403
        assert response.json() == {"error": "Insufficient permission level"}
        assert fake_discord.calls == []


class TestRoster:
    @pytest.mark.asyncio
    async def test_roster(self, api_client, founder_headers, fake_discord):
        fake_discord.add_member("7", "walter", [ADMIN_ROLE])

        response = await api_client.get("/api/staff/roster", headers=founder_headers)

        assert response.status_code == 200
        body = response.json()
        assert [staff["id"] for staff in body["activeStaff"]] == ["100", "7"]
        assert body["activeStaff"][0]["rank"] == "Founder"
        assert body["pastStaff"] == []
        assert "degraded" not in body

    @pytest.mark.asyncio
    async def test_rate_limited_roster(self, api_client, founder_headers, fake_discord):
        fake_discord.members_error = DiscordRateLimitError(2.2)

        response = await api_client.get("/api/staff/roster", headers=founder_headers)

        assert response.status_code == 429
        body = response.json()
        assert body["retryAfter"] == 3
        assert body["error"] == "Discord API rate limit exceeded"
        assert body["message"] == "Please wait 3 seconds before trying again"

    @pytest.mark.asyncio
    async def test_degraded_roster(self, api_client, founder_headers, fake_discord):
        fake_discord.members_error = DiscordPermissionError(403, "Missing Access")

        response = await api_client.get("/api/staff/roster", headers=founder_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["degraded"] is True
        assert [staff["username"] for staff in body["activeStaff"]] == ["BigDan"]

    @pytest.mark.asyncio
    async def test_clear_cache(self, api_client, founder_headers, fake_discord):
        await api_client.get("/api/staff/roster", headers=founder_headers)

        response = await api_client.post("/api/staff/clear-cache", headers=founder_headers)
        await api_client.get("/api/staff/roster", headers=founder_headers)

        assert response.json() == {"message": "Cache cleared successfully"}
        assert fake_discord.fetch_members_calls == 2

    @pytest.mark.asyncio
    async def test_server_roles(self, api_client, founder_headers):
        response = await api_client.get("/api/staff/server-roles", headers=founder_headers)

        assert response.status_code == 200
        assert response.json()["currentMappings"][MANAGEMENT_ROLE] == "Management"

    @pytest.mark.asyncio
    async def test_debug_members(self, api_client, founder_headers):
        response = await api_client.get("/api/staff/debug-members", headers=founder_headers)

        body = response.json()
        assert body["totalMembers"] == 1
        assert body["members"][0]["hasStaffRole"] is True


class TestSearchMembers:
    @pytest.mark.asyncio
    async def test_excludes_staff(self, api_client, founder_headers, fake_discord):
        fake_discord.add_member("11", "bobby_user", nick="Bobby")
        fake_discord.add_member("12", "bobcat")
        fake_discord.add_member("13", "bob", [ADMIN_ROLE])

        response = await api_client.get(
            "/api/staff/search-members", params={"query": "bob"}, headers=founder_headers
        )

        assert response.status_code == 200
        ids = {member["id"] for member in response.json()["members"]}
        assert ids == {"11", "12"}

    @pytest.mark.asyncio
    async def test_short_query(self, api_client, founder_headers, fake_discord):
        response = await api_client.get(
            "/api/staff/search-members", params={"query": "a"}, headers=founder_headers
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Search query must be at least 2 characters"
        assert fake_discord.fetch_members_calls == 0


class TestRoleChanges:
    @pytest.mark.asyncio
    async def test_add_role(self, api_client, founder_headers, fake_discord):
        fake_discord.add_member("9", "newbie", [RETIRED_ROLE])

        response = await api_client.post(
            "/api/staff/add-role",
            json={"userId": "9", "roleName": "Admin"},
            headers=founder_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["staffMember"]["rank"] == "Admin"
        assert fake_discord.members["9"]["roles"] == {ADMIN_ROLE}

    @pytest.mark.asyncio
    async def test_add_role_invalid_rank(self, api_client, founder_headers):
        response = await api_client.post(
            "/api/staff/add-role",
            json={"userId": "9", "roleName": "Moderator"},
            headers=founder_headers,
        )

        assert response.status_code == 400
        assert response.json()["type"] == "validation_error"

    @pytest.mark.asyncio
    async def test_add_role_without_manage_roles(self, api_client, founder_headers, fake_discord):
        fake_discord.add_member("9", "newbie")
        fake_discord.failures[("grant", ADMIN_ROLE)] = DiscordPermissionError(403, "Missing Permissions")

        response = await api_client.post(
            "/api/staff/add-role",
            json={"userId": "9", "roleName": "Admin"},
            headers=founder_headers,
        )

        assert response.status_code == 500
        assert "Manage Roles" in response.json()["error"]

    @pytest.mark.asyncio
    async def test_remove_role_with_reason_archives(
        self, api_client, founder_headers, fake_discord, db_session
    ):
        fake_discord.add_member("7", "walter", [ADMIN_ROLE])

        response = await api_client.request(
            "DELETE",
            "/api/staff/remove-role",
            json={"userId": "7", "roleName": "Admin", "reason": "Inactive"},
            headers=founder_headers,
        )

        assert response.status_code == 200
        assert response.json()["pastStaff"]["removalReason"] == "Inactive"
        records = await PastStaffOperations(db_session).list_past_staff()
        assert [record.discord_id for record in records] == ["7"]

    @pytest.mark.asyncio
    async def test_remove_role_blank_reason(self, api_client, founder_headers, fake_discord):
        fake_discord.add_member("7", "walter", [ADMIN_ROLE])

        response = await api_client.request(
            "DELETE",
            "/api/staff/remove-role",
            json={"userId": "7", "roleName": "Admin", "reason": "  "},
            headers=founder_headers,
        )

        assert response.status_code == 400
        assert ADMIN_ROLE in fake_discord.members["7"]["roles"]

    @pytest.mark.asyncio
    async def test_remove_role_already_removed(self, api_client, founder_headers, fake_discord):
        fake_discord.add_member("7", "walter", [RETIRED_ROLE])

        response = await api_client.request(
            "DELETE",
            "/api/staff/remove-role",
            json={"userId": "7", "roleName": "Admin", "reason": "Inactive"},
            headers=founder_headers,
        )

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_remove_role_without_reason(self, api_client, founder_headers, fake_discord, db_session):
        fake_discord.add_member("7", "walter", [ADMIN_ROLE])

        response = await api_client.request(
            "DELETE",
            "/api/staff/remove-role",
            json={"userId": "7", "roleName": "Admin"},
            headers=founder_headers,
        )

        assert response.status_code == 200
        assert "pastStaff" not in response.json()
        assert fake_discord.members["7"]["roles"] == {RETIRED_ROLE}
        assert await PastStaffOperations(db_session).list_past_staff() == []

    @pytest.mark.asyncio
    async def test_change_rank(self, api_client, founder_headers, fake_discord):
        fake_discord.add_member("7", "walter", [ADMIN_ROLE])

        response = await api_client.put(
            "/api/staff/change-rank",
            json={"userId": "7", "fromRank": "Admin", "toRank": "Management"},
            headers=founder_headers,
        )

        assert response.status_code == 200
        assert response.json()["currentRank"] == "Management"

    @pytest.mark.asyncio
    async def test_change_rank_partial(self, api_client, founder_headers, fake_discord):
        fake_discord.add_member("7", "walter", [ADMIN_ROLE])
        fake_discord.failures[("grant", MANAGEMENT_ROLE)] = discord_error(500)

        response = await api_client.put(
            "/api/staff/change-rank",
            json={"userId": "7", "fromRank": "Admin", "toRank": "Management"},
            headers=founder_headers,
        )

        assert response.status_code == 502
        body = response.json()
        assert body["success"] is False
        assert body["partial"] is True
        assert body["currentRank"] is None

    @pytest.mark.asyncio
    async def test_change_rank_rate_limited(self, api_client, founder_headers, fake_discord):
        fake_discord.add_member("7", "walter", [ADMIN_ROLE])
        fake_discord.failures[("revoke", ADMIN_ROLE)] = DiscordRateLimitError(7.0)

        response = await api_client.put(
            "/api/staff/change-rank",
            json={"userId": "7", "fromRank": "Admin", "toRank": "Management"},
            headers=founder_headers,
        )

        assert response.status_code == 429
        body = response.json()
        assert body["retryAfter"] == 7
        assert body["error"] == "Discord API rate limit exceeded"
        assert fake_discord.members["7"]["roles"] == {ADMIN_ROLE}


class TestMetadata:
    @pytest.mark.asyncio
    async def test_update_staff_creates_placeholder(self, api_client, founder_headers, db_session):
        response = await api_client.put(
            "/api/staff/update-staff",
            json={
                "discordId": "555",
                "playfabId": "PF-5",
                "recruitmentDate": "2024-03-01",
                "status": "",
            },
            headers=founder_headers,
        )

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "message": "Staff member information updated successfully",
        }
        user = await UserOperations(db_session).get_by_discord_id("555")
        assert user.password_hash is None
        assert user.status == "Active"
        assert user.recruitment_date.isoformat() == "2024-03-01"

    @pytest.mark.asyncio
    async def test_update_staff_invalid_status(self, api_client, founder_headers):
        response = await api_client.put(
            "/api/staff/update-staff",
            json={"discordId": "555", "status": "Retired"},
            headers=founder_headers,
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_past_staff_lifecycle(self, api_client, founder_headers, db_session):
        created = await api_client.post(
            "/api/staff/add-past-staff",
            json={
                "discordId": "77",
                "username": "oldtimer",
                "displayName": "Old Timer",
                "rank": "Management",
                "removalReason": "Moved on",
            },
            headers=founder_headers,
        )
        updated = await api_client.put(
            "/api/staff/update-past-staff",
            json={"discordId": "77", "removalReason": "Retired honourably"},
            headers=founder_headers,
        )

        assert created.status_code == 200
        assert updated.status_code == 200
        records = await PastStaffOperations(db_session).list_past_staff()
        assert records[0].removal_reason == "Retired honourably"
        assert records[0].display_name == "Old Timer"

        removed = await api_client.request(
            "DELETE",
            "/api/staff/remove-past-staff",
            json={"discordId": "77"},
            headers=founder_headers,
        )
        missing = await api_client.request(
            "DELETE",
            "/api/staff/remove-past-staff",
            json={"discordId": "77"},
            headers=founder_headers,
        )

        assert removed.status_code == 200
        assert missing.status_code == 404

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", ["username", "displayName", "rank"])
    async def test_update_past_staff_rejects_null_required_field(
        self, api_client, founder_headers, db_session, field
    ):
        await PastStaffOperations(db_session).add_past_staff(
            discord_id="77",
            username="oldtimer",
            display_name="Old Timer",
            rank="Management",
            removal_reason="Moved on",
        )

        response = await api_client.put(
            "/api/staff/update-past-staff",
            json={"discordId": "77", field: None},
            headers=founder_headers,
        )

        assert response.status_code == 400
        assert response.json()["type"] == "validation_error"
        records = await PastStaffOperations(db_session).list_past_staff()
        assert records[0].username == "oldtimer"
        assert records[0].display_name == "Old Timer"

    @pytest.mark.asyncio
    async def test_add_past_staff_requires_fields(self, api_client, founder_headers):
        response = await api_client.post(
            "/api/staff/add-past-staff",
            json={"discordId": "77", "username": "oldtimer"},
            headers=founder_headers,
        )

        assert response.status_code == 400
        assert response.json()["type"] == "validation_error"
