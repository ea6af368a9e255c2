"""Integration tests: VRChatApiClient against a local aiohttp server."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator

import pytest
from aiohttp import web
from aiohttp import test_utils

from warden.errors import AlreadyInDesiredState, LookupFailure, NotFound, RateLimited
from warden.services.vrchat_api import VRChatApiClient, member_from_json, user_from_json


class Upstream:
    """Scripted responses keyed by path, plus a log of what was received."""

    def __init__(self) -> None:
        self.responses: dict[str, web.Response] = {}
        self.requests: list[dict[str, Any]] = []

    async def handle(self, request: web.Request) -> web.StreamResponse:
        body = await request.json() if request.can_read_body else None
        self.requests.append(
            {
                "method": request.method,
                "path": request.path,
                "query": dict(request.query),
                "cookie": request.cookies.get("auth"),
                "user_agent": request.headers.get("User-Agent"),
                "body": body,
            }
        )
        resp = self.responses.get(f"{request.method} {request.path}")
        if resp is None:
            return web.json_response({"error": "no route"}, status=500)
        return resp


@pytest.fixture
async def upstream() -> AsyncIterator[tuple[Upstream, VRChatApiClient]]:
    fake = Upstream()
    app = web.Application()
    app.router.add_route("*", "/{tail:.*}", fake.handle)
    server = test_utils.TestServer(app)
    await server.start_server()
    client = VRChatApiClient(
        auth_cookie="authcookie_123",
        user_agent="GroupWarden/test",
        api_base=str(server.make_url("/api/1")),
        timeout_seconds=5,
    )
    try:
        yield fake, client
    finally:
        await client.close()
        await server.close()


class TestRequests:
    async def test_audit_logs_parsed_and_authenticated(self, upstream: tuple[Upstream, VRChatApiClient]) -> None:
        fake, client = upstream
        fake.responses["GET /api/1/groups/grp_1/auditLogs"] = web.json_response(
            {
                "results": [
                    {
                        "id": "gaud_1",
                        "eventType": "group.instance.create",
                        "actorId": "usr_a",
                        "actorDisplayName": "Alice",
                        "targetId": "wrld_x:123",
                        "created_at": "2026-01-01T00:00:00.000Z",
                    }
                ]
            }
        )

        events = await client.get_group_audit_logs("grp_1", 20)

        assert len(events) == 1
        assert events[0].target_id == "wrld_x:123"
        assert events[0].created_at is not None
        sent = fake.requests[0]
        assert sent["query"] == {"n": "20", "offset": "0"}
        assert sent["cookie"] == "authcookie_123"
        assert sent["user_agent"] == "GroupWarden/test"

    async def test_ban_posts_user_id(self, upstream: tuple[Upstream, VRChatApiClient]) -> None:
        fake, client = upstream
        fake.responses["POST /api/1/groups/grp_1/bans"] = web.json_response({"ok": True})
        await client.ban_group_member("grp_1", "usr_b")
        assert fake.requests[0]["body"] == {"userId": "usr_b"}

    async def test_empty_member_body_is_not_found(self, upstream: tuple[Upstream, VRChatApiClient]) -> None:
        fake, client = upstream
        fake.responses["GET /api/1/groups/grp_1/members/usr_a"] = web.Response(status=200, text="")
        with pytest.raises(NotFound):
            await client.get_group_member("grp_1", "usr_a")


class TestErrorMapping:
    async def test_429_is_rate_limited(self, upstream: tuple[Upstream, VRChatApiClient]) -> None:
        fake, client = upstream
        fake.responses["GET /api/1/groups/grp_1/roles"] = web.json_response(
            {"error": "slow down"}, status=429, headers={"Retry-After": "60"}
        )
        with pytest.raises(RateLimited) as exc:
            await client.get_group_roles("grp_1")
        assert exc.value.retry_after == 60.0
        assert exc.value.status == 429

    async def test_404_is_not_found(self, upstream: tuple[Upstream, VRChatApiClient]) -> None:
        fake, client = upstream
        fake.responses["GET /api/1/users/usr_gone"] = web.json_response({"error": "gone"}, status=404)
        with pytest.raises(NotFound):
            await client.get_user("usr_gone")

    async def test_server_error_is_lookup_failure(self, upstream: tuple[Upstream, VRChatApiClient]) -> None:
        fake, client = upstream
        fake.responses["GET /api/1/groups/grp_1/roles"] = web.Response(status=502, text="bad gateway")
        with pytest.raises(LookupFailure) as exc:
            await client.get_group_roles("grp_1")
        assert exc.value.status == 502

    async def test_close_forbidden_is_not_a_closure(
        self, upstream: tuple[Upstream, VRChatApiClient], caplog: pytest.LogCaptureFixture
    ) -> None:
        fake, client = upstream
        fake.responses["DELETE /api/1/instances/wrld_x:inst1"] = web.json_response(
            {"error": {"message": "You do not have permission to close this instance"}}, status=403
        )
        with caplog.at_level(logging.WARNING, logger="warden.vrchat_api"):
            with pytest.raises(LookupFailure) as exc:
                await client.close_instance("wrld_x", "inst1")
        assert exc.value.status == 403
        assert "do not have permission" in caplog.text

    async def test_close_forbidden_already_closed(self, upstream: tuple[Upstream, VRChatApiClient]) -> None:
        fake, client = upstream
        fake.responses["DELETE /api/1/instances/wrld_x:inst3"] = web.json_response(
            {"error": {"message": "This instance is already closed"}}, status=403
        )
        with pytest.raises(AlreadyInDesiredState) as exc:
            await client.close_instance("wrld_x", "inst3")
        assert exc.value.status == 403

    async def test_close_already_closed_message(self, upstream: tuple[Upstream, VRChatApiClient]) -> None:
        fake, client = upstream
        fake.responses["DELETE /api/1/instances/wrld_x:inst2"] = web.json_response(
            {"error": {"message": "Instance is already closed"}}, status=400
        )
        with pytest.raises(AlreadyInDesiredState):
            await client.close_instance("wrld_x", "inst2")

    async def test_403_outside_close_is_lookup_failure(self, upstream: tuple[Upstream, VRChatApiClient]) -> None:
        fake, client = upstream
        fake.responses["GET /api/1/groups/grp_1/roles"] = web.json_response({"error": "no"}, status=403)
        with pytest.raises(LookupFailure):
            await client.get_group_roles("grp_1")


class TestParsers:
    def test_member_with_nested_user(self) -> None:
        m = member_from_json(
            {
                "userId": "usr_a",
                "roleIds": ["grol_1"],
                "mRoleIds": ["grol_2"],
                "user": {"id": "usr_a", "displayName": "Alice", "tags": ["system_trust_known"]},
            }
        )
        assert m.all_role_ids() == ["grol_1", "grol_2"]
        assert m.user is not None and m.user.tags == ("system_trust_known",)

    def test_user_without_tags_has_none(self) -> None:
        u = user_from_json({"id": "usr_a", "displayName": "Alice", "ageVerificationStatus": "18+"})
        assert u.tags is None
        assert u.bio is None
        assert u.age_verification_status == "18+"
