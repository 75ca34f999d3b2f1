"""Middleware tests: log redaction and the admin CORS policy."""

import pytest
from httpx import AsyncClient

from usf.middleware.logging import REDACTED, redact_sensitive


class TestRedaction:
    def test_masks_top_level_and_nested_secrets(self) -> None:
        event = {
            "event": "webhook_received",
            "email": "alice@example.com",
            "payload": {"verification_token": "abc", "amount": "10.00", "email": ""},
        }

        out = redact_sensitive(None, "info", event)

        assert out["email"] == REDACTED
        assert out["payload"] == {"verification_token": REDACTED, "amount": "10.00", "email": ""}
        assert out["event"] == "webhook_received"


class TestCors:
    @pytest.mark.asyncio
    async def test_admin_preflight_allowed(self, client: AsyncClient) -> None:
        response = await client.options(
            "/api/v1/donations/unresolved",
            headers={
                "Origin": "http://localhost:3000",
                "Access-Control-Request-Method": "GET",
                "Access-Control-Request-Headers": "X-Admin-Key",
            },
        )
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "http://localhost:3000"

    @pytest.mark.asyncio
    async def test_unknown_origin_rejected(self, client: AsyncClient) -> None:
        response = await client.options(
            "/api/v1/donations/unresolved",
            headers={
                "Origin": "https://evil.example",
                "Access-Control-Request-Method": "GET",
            },
        )
        assert response.status_code == 400
