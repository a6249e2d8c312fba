"""Tests for security headers middleware.

Verifies that all required security headers are present on responses.
"""

import pytest


class TestSecurityHeaders:
    """Tests for SecurityHeadersMiddleware."""

    @pytest.mark.asyncio
    async def test_static_headers(self, async_client):
        response = await async_client.get("/health")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["Referrer-Policy"] == "strict-origin-when-cross-origin"
        assert response.headers["Cross-Origin-Opener-Policy"] == "same-origin"
        assert "no-store" in response.headers["Cache-Control"]

    @pytest.mark.asyncio
    async def test_content_security_policy_header(self, async_client):
        response = await async_client.get("/health")
        csp = response.headers.get("Content-Security-Policy")
        assert csp is not None
        assert "default-src 'self'" in csp
        assert "frame-ancestors 'none'" in csp

    @pytest.mark.asyncio
    async def test_hsts_header_with_https(self, async_client, settings):
        """Test HSTS header is set when X-Forwarded-Proto is https."""
        response = await async_client.get("/health", headers={"X-Forwarded-Proto": "https"})
        assert response.headers["Strict-Transport-Security"] == (
            f"max-age={settings.hsts_max_age}; includeSubDomains"
        )

    @pytest.mark.asyncio
    async def test_hsts_header_not_set_for_http(self, async_client):
        response = await async_client.get("/health")
        assert "Strict-Transport-Security" not in response.headers

    @pytest.mark.asyncio
    async def test_security_headers_on_auth_error_responses(self, async_client):
        """Test security headers are present on 401 responses from the auth middleware."""
        response = await async_client.get("/api/stats")
        assert response.status_code == 401
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
