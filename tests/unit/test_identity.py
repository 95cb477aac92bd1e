"""Unit tests for streamguard/identity.py."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from streamguard.identity import ANONYMOUS, HeaderIdentityProvider


class TestHeaderIdentityProvider:
    def test_no_user_header_is_anonymous(self) -> None:
        identity = HeaderIdentityProvider().resolve({"x-user-role": "admin"})
        assert identity is ANONYMOUS
        assert identity.authenticated is False
        assert identity.is_admin is False

    def test_full_identity(self) -> None:
        identity = HeaderIdentityProvider().resolve(
            {
                "x-user-id": "u1",
                "x-user-role": "Admin",
                "x-subscription-tier": "PRO",
                "x-session-id": "sess_1",
                "x-session-issued-at": "2026-10-17T12:00:00+00:00",
            }
        )
        assert identity.user_id == "u1"
        assert identity.is_admin is True
        assert identity.subscription_tier == "pro"
        assert identity.session_id == "sess_1"
        assert identity.session_issued_at == datetime(2026, 10, 17, 12, tzinfo=timezone.utc)

    def test_defaults_for_authenticated_user(self) -> None:
        identity = HeaderIdentityProvider().resolve({"x-user-id": "u1"})
        assert identity.role == "user"
        assert identity.subscription_tier == "basic"
        assert identity.session_issued_at is None

    def test_unknown_tier_falls_back_to_basic(self) -> None:
        identity = HeaderIdentityProvider().resolve({"x-user-id": "u1", "x-subscription-tier": "platinum"})
        assert identity.subscription_tier == "basic"

    def test_malformed_issue_time_is_ignored(self) -> None:
        identity = HeaderIdentityProvider().resolve({"x-user-id": "u1", "x-session-issued-at": "yesterday"})
        assert identity.session_issued_at is None


class TestGatewaySecret:
    HEADERS = {"x-user-id": "ops_1", "x-user-role": "admin"}

    def test_matching_secret_is_trusted(self) -> None:
        provider = HeaderIdentityProvider(gateway_secret="gw-secret")
        identity = provider.resolve({**self.HEADERS, "x-gateway-secret": "gw-secret"})
        assert identity.user_id == "ops_1"
        assert identity.is_admin is True

    @pytest.mark.parametrize("presented", [None, "", "gw-secre", "GW-SECRET"])
    def test_forged_identity_headers_are_anonymous(self, presented: str | None) -> None:
        headers = dict(self.HEADERS)
        if presented is not None:
            headers["x-gateway-secret"] = presented
        identity = HeaderIdentityProvider(gateway_secret="gw-secret").resolve(headers)
        assert identity is ANONYMOUS

    def test_without_configured_secret_headers_are_trusted(self) -> None:
        assert HeaderIdentityProvider().resolve(self.HEADERS).is_admin is True
