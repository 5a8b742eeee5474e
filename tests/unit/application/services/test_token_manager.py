"""Tests for TokenManager refresh, single-flight and revocation handling."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from syncabull.application.services import TokenManager
from syncabull.domain.entities import TokenGrant
from syncabull.domain.exceptions import (
    AuthError,
    EntityNotFoundException,
    NetworkError,
    ReauthorizationRequired,
)

# Hey future me - these run against a real temp SQLite DB (conftest `db`) with a scripted
# token endpoint, so the persistence side of every refresh is exercised too.


def _grant(token: str, refresh_token: str | None = None) -> TokenGrant:
    return TokenGrant(
        access_token=token,
        expires_at=datetime.now(UTC) + timedelta(hours=1),
        refresh_token=refresh_token,
        scopes=["photoslibrary.readonly"],
    )


class TestGetValidAccessToken:
    """Token handout and proactive refresh."""

    async def test_valid_token_is_returned_without_refresh(
        self, token_manager: TokenManager, token_endpoint, register_account
    ) -> None:
        await register_account("acct-1", access_token="still-good")

        token = await token_manager.get_valid_access_token("acct-1")

        assert token.token == "still-good"
        assert token_endpoint.calls == []

    async def test_token_inside_margin_is_refreshed(
        self, token_manager: TokenManager, token_endpoint, register_account
    ) -> None:
        await register_account(
            "acct-1",
            access_token="almost-expired",
            expires_at=datetime.now(UTC) + timedelta(seconds=60),
        )
        token_endpoint.responses.append(_grant("fresh"))

        token = await token_manager.get_valid_access_token("acct-1")

        assert token.token == "fresh"
        assert token_endpoint.calls == ["refresh-acct-1"]
        assert token_manager.refresh_count == 1

    async def test_rotated_refresh_token_is_stored(
        self, token_manager: TokenManager, token_endpoint, register_account
    ) -> None:
        await register_account("acct-1", access_token=None)
        token_endpoint.responses.append(_grant("fresh", refresh_token="rotated"))

        await token_manager.get_valid_access_token("acct-1")
        credential = await token_manager.get_credential("acct-1")

        assert credential is not None
        assert credential.refresh_token == "rotated"
        assert credential.access_token == "fresh"

    async def test_unknown_account_raises_auth_error(self, token_manager: TokenManager) -> None:
        with pytest.raises(AuthError):
            await token_manager.get_valid_access_token("nobody")

    def test_token_repr_hides_secret(self) -> None:
        from syncabull.domain.entities import AccessToken

        token = AccessToken(account_id="a", token="super-secret", expires_at=datetime.now(UTC))
        assert "super-secret" not in repr(token)


class TestSingleFlight:
    """Concurrent callers share one refresh per account."""

    async def test_concurrent_callers_trigger_one_refresh(
        self, token_manager: TokenManager, token_endpoint, register_account
    ) -> None:
        await register_account("acct-1", access_token=None)
        token_endpoint.delay = 0.05

        tokens = await asyncio.gather(
            *(token_manager.get_valid_access_token("acct-1") for _ in range(10))
        )

        assert len(token_endpoint.calls) == 1
        assert {t.token for t in tokens} == {"access-1"}

    async def test_accounts_refresh_independently(
        self, token_manager: TokenManager, token_endpoint, register_account
    ) -> None:
        await register_account("acct-1", access_token=None)
        await register_account("acct-2", access_token=None)
        token_endpoint.delay = 0.05

        await asyncio.gather(
            token_manager.get_valid_access_token("acct-1"),
            token_manager.get_valid_access_token("acct-2"),
            token_manager.get_valid_access_token("acct-1"),
        )

        assert sorted(token_endpoint.calls) == ["refresh-acct-1", "refresh-acct-2"]

    async def test_cancelled_caller_does_not_cancel_shared_refresh(
        self, token_manager: TokenManager, token_endpoint, register_account
    ) -> None:
        await register_account("acct-1", access_token=None)
        token_endpoint.delay = 0.1

        impatient = asyncio.create_task(token_manager.get_valid_access_token("acct-1"))
        patient = asyncio.create_task(token_manager.get_valid_access_token("acct-1"))
        await asyncio.sleep(0.02)
        impatient.cancel()

        token = await patient
        assert token.token == "access-1"
        assert len(token_endpoint.calls) == 1


class TestRefreshFailures:
    """Revocation versus transient failures."""

    async def test_revoked_refresh_token_requires_reauthorization(
        self, token_manager: TokenManager, token_endpoint, register_account
    ) -> None:
        await register_account("acct-1", access_token=None)
        token_endpoint.responses.append(ReauthorizationRequired(error_code="invalid_grant"))

        with pytest.raises(ReauthorizationRequired) as exc_info:
            await token_manager.get_valid_access_token("acct-1")

        assert exc_info.value.account_id == "acct-1"
        credential = await token_manager.get_credential("acct-1")
        assert credential is not None
        assert credential.is_valid is False

        # later callers fail fast without hitting the endpoint again
        with pytest.raises(ReauthorizationRequired):
            await token_manager.get_valid_access_token("acct-1")
        assert len(token_endpoint.calls) == 1

    async def test_timeout_is_retried_and_keeps_refresh_token(
        self, token_manager: TokenManager, token_endpoint, register_account
    ) -> None:
        await register_account("acct-1", access_token=None)
        token_endpoint.responses.extend(
            [NetworkError("timed out", is_timeout=True), NetworkError("503", http_status=503)]
        )

        token = await token_manager.get_valid_access_token("acct-1")

        assert token.token == "access-3"
        assert len(token_endpoint.calls) == 3
        credential = await token_manager.get_credential("acct-1")
        assert credential is not None
        assert credential.is_valid is True
        assert credential.refresh_token == "refresh-acct-1"

    async def test_exhausted_retries_raise_network_error(
        self, token_manager: TokenManager, token_endpoint, register_account
    ) -> None:
        await register_account("acct-1", access_token=None)
        token_endpoint.responses.extend(NetworkError("down", is_timeout=True) for _ in range(4))

        with pytest.raises(NetworkError):
            await token_manager.get_valid_access_token("acct-1")

        credential = await token_manager.get_credential("acct-1")
        assert credential is not None
        assert credential.is_valid is True
        assert credential.last_error == "down"

    async def test_reauthorize_restores_account(
        self, token_manager: TokenManager, token_endpoint, register_account
    ) -> None:
        await register_account("acct-1", access_token=None)
        token_endpoint.responses.append(ReauthorizationRequired())
        with pytest.raises(ReauthorizationRequired):
            await token_manager.get_valid_access_token("acct-1")

        await token_manager.reauthorize("acct-1", refresh_token="new-refresh")
        token = await token_manager.get_valid_access_token("acct-1")

        assert token.token.startswith("access-")
        assert token_endpoint.calls[-1] == "new-refresh"

    async def test_reauthorize_unknown_account_fails(self, token_manager: TokenManager) -> None:
        with pytest.raises(EntityNotFoundException):
            await token_manager.reauthorize("nobody", refresh_token="x")


class TestInvalidate:
    """Forced refresh after a 401."""

    async def test_invalidate_forces_refresh(
        self, token_manager: TokenManager, token_endpoint, register_account
    ) -> None:
        await register_account("acct-1", access_token="rejected")

        await token_manager.invalidate("acct-1", "rejected")
        token = await token_manager.get_valid_access_token("acct-1")

        assert token.token == "access-1"
        assert len(token_endpoint.calls) == 1

    async def test_invalidate_with_outdated_token_is_ignored(
        self, token_manager: TokenManager, token_endpoint, register_account
    ) -> None:
        await register_account("acct-1", access_token="current")

        await token_manager.invalidate("acct-1", "some-older-token")
        token = await token_manager.get_valid_access_token("acct-1")

        assert token.token == "current"
        assert token_endpoint.calls == []
