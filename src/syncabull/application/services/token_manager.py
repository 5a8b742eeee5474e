"""Token Manager - per-account OAuth credentials with single-flight refresh.

Hey future me - THIS is the only place that touches the credentials table at runtime.

How it works:
1. get_valid_access_token(account) loads the credential from the DB
2. Still valid for longer than the margin (default 5 min)? Return it, done.
3. Otherwise refresh - but only ONE refresh per account at a time. The first caller starts an
   asyncio.Task, every concurrent caller for the same account awaits THAT task (shielded, so a
   cancelled caller doesn't kill the refresh for the others). Different accounts never block
   each other, there is no process-wide lock.
4. invalid_grant / 401 from Google -> credential marked is_valid=False, every caller gets
   ReauthorizationRequired until reauthorize() stores a new refresh token.
5. Timeouts / 5xx -> retried per RetryPolicy. The refresh token is NEVER invalidated for
   transient failures; after the retries run out the caller gets NetworkError.
"""

import asyncio
import logging
from datetime import UTC, datetime

from syncabull.application.services.retry_policy import RetryPolicy
from syncabull.domain.entities import AccessToken, Account, Credential, TokenGrant
from syncabull.domain.exceptions import (
    AuthError,
    EntityNotFoundException,
    NetworkError,
    ReauthorizationRequired,
)
from syncabull.domain.ports import ITokenEndpoint
from syncabull.infrastructure.persistence import (
    AccountRepository,
    CredentialRepository,
    Database,
    with_db_retry,
)

logger = logging.getLogger(__name__)

_EPOCH = datetime.fromtimestamp(0, UTC)


class TokenManager:
    """Owns access/refresh token pairs for every account."""

    def __init__(
        self,
        db: Database,
        token_endpoint: ITokenEndpoint,
        retry_policy: RetryPolicy,
        refresh_margin_seconds: int = 300,
    ) -> None:
        self._db = db
        self._endpoint = token_endpoint
        self._retry_policy = retry_policy
        self._margin = refresh_margin_seconds
        self._inflight: dict[str, asyncio.Task[Credential]] = {}
        self.refresh_count = 0

    async def get_valid_access_token(self, account_id: str) -> AccessToken:
        """Return an access token valid for at least the refresh margin.

        Raises:
            AuthError: If the account has no credential
            ReauthorizationRequired: If the refresh token was revoked
            NetworkError: If refreshing failed transiently after all retries
        """
        credential = await self._load(account_id)
        if not credential.is_valid:
            raise ReauthorizationRequired(
                f"Account {account_id} requires re-authorization", account_id=account_id
            )

        if credential.expires_within(self._margin):
            credential = await self._refresh_single_flight(account_id)

        return AccessToken(
            account_id=account_id,
            token=credential.access_token,
            expires_at=credential.expires_at,
        )

    async def _refresh_single_flight(self, account_id: str) -> Credential:
        task = self._inflight.get(account_id)
        if task is None:
            task = asyncio.create_task(
                self._refresh(account_id), name=f"token-refresh-{account_id}"
            )
            self._inflight[account_id] = task
            task.add_done_callback(lambda t: self._refresh_done(account_id, t))
        return await asyncio.shield(task)

    def _refresh_done(self, account_id: str, task: asyncio.Task[Credential]) -> None:
        if self._inflight.get(account_id) is task:
            del self._inflight[account_id]
        # mark the exception retrieved even if every waiter was cancelled
        if not task.cancelled():
            task.exception()

    async def _refresh(self, account_id: str) -> Credential:
        # Double-check: a refresh that finished just before we started may have done the job
        credential = await self._load(account_id)
        if not credential.is_valid:
            raise ReauthorizationRequired(
                f"Account {account_id} requires re-authorization", account_id=account_id
            )
        if not credential.expires_within(self._margin):
            return credential

        logger.info("Refreshing access token for account %s", account_id)
        try:
            grant = await self._retry_policy.run(
                lambda: self._endpoint.refresh(credential.refresh_token),
                what=f"Token refresh for account {account_id}",
            )
        except ReauthorizationRequired as e:
            logger.error(
                "Refresh token for account %s was rejected, re-authorization required: %s",
                account_id,
                e.message,
            )
            await self._mark_invalid(account_id, e.message)
            raise ReauthorizationRequired(
                e.message,
                account_id=account_id,
                http_status=e.http_status,
                error_code=e.error_code,
            ) from e
        except NetworkError as e:
            logger.warning(
                "Token refresh for account %s failed transiently: %s", account_id, e.message
            )
            await self._record_error(account_id, e.message)
            raise

        self.refresh_count += 1
        return await self._store_grant(account_id, grant)

    async def invalidate(self, account_id: str, token: str | None = None) -> None:
        """Force the next get_valid_access_token() to refresh.

        Call this after a 401 on a bearer-authenticated request. If `token` is given and a
        newer token is already stored (someone refreshed meanwhile), nothing happens.
        """
        await self._expire(account_id, token)

    async def register_account(
        self,
        account_id: str,
        refresh_token: str,
        access_token: str | None = None,
        expires_at: datetime | None = None,
        scopes: list[str] | None = None,
        display_name: str | None = None,
    ) -> Account:
        """Create (or update) an account with the tokens from the initial code exchange.

        Without an access token the first get_valid_access_token() refreshes.
        """
        account = await self._register(
            Account(id=account_id, display_name=display_name),
            Credential(
                account_id=account_id,
                access_token=access_token or "",
                refresh_token=refresh_token,
                expires_at=expires_at if access_token and expires_at else _EPOCH,
                scopes=scopes or [],
            ),
        )
        logger.info("Registered account %s", account_id)
        return account

    async def reauthorize(
        self,
        account_id: str,
        refresh_token: str,
        access_token: str | None = None,
        expires_at: datetime | None = None,
        scopes: list[str] | None = None,
    ) -> None:
        """Store a new refresh token for an existing account and mark it valid again.

        Raises:
            EntityNotFoundException: If the account doesn't exist
        """
        await self._store_reauthorization(
            Credential(
                account_id=account_id,
                access_token=access_token or "",
                refresh_token=refresh_token,
                expires_at=expires_at if access_token and expires_at else _EPOCH,
                scopes=scopes or [],
            )
        )
        logger.info("Account %s re-authorized", account_id)

    async def get_credential(self, account_id: str) -> Credential | None:
        """Credential status for operator views (valid or not)."""
        return await self._get(account_id)

    # -- persistence ---------------------------------------------------------------------------

    async def _load(self, account_id: str) -> Credential:
        credential = await self._get(account_id)
        if credential is None:
            raise AuthError(f"Account {account_id} has no credential", account_id=account_id)
        return credential

    @with_db_retry()
    async def _get(self, account_id: str) -> Credential | None:
        async with self._db.session_scope() as session:
            return await CredentialRepository(session).get(account_id)

    @with_db_retry()
    async def _store_grant(self, account_id: str, grant: TokenGrant) -> Credential:
        async with self._db.session_scope() as session:
            return await CredentialRepository(session).update_after_refresh(
                account_id,
                access_token=grant.access_token,
                expires_at=grant.expires_at,
                refresh_token=grant.refresh_token,
                scopes=grant.scopes,
            )

    @with_db_retry()
    async def _mark_invalid(self, account_id: str, message: str) -> None:
        async with self._db.session_scope() as session:
            await CredentialRepository(session).mark_invalid(account_id, message)

    @with_db_retry()
    async def _record_error(self, account_id: str, message: str) -> None:
        async with self._db.session_scope() as session:
            await CredentialRepository(session).record_error(account_id, message)

    @with_db_retry()
    async def _expire(self, account_id: str, token: str | None) -> None:
        async with self._db.session_scope() as session:
            repo = CredentialRepository(session)
            current = await repo.get(account_id)
            if current is None:
                return
            if token is not None and current.access_token != token:
                return
            await repo.expire_access_token(account_id)

    @with_db_retry()
    async def _register(self, account: Account, credential: Credential) -> Account:
        async with self._db.session_scope() as session:
            stored = await AccountRepository(session).add_or_update(account)
            await CredentialRepository(session).upsert(credential)
            return stored

    @with_db_retry()
    async def _store_reauthorization(self, credential: Credential) -> None:
        async with self._db.session_scope() as session:
            if await AccountRepository(session).get(credential.account_id) is None:
                raise EntityNotFoundException("Account", credential.account_id)
            await CredentialRepository(session).upsert(credential)
