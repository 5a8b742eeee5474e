"""Repository implementations.

Repositories take an AsyncSession and never commit - the caller owns the transaction
(Database.session_scope()). They return domain entities, except where a service needs to
mutate the row in place (get_model_*).
"""

from collections.abc import Collection
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import and_, case, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from syncabull.domain.entities import (
    Account,
    ContributorInfo,
    Credential,
    MediaItem,
    SyncCursor,
    SyncRecord,
    metadata_from_dict,
)
from syncabull.domain.exceptions import EntityNotFoundException
from syncabull.infrastructure.persistence.models import (
    AccountModel,
    AppSettingsModel,
    CredentialModel,
    MediaItemModel,
    SyncCursorModel,
    ensure_utc_aware,
)


def _split_scopes(scopes: str | None) -> list[str]:
    return scopes.split() if scopes else []


def _join_scopes(scopes: list[str] | None) -> str | None:
    return " ".join(scopes) if scopes else None


class AccountRepository:
    """Repository for backed-up accounts."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    @staticmethod
    def _to_entity(model: AccountModel) -> Account:
        return Account(
            id=model.id,
            display_name=model.display_name,
            initial_scan_completed=model.initial_scan_completed,
            created_at=ensure_utc_aware(model.created_at) or datetime.now(UTC),
        )

    async def get(self, account_id: str) -> Account | None:
        model = await self.session.get(AccountModel, account_id)
        return self._to_entity(model) if model else None

    async def add_or_update(self, account: Account) -> Account:
        """Create the account or update its display name."""
        model = await self.session.get(AccountModel, account.id)
        if model:
            if account.display_name is not None:
                model.display_name = account.display_name
        else:
            model = AccountModel(
                id=account.id,
                display_name=account.display_name,
                initial_scan_completed=account.initial_scan_completed,
                created_at=account.created_at,
            )
            self.session.add(model)
        await self.session.flush()
        return self._to_entity(model)

    async def list_all(self) -> list[Account]:
        result = await self.session.execute(select(AccountModel).order_by(AccountModel.id))
        return [self._to_entity(m) for m in result.scalars().all()]

    # Hey future me - "authorized" means a credential row exists AND is_valid. Accounts whose
    # refresh token was revoked are skipped by the engine until reauthorize() flips them back.
    async def list_authorized(self) -> list[Account]:
        stmt = (
            select(AccountModel)
            .join(CredentialModel, CredentialModel.account_id == AccountModel.id)
            .where(CredentialModel.is_valid == True)  # noqa: E712
            .order_by(AccountModel.id)
        )
        result = await self.session.execute(stmt)
        return [self._to_entity(m) for m in result.scalars().all()]

    async def mark_initial_scan_completed(self, account_id: str) -> None:
        model = await self.session.get(AccountModel, account_id)
        if not model:
            raise EntityNotFoundException("Account", account_id)
        model.initial_scan_completed = True

    async def delete(self, account_id: str) -> None:
        """Delete an account. Credential, cursor and media items cascade."""
        result = await self.session.execute(
            delete(AccountModel).where(AccountModel.id == account_id)
        )
        if result.rowcount == 0:  # type: ignore[attr-defined]
            raise EntityNotFoundException("Account", account_id)


class CredentialRepository:
    """Repository for per-account OAuth tokens."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    @staticmethod
    def _to_entity(model: CredentialModel) -> Credential:
        return Credential(
            account_id=model.account_id,
            access_token=model.access_token,
            refresh_token=model.refresh_token,
            expires_at=ensure_utc_aware(model.token_expires_at),  # type: ignore[arg-type]
            scopes=_split_scopes(model.scopes),
            is_valid=model.is_valid,
            last_error=model.last_error,
            last_refreshed_at=ensure_utc_aware(model.last_refreshed_at),
        )

    async def get(self, account_id: str) -> Credential | None:
        """Get the credential regardless of validity."""
        model = await self.session.get(CredentialModel, account_id)
        return self._to_entity(model) if model else None

    # Listen up - register/reauthorize land here. UPSERT: sets is_valid=True and clears errors.
    async def upsert(self, credential: Credential) -> Credential:
        now = datetime.now(UTC)
        model = await self.session.get(CredentialModel, credential.account_id)
        if model:
            model.access_token = credential.access_token
            model.refresh_token = credential.refresh_token
            model.token_expires_at = credential.expires_at
            model.scopes = _join_scopes(credential.scopes)
            model.is_valid = True
            model.last_error = None
            model.last_error_at = None
            model.last_refreshed_at = now
        else:
            model = CredentialModel(
                account_id=credential.account_id,
                access_token=credential.access_token,
                refresh_token=credential.refresh_token,
                token_expires_at=credential.expires_at,
                scopes=_join_scopes(credential.scopes),
                is_valid=True,
                last_refreshed_at=now,
            )
            self.session.add(model)
        await self.session.flush()
        return self._to_entity(model)

    async def update_after_refresh(
        self,
        account_id: str,
        access_token: str,
        expires_at: datetime,
        refresh_token: str | None = None,
        scopes: list[str] | None = None,
    ) -> Credential:
        """Swap in a refreshed access token (and rotated refresh token, if any).

        Raises:
            EntityNotFoundException: If the account has no credential
        """
        model = await self.session.get(CredentialModel, account_id)
        if not model:
            raise EntityNotFoundException("Credential", account_id)

        model.access_token = access_token
        model.token_expires_at = expires_at
        if refresh_token:
            model.refresh_token = refresh_token
        if scopes:
            model.scopes = _join_scopes(scopes)
        model.last_refreshed_at = datetime.now(UTC)
        model.last_error = None
        model.last_error_at = None
        await self.session.flush()
        return self._to_entity(model)

    async def mark_invalid(self, account_id: str, error_message: str) -> None:
        """Flag the refresh token as dead. Everything stops until reauthorize()."""
        model = await self.session.get(CredentialModel, account_id)
        if not model:
            raise EntityNotFoundException("Credential", account_id)
        model.is_valid = False
        model.last_error = error_message
        model.last_error_at = datetime.now(UTC)

    async def record_error(self, account_id: str, error_message: str) -> None:
        """Remember a transient refresh failure without invalidating the token."""
        model = await self.session.get(CredentialModel, account_id)
        if model:
            model.last_error = error_message
            model.last_error_at = datetime.now(UTC)

    async def expire_access_token(self, account_id: str) -> None:
        """Force the next get_valid_access_token() to refresh."""
        model = await self.session.get(CredentialModel, account_id)
        if model:
            model.token_expires_at = datetime.fromtimestamp(0, UTC)


class SyncCursorRepository:
    """Repository for pagination cursors. The enumerator is the only writer."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, account_id: str) -> SyncCursor:
        """Get the cursor, an empty one if the account never paginated."""
        model = await self.session.get(SyncCursorModel, account_id)
        if not model:
            return SyncCursor(account_id=account_id)
        return SyncCursor(
            account_id=model.account_id,
            next_token=model.next_token,
            prev_token=model.prev_token,
            pages_fetched=model.pages_fetched,
            last_completed_at=ensure_utc_aware(model.last_completed_at),
            updated_at=ensure_utc_aware(model.updated_at) or datetime.now(UTC),
        )

    async def save(self, cursor: SyncCursor) -> None:
        model = await self.session.get(SyncCursorModel, cursor.account_id)
        if not model:
            model = SyncCursorModel(account_id=cursor.account_id)
            self.session.add(model)
        model.next_token = cursor.next_token
        model.prev_token = cursor.prev_token
        model.pages_fetched = cursor.pages_fetched
        model.last_completed_at = cursor.last_completed_at
        model.updated_at = datetime.now(UTC)


def media_item_to_record(model: MediaItemModel) -> SyncRecord:
    """Convert a media_items row to the SyncRecord entity."""
    contributor = None
    if model.contributor_name or model.contributor_picture_url:
        contributor = ContributorInfo(
            display_name=model.contributor_name,
            profile_picture_base_url=model.contributor_picture_url,
        )
    item = MediaItem(
        remote_id=model.remote_id,
        filename=model.filename,
        mime_type=model.mime_type,
        metadata=metadata_from_dict(model.media_kind, model.metadata_json or {}),
        base_url=model.base_url,
        base_url_fetched_at=ensure_utc_aware(model.base_url_fetched_at),
        description=model.description,
        product_url=model.product_url,
        contributor=contributor,
    )
    return SyncRecord(
        id=model.id,
        account_id=model.account_id,
        item=item,
        local_filename=model.local_filename,
        attempts=model.attempts,
        success=model.success,
        terminal=model.terminal,
        last_attempt_at=ensure_utc_aware(model.last_attempt_at),
        next_attempt_at=ensure_utc_aware(model.next_attempt_at),
        last_error_code=model.last_error_code,
        last_error=model.last_error,
        completed_at=ensure_utc_aware(model.completed_at),
        created_at=ensure_utc_aware(model.created_at) or datetime.now(UTC),
    )


class MediaItemRepository:
    """Row-level access to media_items. The ItemStore service owns the semantics."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_model(self, item_id: int) -> MediaItemModel | None:
        return await self.session.get(MediaItemModel, item_id)

    async def get_model_by_remote_id(self, remote_id: str) -> MediaItemModel | None:
        stmt = select(MediaItemModel).where(MediaItemModel.remote_id == remote_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_models_by_remote_ids(
        self, remote_ids: Collection[str]
    ) -> dict[str, MediaItemModel]:
        if not remote_ids:
            return {}
        stmt = select(MediaItemModel).where(MediaItemModel.remote_id.in_(list(remote_ids)))
        result = await self.session.execute(stmt)
        return {m.remote_id: m for m in result.scalars().all()}

    async def filename_key_exists(self, key: str) -> bool:
        stmt = select(MediaItemModel.id).where(MediaItemModel.local_filename_key == key)
        result = await self.session.execute(stmt)
        return result.first() is not None

    def add(self, model: MediaItemModel) -> None:
        self.session.add(model)

    # Hey future me - this is THE dedup query. Eligible = not downloaded, not terminal, backoff
    # elapsed, and the owning account has a VALID credential (revoked accounts are parked, their
    # items wait without burning attempts). Order: fewest attempts first, then insertion order,
    # so fresh items are never starved by a flapping one.
    async def list_eligible(
        self,
        limit: int,
        now: datetime,
        exclude_ids: Collection[int] = (),
        account_ids: Collection[str] | None = None,
    ) -> list[MediaItemModel]:
        conditions: list[Any] = [
            MediaItemModel.success == False,  # noqa: E712
            MediaItemModel.terminal == False,  # noqa: E712
            CredentialModel.is_valid == True,  # noqa: E712
            or_(
                MediaItemModel.next_attempt_at.is_(None),
                MediaItemModel.next_attempt_at <= now,
            ),
        ]
        if exclude_ids:
            conditions.append(MediaItemModel.id.not_in(list(exclude_ids)))
        if account_ids is not None:
            conditions.append(MediaItemModel.account_id.in_(list(account_ids)))

        stmt = (
            select(MediaItemModel)
            .join(CredentialModel, CredentialModel.account_id == MediaItemModel.account_id)
            .where(and_(*conditions))
            .order_by(MediaItemModel.attempts.asc(), MediaItemModel.id.asc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_by_state(self, account_id: str | None = None) -> dict[str, int]:
        """Count rows per state: pending, succeeded, terminal, total."""
        succeeded = case((MediaItemModel.success == True, 1), else_=0)  # noqa: E712
        terminal = case(
            (
                and_(
                    MediaItemModel.terminal == True,  # noqa: E712
                    MediaItemModel.success == False,  # noqa: E712
                ),
                1,
            ),
            else_=0,
        )
        stmt = select(
            func.count(MediaItemModel.id),
            func.coalesce(func.sum(succeeded), 0),
            func.coalesce(func.sum(terminal), 0),
        )
        if account_id is not None:
            stmt = stmt.where(MediaItemModel.account_id == account_id)
        total, n_succeeded, n_terminal = (await self.session.execute(stmt)).one()
        return {
            "total": int(total),
            "succeeded": int(n_succeeded),
            "terminal": int(n_terminal),
            "pending": int(total) - int(n_succeeded) - int(n_terminal),
        }


class AppSettingsRepository:
    """Key-value engine settings."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, key: str) -> AppSettingsModel | None:
        return await self.session.get(AppSettingsModel, key)

    async def list_by_prefix(self, prefix: str) -> list[AppSettingsModel]:
        stmt = select(AppSettingsModel).where(AppSettingsModel.key.startswith(prefix))
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def set(
        self,
        key: str,
        value: str | None,
        value_type: str = "string",
        category: str = "general",
        description: str | None = None,
    ) -> AppSettingsModel:
        model = await self.session.get(AppSettingsModel, key)
        if model:
            model.value = value
            model.value_type = value_type
            if description is not None:
                model.description = description
        else:
            model = AppSettingsModel(
                key=key,
                value=value,
                value_type=value_type,
                category=category,
                description=description,
            )
            self.session.add(model)
        return model
