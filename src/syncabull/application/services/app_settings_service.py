"""Engine settings stored in the app_settings table.

Hey future me - precedence is ENV > DB > defaults. An operator who exported SYNC_CONCURRENCY=8
gets 8 no matter what the table says; the table only fills in what the environment left at
its default. pydantic tracks explicitly-set fields in model_fields_set, that's how we know.

Keys look like "sync.<field name>", e.g. "sync.concurrency" or "sync.max_download_speed".
"""

import json
import logging
from typing import Any

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from syncabull.config import SyncSettings
from syncabull.domain.exceptions import ConfigurationError
from syncabull.infrastructure.persistence import AppSettingsRepository

logger = logging.getLogger(__name__)

SYNC_PREFIX = "sync."


class AppSettingsService:
    """Typed writes to the settings table and parsed engine overrides."""

    def __init__(self, session: AsyncSession) -> None:
        self._repo = AppSettingsRepository(session)

    async def set(
        self,
        key: str,
        value: Any,
        category: str = "general",
        description: str | None = None,
    ) -> None:
        """Store a value, remembering its type for later parsing."""
        if isinstance(value, bool):
            value_type, stored = "boolean", "true" if value else "false"
        elif isinstance(value, int):
            value_type, stored = "integer", str(value)
        elif isinstance(value, float):
            value_type, stored = "float", repr(value)
        elif isinstance(value, dict | list):
            value_type, stored = "json", json.dumps(value)
        else:
            value_type, stored = "string", None if value is None else str(value)
        await self._repo.set(
            key, stored, value_type=value_type, category=category, description=description
        )

    async def get_sync_overrides(self) -> dict[str, Any]:
        """All "sync.<field>" rows parsed by their value_type, unknown fields skipped."""
        overrides: dict[str, Any] = {}
        for model in await self._repo.list_by_prefix(SYNC_PREFIX):
            field_name = model.key[len(SYNC_PREFIX) :]
            if field_name not in SyncSettings.model_fields:
                logger.warning("Ignoring unknown engine setting %s", model.key)
                continue
            if model.value is None:
                continue
            try:
                overrides[field_name] = _parse_value(model.value, model.value_type)
            except ValueError as e:
                raise ConfigurationError(f"Engine setting {model.key} is not valid: {e}") from e
        return overrides

    async def apply_sync_overrides(self, sync: SyncSettings) -> SyncSettings:
        """Return `sync` with DB values applied to every field the environment didn't set.

        Raises:
            ConfigurationError: If a stored value fails validation
        """
        overrides = {
            name: value
            for name, value in (await self.get_sync_overrides()).items()
            if name not in sync.model_fields_set
        }
        if not overrides:
            return sync

        merged = sync.model_dump()
        merged.update(overrides)
        try:
            # model_validate (not model_copy) so stored strings are coerced and range-checked
            applied = SyncSettings.model_validate(merged)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid engine setting in app_settings: {e}") from e
        logger.info("Applied engine settings from database: %s", ", ".join(sorted(overrides)))
        return applied


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_value(value: str, value_type: str) -> Any:
    if value_type == "boolean":
        return _parse_bool(value)
    if value_type == "integer":
        return int(value)
    if value_type == "float":
        return float(value)
    if value_type == "json":
        return json.loads(value)
    # strings go through pydantic coercion later
    return value
