"""
App preferences, privacy consent and shift templates, each kept as one
JSON document.
"""

import json
from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog
from pydantic import TypeAdapter, ValidationError

from patrolsync.errors import StorageError
from patrolsync.models import AppSettings, ConsentRecord, ShiftTemplate, utcnow
from patrolsync.storage import (
    CONSENT_KEY,
    SETTINGS_KEY,
    TEMPLATES_KEY,
    DocumentLocks,
    KeyValueStore,
)

logger = structlog.get_logger(__name__)

CURRENT_PRIVACY_VERSION = "2026-01-05"

_templates_adapter = TypeAdapter(list[ShiftTemplate])


class PreferencesStore:
    def __init__(
        self, store: KeyValueStore, *, locks: DocumentLocks | None = None
    ) -> None:
        self.store = store
        self._locks = locks or DocumentLocks()

    async def _read(self) -> AppSettings:
        raw = await self.store.get(SETTINGS_KEY)
        if not raw:
            return AppSettings()
        try:
            # unknown or missing keys fall back to defaults
            return AppSettings.model_validate_json(raw)
        except ValidationError:
            logger.warning("preferences.corrupt_settings_reset")
            return AppSettings()

    async def get_settings(self) -> AppSettings:
        async with self._locks(SETTINGS_KEY):
            return await self._read()

    async def save_settings(self, **changes: Any) -> AppSettings:
        async with self._locks(SETTINGS_KEY):
            current = await self._read()
            updated = AppSettings.model_validate(
                {**current.model_dump(), **changes}
            )
            await self.store.put(
                SETTINGS_KEY, updated.model_dump_json(by_alias=True)
            )
        return updated


class ConsentStore:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        now_fn: Callable[[], datetime] = utcnow,
        policy_version: str = CURRENT_PRIVACY_VERSION,
    ) -> None:
        self.store = store
        self.now_fn = now_fn
        self.policy_version = policy_version

    async def get_consent(self) -> ConsentRecord:
        raw = await self.store.get(CONSENT_KEY)
        if not raw:
            return ConsentRecord()
        try:
            return ConsentRecord.model_validate_json(raw)
        except ValidationError as exc:
            raise StorageError(f"corrupt consent record: {exc}") from exc

    async def save_consent(self, consent: ConsentRecord) -> None:
        await self.store.put(CONSENT_KEY, consent.model_dump_json(by_alias=True))

    async def has_accepted_current_policy(self) -> bool:
        consent = await self.get_consent()
        return (
            consent.privacy_accepted
            and consent.terms_accepted
            and consent.privacy_policy_version == self.policy_version
        )

    async def accept_required_consents(
        self, *, bg_location: bool = False, analytics: bool = False
    ) -> ConsentRecord:
        consent = ConsentRecord(
            privacy_accepted=True,
            privacy_policy_version=self.policy_version,
            terms_accepted=True,
            bg_location_consent=bg_location,
            analytics_consent=analytics,
            accepted_at=self.now_fn(),
        )
        await self.save_consent(consent)
        logger.info("consent.accepted", policy_version=self.policy_version)
        return consent

    async def withdraw_consent(self) -> None:
        await self.save_consent(ConsentRecord())
        logger.info("consent.withdrawn")


class TemplateStore:
    """
    Site/staff pairs remembered from earlier shifts, most used first.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        locks: DocumentLocks | None = None,
        now_fn: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.now_fn = now_fn
        self._locks = locks or DocumentLocks()

    async def _read(self) -> list[ShiftTemplate]:
        raw = await self.store.get(TEMPLATES_KEY)
        if not raw:
            return []
        try:
            return _templates_adapter.validate_json(raw)
        except ValidationError as exc:
            raise StorageError(f"corrupt shift templates: {exc}") from exc

    async def _write(self, templates: list[ShiftTemplate]) -> None:
        await self.store.put(
            TEMPLATES_KEY, json.dumps([t.to_json_dict() for t in templates])
        )

    async def get_templates(self) -> list[ShiftTemplate]:
        async with self._locks(TEMPLATES_KEY):
            templates = await self._read()
        return sorted(templates, key=lambda t: t.usage_count, reverse=True)

    async def save_template(self, site_name: str, staff_name: str) -> ShiftTemplate:
        """Add a template, or count one more use of a matching one."""
        async with self._locks(TEMPLATES_KEY):
            templates = await self._read()
            template = next(
                (t for t in templates if t.matches(site_name, staff_name)), None
            )
            if template is not None:
                template.usage_count += 1
            else:
                template = ShiftTemplate(
                    site_name=site_name,
                    staff_name=staff_name,
                    created_at=self.now_fn(),
                )
                templates.append(template)
            await self._write(templates)

        logger.debug(
            "templates.saved", template_id=template.id, uses=template.usage_count
        )
        return template

    async def use_template(self, template_id: str) -> ShiftTemplate | None:
        async with self._locks(TEMPLATES_KEY):
            templates = await self._read()
            template = next((t for t in templates if t.id == template_id), None)
            if template is None:
                return None
            template.usage_count += 1
            await self._write(templates)
        return template

    async def delete_template(self, template_id: str) -> None:
        async with self._locks(TEMPLATES_KEY):
            templates = await self._read()
            remaining = [t for t in templates if t.id != template_id]
            if len(remaining) != len(templates):
                await self._write(remaining)
