import asyncio
import json
import os
from pathlib import Path
from typing import Any, Mapping

import structlog

from quotawatch.models import PlanType, Preferences, ProviderConfig
from quotawatch.provider import codex

logger = structlog.get_logger()

# env var -> provider id, checked by scan_for_keys
KEY_ENV_VARS: "dict[str, str]" = {
    "OPENROUTER_API_KEY": "openrouter",
    "MINIMAX_API_KEY": "minimax",
    "ANTHROPIC_API_KEY": "anthropic",
    "CODEX_ACCESS_TOKEN": "codex",
}

_CODING_PROVIDER_IDS = frozenset({"minimax", "codex"})


def config_to_dict(config: "ProviderConfig") -> "dict[str, Any]":
    return {
        "provider_id": config.provider_id,
        "api_key": config.api_key,
        "config_type": config.config_type,
        "base_url": config.base_url,
        "show_in_tray": config.show_in_tray,
        "enable_notifications": config.enable_notifications,
        "enabled_sub_trays": list(config.enabled_sub_trays),
        "description": config.description,
        "auth_source": config.auth_source,
        "plan_type": config.plan_type.value,
    }


def config_from_dict(data: "Mapping[str, Any]") -> "ProviderConfig":
    provider_id = str(data.get("provider_id") or "").strip()
    if not provider_id:
        raise ValueError("provider_id is required")

    return ProviderConfig(
        provider_id=provider_id,
        api_key=data.get("api_key") or "",
        config_type=data.get("config_type") or "pay-as-you-go",
        base_url=data.get("base_url"),
        show_in_tray=bool(data.get("show_in_tray", True)),
        enable_notifications=bool(data.get("enable_notifications", True)),
        enabled_sub_trays=list(data.get("enabled_sub_trays") or []),
        description=data.get("description"),
        auth_source=data.get("auth_source") or "",
        plan_type=PlanType(data.get("plan_type") or PlanType.USAGE.value),
    )


def preferences_to_dict(prefs: "Preferences") -> "dict[str, Any]":
    return {
        "enable_notifications": prefs.enable_notifications,
        "notification_threshold": prefs.notification_threshold,
    }


def preferences_from_dict(data: "Mapping[str, Any]") -> "Preferences":
    return Preferences(
        enable_notifications=bool(data.get("enable_notifications", False)),
        notification_threshold=float(data.get("notification_threshold", 90.0)),
    )


class JsonConfigStore:
    """
    JsonConfigStore keeps provider configs and preferences in one JSON
    file:

        {"providers": [...], "preferences": {...}}

    A missing file means no configs and default preferences. Every
    write replaces the file atomically. File access runs in a worker
    thread; a lock serializes read-modify-write cycles.
    """

    def __init__(
        self,
        path: "Path",
        environ: "Mapping[str, str] | None" = None,
        codex_auth_path: "Path | None" = None,
    ) -> "None":
        self._path = path
        self._environ = environ if environ is not None else os.environ
        self._codex_auth_path = codex_auth_path or codex.DEFAULT_AUTH_PATH
        self._lock: "asyncio.Lock" = asyncio.Lock()

    @property
    def path(self) -> "Path":
        return self._path

    def _read_document(self) -> "dict[str, Any]":
        if not self._path.is_file():
            return {"providers": [], "preferences": {}}

        doc = json.loads(self._path.read_text(encoding="utf-8"))
        if not isinstance(doc, dict):
            raise ValueError(f"{self._path} does not contain a JSON object")
        doc.setdefault("providers", [])
        doc.setdefault("preferences", {})
        return doc

    def _write_document(self, doc: "dict[str, Any]") -> "None":
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(self._path.name + ".tmp")
        tmp.write_text(json.dumps(doc, indent=2), encoding="utf-8")
        os.replace(tmp, self._path)

    async def _load(self) -> "dict[str, Any]":
        return await asyncio.to_thread(self._read_document)

    async def _save(self, doc: "dict[str, Any]") -> "None":
        await asyncio.to_thread(self._write_document, doc)

    async def load_configs(self) -> "list[ProviderConfig]":
        doc = await self._load()
        configs: "list[ProviderConfig]" = []
        for entry in doc["providers"]:
            try:
                configs.append(config_from_dict(entry))
            except (TypeError, ValueError) as exc:
                logger.warning("config_entry_invalid", error=str(exc))
        return configs

    async def save_config(self, config: "ProviderConfig") -> "None":
        """
        inserts or replaces the config with the same provider id
        (case-insensitive).
        """
        async with self._lock:
            doc = await self._load()
            target = config.provider_id.lower()
            providers = [
                p
                for p in doc["providers"]
                if str(p.get("provider_id", "")).lower() != target
            ]
            providers.append(config_to_dict(config))
            doc["providers"] = providers
            await self._save(doc)
        logger.info("config_saved", provider=config.provider_id)

    async def remove_config(self, provider_id: "str") -> "bool":
        async with self._lock:
            doc = await self._load()
            target = provider_id.lower()
            providers = [
                p
                for p in doc["providers"]
                if str(p.get("provider_id", "")).lower() != target
            ]
            removed = len(providers) != len(doc["providers"])
            if removed:
                doc["providers"] = providers
                await self._save(doc)

        if removed:
            logger.info("config_removed", provider=provider_id)
        return removed

    async def load_preferences(self) -> "Preferences":
        doc = await self._load()
        return preferences_from_dict(doc["preferences"])

    async def save_preferences(self, prefs: "Preferences") -> "None":
        async with self._lock:
            doc = await self._load()
            doc["preferences"] = preferences_to_dict(prefs)
            await self._save(doc)

    def discover_keys(self) -> "list[ProviderConfig]":
        """
        returns a config for every credential found in the environment
        or in the Codex CLI login. Nothing is saved.
        """
        found: "dict[str, ProviderConfig]" = {}
        for env_name, provider_id in KEY_ENV_VARS.items():
            value = (self._environ.get(env_name) or "").strip()
            if not value:
                continue
            found[provider_id] = ProviderConfig(
                provider_id=provider_id,
                api_key=value,
                config_type=(
                    "quota-based" if provider_id in _CODING_PROVIDER_IDS else "pay-as-you-go"
                ),
                plan_type=(
                    PlanType.CODING
                    if provider_id in _CODING_PROVIDER_IDS
                    else PlanType.USAGE
                ),
                auth_source=f"Env: {env_name}",
            )

        if "codex" not in found:
            auth = codex.read_native_auth(self._codex_auth_path)
            if auth is not None:
                found["codex"] = ProviderConfig(
                    provider_id="codex",
                    api_key=auth.access_token,
                    config_type="quota-based",
                    plan_type=PlanType.CODING,
                    auth_source="Codex Native",
                )
        return list(found.values())

    async def scan_for_keys(self) -> "list[ProviderConfig]":
        """
        saves every discovered credential whose provider has no stored
        config yet, and returns everything that was discovered.
        """
        discovered = await asyncio.to_thread(self.discover_keys)
        stored = {c.provider_id.lower() for c in await self.load_configs()}

        for config in discovered:
            if config.provider_id.lower() in stored:
                continue
            await self.save_config(config)
            logger.info(
                "key_discovered",
                provider=config.provider_id,
                source=config.auth_source,
            )
        return discovered
