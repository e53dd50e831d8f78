import json

import httpx
import structlog

from quotawatch.definitions import ProviderDefinition
from quotawatch.models import (
    DetailType,
    PlanType,
    ProviderConfig,
    ProviderUsage,
    ProviderUsageDetail,
    WindowKind,
)
from quotawatch.provider.base import (
    PartialResultCallback,
    status_description,
    unavailable_usage,
)
from quotawatch.usage_math import used_percent

logger = structlog.get_logger()

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

DEFINITION = ProviderDefinition(
    provider_id="openrouter",
    display_name="OpenRouter",
    plan_type=PlanType.USAGE,
    is_quota_based=False,
    default_config_type="pay-as-you-go",
)


class OpenRouterProvider:
    """
    OpenRouterProvider reads the account credit balance. total_usage and
    total_credits map to used/available, the percentage is "used %".
    The key label is looked up separately and only used as account name.
    """

    def __init__(self, client: "httpx.AsyncClient | None" = None) -> "None":
        self._client: "httpx.AsyncClient" = client or httpx.AsyncClient(timeout=10.0)

    @property
    def provider_id(self) -> "str":
        return DEFINITION.provider_id

    @property
    def definition(self) -> "ProviderDefinition":
        return DEFINITION

    def can_handle(self, provider_id: "str") -> "bool":
        return DEFINITION.handles_provider_id(provider_id)

    async def close(self) -> "None":
        await self._client.aclose()

    async def fetch_usage(
        self,
        config: "ProviderConfig",
        on_partial: "PartialResultCallback | None" = None,
    ) -> "list[ProviderUsage]":
        if not config.api_key:
            raise ValueError("API Key not found.")

        base_url = (config.base_url or OPENROUTER_BASE_URL).rstrip("/")
        headers = {"Authorization": f"Bearer {config.api_key}"}

        url = f"{base_url}/credits"
        logger.debug("openrouter_fetch_credits", url=url)
        try:
            resp = await self._client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("openrouter_request_failed", error=str(exc))
            return [
                unavailable_usage(DEFINITION, config, f"OpenRouter request failed: {exc}")
            ]
        if resp.status_code != 200:
            return [
                unavailable_usage(
                    DEFINITION,
                    config,
                    status_description(resp.status_code, url),
                    http_status=resp.status_code,
                )
            ]

        try:
            data = resp.json().get("data") or {}
            total_credits = float(data.get("total_credits") or 0.0)
            total_usage = float(data.get("total_usage") or 0.0)
        except (json.JSONDecodeError, AttributeError, TypeError, ValueError):
            return [
                unavailable_usage(
                    DEFINITION, config, "Invalid OpenRouter response format"
                )
            ]

        label = await self._fetch_key_label(base_url, headers)
        remaining = max(0.0, total_credits - total_usage)

        return [
            ProviderUsage(
                provider_id=config.provider_id,
                provider_name=DEFINITION.display_name,
                account_name=label,
                requests_used=total_usage,
                requests_available=total_credits,
                requests_percentage=used_percent(total_usage, total_credits),
                plan_type=PlanType.USAGE,
                usage_unit="Credits",
                is_quota_based=False,
                description=f"{total_usage:.2f} / {total_credits:.2f} credits used",
                details=(
                    ProviderUsageDetail(
                        name="Credits",
                        used=f"{remaining:.2f}",
                        description=f"{remaining:.2f} credits remaining",
                        detail_type=DetailType.CREDIT,
                        window_kind=WindowKind.NONE,
                    ),
                ),
                raw_json=resp.text,
                http_status=resp.status_code,
            )
        ]

    async def _fetch_key_label(
        self,
        base_url: "str",
        headers: "dict[str, str]",
    ) -> "str":
        """
        the key label is cosmetic, so failures only cost the account name.
        """
        try:
            resp = await self._client.get(f"{base_url}/key", headers=headers)
            if resp.status_code != 200:
                return ""
            return str((resp.json().get("data") or {}).get("label") or "")
        except (httpx.HTTPError, json.JSONDecodeError, AttributeError):
            logger.debug("openrouter_key_label_failed")
            return ""
