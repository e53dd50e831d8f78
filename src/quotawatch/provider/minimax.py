import json

import httpx
import structlog

from quotawatch.definitions import ProviderDefinition
from quotawatch.models import PlanType, ProviderConfig, ProviderUsage
from quotawatch.provider.base import (
    PartialResultCallback,
    status_description,
    unavailable_usage,
)
from quotawatch.usage_math import remaining_percent

logger = structlog.get_logger()

MINIMAX_CN_URL = "https://api.minimax.chat/v1/user/usage"
MINIMAX_INTL_URL = "https://api.minimax.io/v1/user/usage"

DEFINITION = ProviderDefinition(
    provider_id="minimax",
    display_name="MiniMax",
    plan_type=PlanType.CODING,
    is_quota_based=True,
    default_config_type="quota-based",
    handled_ids=frozenset({"minimax-io", "minimax-global"}),
    display_name_overrides={
        "minimax-io": "MiniMax (International)",
        "minimax-global": "MiniMax (International)",
    },
)


def resolve_usage_url(config: "ProviderConfig") -> "str":
    """
    base_url wins; otherwise the "-io"/"-global" ids talk to the
    international endpoint.
    """
    if config.base_url:
        url = config.base_url
        if not url.startswith("http"):
            url = f"https://{url}"
        return url

    provider_id = config.provider_id.lower()
    if provider_id.endswith("-io") or provider_id.endswith("-global"):
        return MINIMAX_INTL_URL
    return MINIMAX_CN_URL


class MinimaxProvider:
    """
    MinimaxProvider reports the token allotment of a coding plan. The
    stored percentage is "remaining %" like every quota-based provider.
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
            return [unavailable_usage(DEFINITION, config, "API Key not found.")]

        url = resolve_usage_url(config)
        logger.debug("minimax_fetch_usage", url=url)
        try:
            resp = await self._client.get(
                url, headers={"Authorization": f"Bearer {config.api_key}"}
            )
        except httpx.HTTPError as exc:
            logger.warning("minimax_request_failed", error=str(exc))
            return [
                unavailable_usage(DEFINITION, config, f"MiniMax request failed: {exc}")
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
            usage = resp.json().get("usage")
        except (json.JSONDecodeError, AttributeError) as exc:
            return [
                unavailable_usage(
                    DEFINITION, config, f"Failed to parse MiniMax response: {exc}"
                )
            ]

        try:
            used = float(usage.get("tokens_used") or 0.0)
            limit = max(float(usage.get("tokens_limit") or 0.0), 0.0)
        except (AttributeError, TypeError, ValueError):
            return [
                unavailable_usage(DEFINITION, config, "Invalid MiniMax response format")
            ]

        description = f"{used:,.0f} tokens used"
        if limit > 0:
            description += f" / {limit:,.0f} limit"

        return [
            ProviderUsage(
                provider_id=config.provider_id,
                provider_name=DEFINITION.resolve_display_name(config.provider_id)
                or DEFINITION.display_name,
                requests_used=used,
                requests_available=limit,
                requests_percentage=remaining_percent(used, limit),
                plan_type=PlanType.CODING,
                usage_unit="Tokens",
                is_quota_based=True,
                display_as_fraction=limit > 0,
                description=description,
                raw_json=resp.text,
            )
        ]
