from pathlib import Path

import httpx

from quotawatch.definitions import ProviderCatalog, ProviderDefinition
from quotawatch.models import PlanType
from quotawatch.provider import anthropic, codex, minimax, opencode_zen, openrouter
from quotawatch.provider.base import UsageProvider

# known providers without an adapter; they still get names and defaults
GENERIC_DEFINITIONS: "tuple[ProviderDefinition, ...]" = (
    ProviderDefinition(
        provider_id="google",
        display_name="Google",
        plan_type=PlanType.CODING,
        is_quota_based=True,
        default_config_type="quota-based",
    ),
    ProviderDefinition(
        provider_id="github",
        display_name="GitHub",
        plan_type=PlanType.CODING,
        is_quota_based=True,
        default_config_type="quota-based",
    ),
)


def build_providers(
    client: "httpx.AsyncClient | None" = None,
    codex_auth_path: "Path | None" = None,
) -> "list[UsageProvider]":
    """
    creates one instance of every adapter. HTTP adapters each own a
    client unless one is passed in.
    """
    return [
        openrouter.OpenRouterProvider(client),
        minimax.MinimaxProvider(client),
        codex.CodexProvider(client, auth_path=codex_auth_path),
        anthropic.AnthropicProvider(),
        opencode_zen.OpenCodeZenProvider(),
    ]


def build_catalog(providers: "list[UsageProvider]") -> "ProviderCatalog":
    return ProviderCatalog(
        [p.definition for p in providers] + list(GENERIC_DEFINITIONS)
    )
