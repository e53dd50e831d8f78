from typing import Callable, Protocol, Sequence

from quotawatch.definitions import ProviderDefinition
from quotawatch.models import ProviderConfig, ProviderUsage

# invoked once per usage record as soon as it is available
PartialResultCallback = Callable[[ProviderUsage], None]


class UsageProvider(Protocol):
    """
    UsageProvider stands as a common protocol that all provider
    adapters must satisfy.

    An adapter fetches one account's usage and returns one or more
    normalized ProviderUsage records. Child ids discovered while parsing
    ("codex.spark") are returned as records of their own. Every detail
    row must carry a concrete DetailType, and quota windows a WindowKind.

    Adapters turn expected failures into is_available=False records and
    raise ValueError only when the config is unusable.
    """

    @property
    def provider_id(self) -> "str": ...

    @property
    def definition(self) -> "ProviderDefinition": ...

    def can_handle(self, provider_id: "str") -> "bool": ...

    async def fetch_usage(
        self,
        config: "ProviderConfig",
        on_partial: "PartialResultCallback | None" = None,
    ) -> "Sequence[ProviderUsage]": ...

    async def close(self) -> "None": ...


def unavailable_usage(
    definition: "ProviderDefinition",
    config: "ProviderConfig",
    description: "str",
    http_status: "int" = 200,
) -> "ProviderUsage":
    """
    builds the record an adapter returns when it could not read usage.
    """
    return ProviderUsage(
        provider_id=config.provider_id,
        provider_name=definition.resolve_display_name(config.provider_id)
        or definition.display_name,
        is_available=False,
        is_quota_based=definition.is_quota_based,
        plan_type=definition.plan_type,
        description=description,
        auth_source=config.auth_source,
        http_status=http_status,
    )


def status_description(status_code: "int", url: "str") -> "str":
    if status_code in (401, 403):
        return f"Authentication failed ({status_code})"
    return f"API returned {status_code} for {url}"
