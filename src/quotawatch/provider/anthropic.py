from quotawatch.definitions import ProviderDefinition
from quotawatch.models import PlanType, ProviderConfig, ProviderUsage
from quotawatch.provider.base import PartialResultCallback

DEFINITION = ProviderDefinition(
    provider_id="anthropic",
    display_name="Anthropic",
    plan_type=PlanType.USAGE,
    is_quota_based=False,
    default_config_type="pay-as-you-go",
)


class AnthropicProvider:
    """
    Anthropic exposes no usage API for plain API keys, so this adapter
    only reports that a key is configured.
    """

    @property
    def provider_id(self) -> "str":
        return DEFINITION.provider_id

    @property
    def definition(self) -> "ProviderDefinition":
        return DEFINITION

    def can_handle(self, provider_id: "str") -> "bool":
        return DEFINITION.handles_provider_id(provider_id)

    async def close(self) -> "None":
        pass

    async def fetch_usage(
        self,
        config: "ProviderConfig",
        on_partial: "PartialResultCallback | None" = None,
    ) -> "list[ProviderUsage]":
        if not config.api_key:
            raise ValueError("API Key missing")

        return [
            ProviderUsage(
                provider_id=DEFINITION.provider_id,
                provider_name=DEFINITION.display_name,
                is_available=True,
                plan_type=PlanType.USAGE,
                usage_unit="Status",
                description="Connected (Check Dashboard)",
            )
        ]
