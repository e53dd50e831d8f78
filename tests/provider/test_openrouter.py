import httpx
import pytest
import respx

from quotawatch.models import DetailType, ProviderConfig
from quotawatch.provider.openrouter import OPENROUTER_BASE_URL, OpenRouterProvider


class TestOpenRouterProviderFetchUsage:
    @pytest.mark.asyncio
    @respx.mock
    async def test_fetches_credits_and_label(self) -> "None":
        credits = respx.get(f"{OPENROUTER_BASE_URL}/credits").mock(
            return_value=httpx.Response(
                200,
                json={"data": {"total_credits": 20.0, "total_usage": 5.0}},
            )
        )
        respx.get(f"{OPENROUTER_BASE_URL}/key").mock(
            return_value=httpx.Response(200, json={"data": {"label": "work key"}})
        )

        provider = OpenRouterProvider()
        (usage,) = await provider.fetch_usage(
            ProviderConfig(provider_id="openrouter", api_key="sk-or")
        )
        await provider.close()

        assert credits.calls.last.request.headers["Authorization"] == "Bearer sk-or"
        assert usage.is_available
        assert usage.account_name == "work key"
        assert usage.requests_used == 5.0
        assert usage.requests_available == 20.0
        assert usage.requests_percentage == pytest.approx(25.0)
        assert usage.usage_unit == "Credits"
        assert usage.raw_json is not None
        (detail,) = usage.details or ()
        assert detail.detail_type is DetailType.CREDIT
        assert detail.used == "15.00"

    @pytest.mark.asyncio
    @respx.mock
    async def test_label_failure_only_costs_the_name(self) -> "None":
        respx.get(f"{OPENROUTER_BASE_URL}/credits").mock(
            return_value=httpx.Response(
                200, json={"data": {"total_credits": 10, "total_usage": 1}}
            )
        )
        respx.get(f"{OPENROUTER_BASE_URL}/key").mock(return_value=httpx.Response(500))

        provider = OpenRouterProvider()
        (usage,) = await provider.fetch_usage(
            ProviderConfig(provider_id="openrouter", api_key="sk-or")
        )
        await provider.close()

        assert usage.is_available
        assert usage.account_name == ""

    @pytest.mark.asyncio
    @respx.mock
    async def test_custom_base_url(self) -> "None":
        route = respx.get("https://proxy.local/v1/credits").mock(
            return_value=httpx.Response(401)
        )

        provider = OpenRouterProvider()
        (usage,) = await provider.fetch_usage(
            ProviderConfig(
                provider_id="openrouter", api_key="k", base_url="https://proxy.local/v1/"
            )
        )
        await provider.close()

        assert route.called
        assert not usage.is_available
        assert usage.http_status == 401
        assert usage.description == "Authentication failed (401)"

    @pytest.mark.asyncio
    @respx.mock
    async def test_invalid_payload(self) -> "None":
        respx.get(f"{OPENROUTER_BASE_URL}/credits").mock(
            return_value=httpx.Response(200, text="<html>")
        )

        provider = OpenRouterProvider()
        (usage,) = await provider.fetch_usage(
            ProviderConfig(provider_id="openrouter", api_key="k")
        )
        await provider.close()

        assert not usage.is_available
        assert usage.description == "Invalid OpenRouter response format"

    @pytest.mark.asyncio
    @respx.mock
    async def test_network_error(self) -> "None":
        respx.get(f"{OPENROUTER_BASE_URL}/credits").mock(
            side_effect=httpx.ConnectError("refused")
        )

        provider = OpenRouterProvider()
        (usage,) = await provider.fetch_usage(
            ProviderConfig(provider_id="openrouter", api_key="k")
        )
        await provider.close()

        assert not usage.is_available
        assert usage.description == "OpenRouter request failed: refused"

    @pytest.mark.asyncio
    async def test_missing_key_is_a_config_error(self) -> "None":
        provider = OpenRouterProvider()
        with pytest.raises(ValueError):
            await provider.fetch_usage(ProviderConfig(provider_id="openrouter"))
        await provider.close()
