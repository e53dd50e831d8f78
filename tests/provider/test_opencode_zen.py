import pytest

from quotawatch.models import DetailType, ProviderConfig
from quotawatch.provider.opencode_zen import OpenCodeZenProvider, parse_stats_output

STATS_OUTPUT = """\
\x1b[1m┌────────────────────────────────┐\x1b[0m
│ Sessions                 1,204 │
│ Messages                 9,876 │
│ Total Cost              $12.34 │
│ Avg Cost/Day             $1.76 │
└────────────────────────────────┘
"""


class TestParseStatsOutput:
    def test_parses_totals(self) -> "None":
        usage = parse_stats_output(STATS_OUTPUT, ProviderConfig(provider_id="opencode-zen"))

        assert usage.provider_id == "opencode-zen"
        assert usage.requests_used == pytest.approx(12.34)
        assert usage.requests_percentage == 0.0
        assert usage.description == "$12.34 (1204 sessions, 9876 msgs)"
        assert [d.used for d in usage.details or ()] == ["1204", "9876", "$1.76"]
        assert all(d.detail_type is DetailType.OTHER for d in usage.details or ())

    def test_empty_output(self) -> "None":
        usage = parse_stats_output("", ProviderConfig(provider_id="opencode-zen"))
        assert usage.requests_used == 0.0
        assert usage.description == "$0.00 (0 sessions, 0 msgs)"


class TestOpenCodeZenProvider:
    @pytest.mark.asyncio
    async def test_missing_cli(self) -> "None":
        provider = OpenCodeZenProvider(cli_path="definitely-not-opencode-cli")

        (usage,) = await provider.fetch_usage(ProviderConfig(provider_id="opencode-zen"))

        assert not usage.is_available
        assert usage.description == "CLI not found at expected path"

    def test_always_included(self) -> "None":
        assert OpenCodeZenProvider().definition.auto_include
