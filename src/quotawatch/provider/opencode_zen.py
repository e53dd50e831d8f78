import asyncio
import re
import shutil

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
from quotawatch.provider.base import PartialResultCallback, unavailable_usage

logger = structlog.get_logger()

DEFINITION = ProviderDefinition(
    provider_id="opencode-zen",
    display_name="OpenCode Zen",
    plan_type=PlanType.USAGE,
    is_quota_based=False,
    default_config_type="pay-as-you-go",
    auto_include=True,
)

STATS_ARGS = ("stats", "--days", "7", "--models", "10")

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")
_TOTAL_COST_RE = re.compile(r"Total Cost\s+\$([0-9.]+)")
_SESSIONS_RE = re.compile(r"Sessions\s+([0-9,]+)")
_MESSAGES_RE = re.compile(r"Messages\s+([0-9,]+)")
_AVG_COST_RE = re.compile(r"Avg Cost/Day\s+\$([0-9.]+)")


def _match_float(pattern: "re.Pattern[str]", text: "str") -> "float":
    m = pattern.search(text)
    return float(m.group(1)) if m else 0.0


def _match_int(pattern: "re.Pattern[str]", text: "str") -> "int":
    m = pattern.search(text)
    return int(m.group(1).replace(",", "")) if m else 0


def parse_stats_output(output: "str", config: "ProviderConfig") -> "ProviderUsage":
    cleaned = _ANSI_RE.sub("", output)
    total_cost = _match_float(_TOTAL_COST_RE, cleaned)
    sessions = _match_int(_SESSIONS_RE, cleaned)
    messages = _match_int(_MESSAGES_RE, cleaned)
    avg_cost = _match_float(_AVG_COST_RE, cleaned)

    return ProviderUsage(
        provider_id=DEFINITION.provider_id,
        provider_name=DEFINITION.display_name,
        requests_used=total_cost,
        requests_available=0.0,
        # pay as you go, there is no limit to compare against
        requests_percentage=0.0,
        plan_type=PlanType.USAGE,
        usage_unit="USD",
        is_quota_based=False,
        description=f"${total_cost:.2f} ({sessions} sessions, {messages} msgs)",
        auth_source=config.auth_source,
        details=(
            ProviderUsageDetail(
                name="Sessions",
                used=str(sessions),
                description=f"{sessions} sessions",
                detail_type=DetailType.OTHER,
                window_kind=WindowKind.NONE,
            ),
            ProviderUsageDetail(
                name="Messages",
                used=str(messages),
                description=f"{messages} messages",
                detail_type=DetailType.OTHER,
                window_kind=WindowKind.NONE,
            ),
            ProviderUsageDetail(
                name="Avg Cost/Day",
                used=f"${avg_cost:.2f}",
                description=f"${avg_cost:.2f}",
                detail_type=DetailType.OTHER,
                window_kind=WindowKind.NONE,
            ),
        ),
    )


class OpenCodeZenProvider:
    """
    OpenCodeZenProvider reads the last seven days of spend from the
    local opencode CLI. It needs no credentials and is always included.
    """

    def __init__(
        self,
        cli_path: "str" = "opencode",
        timeout_seconds: "float" = 5.0,
    ) -> "None":
        self._cli_path = cli_path
        self._timeout = timeout_seconds

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
        executable = shutil.which(self._cli_path)
        if executable is None:
            return [
                unavailable_usage(DEFINITION, config, "CLI not found at expected path")
            ]

        try:
            output = await self._run_cli(executable)
        except (OSError, RuntimeError, TimeoutError) as exc:
            logger.warning("opencode_cli_failed", error=str(exc))
            return [unavailable_usage(DEFINITION, config, f"CLI Error: {exc}")]

        return [parse_stats_output(output, config)]

    async def _run_cli(self, executable: "str") -> "str":
        proc = await asyncio.create_subprocess_exec(
            executable,
            *STATS_ARGS,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self._timeout
            )
        except TimeoutError:
            proc.kill()
            await proc.wait()
            raise

        if proc.returncode != 0:
            raise RuntimeError(
                f"{proc.returncode} - {stderr.decode(errors='replace').strip()}"
            )
        return stdout.decode(errors="replace")
