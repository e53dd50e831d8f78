import asyncio
import base64
import json
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

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
    utc_now,
)
from quotawatch.provider.base import PartialResultCallback
from quotawatch.usage_math import clamp_percent

logger = structlog.get_logger()

CODEX_USAGE_URL = "https://chatgpt.com/backend-api/wham/usage"
DEFAULT_AUTH_PATH = Path.home() / ".codex" / "auth.json"

_AUTH_CLAIM_KEY = "https://api.openai.com/auth"
_PROFILE_CLAIM_KEY = "https://api.openai.com/profile"

DEFINITION = ProviderDefinition(
    provider_id="codex",
    display_name="OpenAI Codex",
    plan_type=PlanType.CODING,
    is_quota_based=True,
    default_config_type="quota-based",
    handled_ids=frozenset({"openai"}),
    supports_child_ids=True,
    display_name_overrides={
        "codex.primary": "Codex [OpenAI Codex]",
        "codex.spark": "Codex Spark [OpenAI Codex]",
    },
)


@dataclass(frozen=True, slots=True)
class CodexAuth:
    access_token: "str"
    account_id: "str | None" = None
    identity: "str | None" = None


@dataclass(frozen=True, slots=True)
class AdditionalWindow:
    label: "str"
    model_name: "str | None"
    used_percent: "float | None"
    reset_after_seconds: "float | None"

    @property
    def is_spark(self) -> "bool":
        return "spark" in self.label.lower()


def _read(root: "Any", *path: "str") -> "Any":
    current = root
    for segment in path:
        if not isinstance(current, dict) or segment not in current:
            return None
        current = current[segment]
    return current


def _read_str(root: "Any", *path: "str") -> "str | None":
    value = _read(root, *path)
    return value if isinstance(value, str) and value.strip() else None


def _read_float(root: "Any", *path: "str") -> "float | None":
    value = _read(root, *path)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _is_email(value: "str | None") -> "bool":
    return bool(value) and "@" in value


def decode_jwt_claims(token: "str") -> "tuple[str | None, str | None]":
    """
    returns (email, chatgpt plan type) from the unverified JWT payload.
    """
    parts = token.split(".")
    if len(parts) < 2:
        return None, None

    try:
        payload = parts[1] + "=" * (-len(parts[1]) % 4)
        claims = json.loads(base64.urlsafe_b64decode(payload))
    except (ValueError, UnicodeDecodeError):
        return None, None
    if not isinstance(claims, dict):
        return None, None

    email = next(
        (
            claims[k]
            for k in ("email", "upn", "preferred_username")
            if isinstance(claims.get(k), str) and _is_email(claims[k])
        ),
        None,
    )
    if email is None:
        profile_email = _read_str(claims, _PROFILE_CLAIM_KEY, "email")
        email = profile_email if _is_email(profile_email) else None

    return email, _read_str(claims, _AUTH_CLAIM_KEY, "chatgpt_plan_type")


def extract_additional_windows(root: "dict[str, Any]") -> "list[AdditionalWindow]":
    windows: "list[AdditionalWindow]" = []

    for item in root.get("additional_rate_limits") or []:
        label = _read_str(item, "limit_name")
        if not label:
            continue
        used = _read_float(item, "rate_limit", "primary_window", "used_percent")
        reset = _read_float(item, "rate_limit", "primary_window", "reset_after_seconds")
        if used is None and reset is None:
            continue
        windows.append(
            AdditionalWindow(
                label=label,
                model_name=_read_str(item, "model_name") or _read_str(item, "model"),
                used_percent=used,
                reset_after_seconds=reset,
            )
        )

    # primary and secondary windows become detail rows of the parent
    rate_limit = root.get("rate_limit")
    if isinstance(rate_limit, dict):
        for name, window in rate_limit.items():
            if name in ("primary_window", "secondary_window"):
                continue
            used = _read_float(window, "used_percent")
            reset = _read_float(window, "reset_after_seconds")
            if used is None and reset is None:
                continue
            windows.append(
                AdditionalWindow(
                    label=name,
                    model_name=_read_str(window, "model_name")
                    or _read_str(window, "model"),
                    used_percent=used,
                    reset_after_seconds=reset,
                )
            )

    return windows


def _normalize_model_name(raw: "str | None") -> "str | None":
    if not raw or not raw.strip():
        return None
    return re.sub(r"\s+", " ", raw.strip().replace("_", "-"))


def _reset_time(reset_after_seconds: "float | None") -> "datetime | None":
    if not reset_after_seconds or reset_after_seconds <= 0:
        return None
    return utc_now() + timedelta(seconds=reset_after_seconds)


def _reset_description(reset_after_seconds: "float | None") -> "str":
    if not reset_after_seconds or reset_after_seconds <= 0:
        return ""
    return f"Resets in {int(reset_after_seconds)}s"


def read_native_auth(path: "Path" = DEFAULT_AUTH_PATH) -> "CodexAuth | None":
    """
    reads the Codex CLI login. Both the current ("tokens") and the
    opencode-style ("openai") layouts are understood.
    """
    if not path.is_file():
        return None

    try:
        root = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        logger.debug("codex_auth_read_failed", path=str(path))
        return None

    tokens = _read(root, "tokens")
    if isinstance(tokens, dict) and _read_str(tokens, "access_token"):
        access_token = _read_str(tokens, "access_token") or ""
        id_email, _ = decode_jwt_claims(_read_str(tokens, "id_token") or "")
        return CodexAuth(
            access_token=access_token,
            account_id=_read_str(tokens, "account_id"),
            identity=id_email or decode_jwt_claims(access_token)[0],
        )

    openai = _read(root, "openai")
    if isinstance(openai, dict) and _read_str(openai, "access"):
        access_token = _read_str(openai, "access") or ""
        return CodexAuth(
            access_token=access_token,
            account_id=_read_str(openai, "accountId")
            or _read_str(openai, "account_id"),
            identity=decode_jwt_claims(access_token)[0],
        )

    return None


def child_id_for(window: "AdditionalWindow") -> "str":
    if window.is_spark:
        return "codex.spark"
    name = _normalize_model_name(window.model_name) or window.label
    return "codex." + re.sub(r"[^a-z0-9.-]+", "-", name.lower()).strip("-")


class CodexProvider:
    """
    CodexProvider reads the ChatGPT/Codex rate-limit windows with the
    token of the local Codex CLI login (falling back to the configured
    key). The primary 5-hour window becomes "codex.primary" with the
    quota, model and credit rows attached, and every additional window
    (e.g. spark) is flattened into a child record of its own.
    """

    def __init__(
        self,
        client: "httpx.AsyncClient | None" = None,
        auth_path: "Path | None" = None,
    ) -> "None":
        self._client: "httpx.AsyncClient" = client or httpx.AsyncClient(timeout=10.0)
        self._auth_path = auth_path or DEFAULT_AUTH_PATH

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
        auth = await asyncio.to_thread(self.load_native_auth)
        token = auth.access_token if auth else config.api_key
        if not token:
            return [
                self._unavailable(
                    "Codex auth token not found (~/.codex/auth.json or session token)"
                )
            ]

        headers = {"Authorization": f"Bearer {token}"}
        if auth and auth.account_id:
            headers["ChatGPT-Account-Id"] = auth.account_id

        try:
            resp = await self._client.get(CODEX_USAGE_URL, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("codex_usage_request_failed", error=str(exc))
            return [self._unavailable(f"Codex native lookup failed: {exc}")]

        if resp.status_code in (401, 403):
            return [
                self._unavailable(
                    f"Authentication failed ({resp.status_code})", resp.status_code
                )
            ]
        if resp.status_code >= 400:
            return [
                self._unavailable(
                    f"Usage request failed ({resp.status_code})", resp.status_code
                )
            ]

        try:
            root = resp.json()
        except json.JSONDecodeError:
            logger.warning("codex_usage_parse_failed")
            return [self._unavailable("Invalid Codex usage response format")]
        if not isinstance(root, dict):
            return [self._unavailable("Invalid Codex usage response format")]

        detail = _read_str(root, "detail")
        if detail:
            return [self._unavailable(detail)]

        email, jwt_plan = decode_jwt_claims(token)
        identity = (
            _read_str(root, "email")
            or email
            or (auth.identity if auth else None)
            or (auth.account_id if auth else None)
            or ""
        )
        return self.build_usages(root, jwt_plan, identity, resp.text)

    def build_usages(
        self,
        root: "dict[str, Any]",
        jwt_plan: "str | None",
        identity: "str",
        raw_json: "str | None" = None,
    ) -> "list[ProviderUsage]":
        plan = _read_str(root, "plan_type") or jwt_plan or "unknown"
        primary_used = _read_float(root, "rate_limit", "primary_window", "used_percent")
        primary_used = clamp_percent(primary_used or 0.0)
        primary_reset = _read_float(
            root, "rate_limit", "primary_window", "reset_after_seconds"
        )
        windows = extract_additional_windows(root)
        primary_remaining = clamp_percent(100.0 - primary_used)

        usages = [
            ProviderUsage(
                provider_id="codex.primary",
                provider_name=DEFINITION.display_name_overrides["codex.primary"],
                account_name=identity,
                requests_used=primary_used,
                requests_available=100.0,
                requests_percentage=primary_remaining,
                plan_type=PlanType.CODING,
                usage_unit="Quota %",
                is_quota_based=True,
                description=(
                    f"{primary_remaining:.0f}% remaining "
                    f"({primary_used:.0f}% used) | Plan: {plan}"
                ),
                auth_source=f"Codex Native ({plan})",
                next_reset_time=_reset_time(primary_reset),
                details=tuple(self.build_details(root, windows)),
                raw_json=raw_json,
            )
        ]

        for window in windows:
            if window.used_percent is None:
                continue
            used = clamp_percent(window.used_percent)
            remaining = clamp_percent(100.0 - used)
            child_id = child_id_for(window)
            model_name = _normalize_model_name(window.model_name) or window.label
            usages.append(
                ProviderUsage(
                    provider_id=child_id,
                    provider_name=DEFINITION.resolve_display_name(child_id)
                    or f"{model_name} [OpenAI Codex]",
                    account_name=identity,
                    requests_used=used,
                    requests_available=100.0,
                    requests_percentage=remaining,
                    plan_type=PlanType.CODING,
                    usage_unit="Quota %",
                    is_quota_based=True,
                    description=(
                        f"{remaining:.0f}% remaining ({used:.0f}% used) | Plan: {plan}"
                    ),
                    auth_source=f"Codex Native ({plan})",
                    next_reset_time=_reset_time(window.reset_after_seconds),
                )
            )

        return usages

    def build_details(
        self,
        root: "dict[str, Any]",
        windows: "list[AdditionalWindow]",
    ) -> "list[ProviderUsageDetail]":
        primary_used = clamp_percent(
            _read_float(root, "rate_limit", "primary_window", "used_percent") or 0.0
        )
        primary_reset = _read_float(
            root, "rate_limit", "primary_window", "reset_after_seconds"
        )
        primary_remaining = clamp_percent(100.0 - primary_used)

        details = [
            ProviderUsageDetail(
                name="Codex",
                model_name=_normalize_model_name(_read_str(root, "model_name"))
                or "OpenAI (Codex)",
                used=f"{primary_remaining:.0f}%",
                detail_type=DetailType.MODEL,
                window_kind=WindowKind.PRIMARY,
            ),
            ProviderUsageDetail(
                name="5-hour quota",
                used=f"{primary_remaining:.0f}% remaining ({primary_used:.0f}% used)",
                description=_reset_description(primary_reset),
                next_reset_time=_reset_time(primary_reset),
                detail_type=DetailType.QUOTA_WINDOW,
                window_kind=WindowKind.PRIMARY,
            ),
        ]

        secondary_used = _read_float(
            root, "rate_limit", "secondary_window", "used_percent"
        )
        if secondary_used is not None:
            secondary_used = clamp_percent(secondary_used)
            secondary_reset = _read_float(
                root, "rate_limit", "secondary_window", "reset_after_seconds"
            )
            details.append(
                ProviderUsageDetail(
                    name="Weekly quota",
                    used=(
                        f"{100.0 - secondary_used:.0f}% remaining "
                        f"({secondary_used:.0f}% used)"
                    ),
                    description=_reset_description(secondary_reset),
                    next_reset_time=_reset_time(secondary_reset),
                    detail_type=DetailType.QUOTA_WINDOW,
                    window_kind=WindowKind.SECONDARY,
                )
            )

        for window in windows:
            if window.used_percent is None:
                continue
            used = clamp_percent(window.used_percent)
            details.append(
                ProviderUsageDetail(
                    name=_normalize_model_name(window.model_name) or window.label,
                    model_name=window.model_name or "",
                    used=f"{100.0 - used:.0f}% remaining ({used:.0f}% used)",
                    description=_reset_description(window.reset_after_seconds),
                    next_reset_time=_reset_time(window.reset_after_seconds),
                    detail_type=DetailType.MODEL,
                    window_kind=WindowKind.SPARK if window.is_spark else WindowKind.NONE,
                )
            )

        balance = _read_float(root, "credits", "balance")
        unlimited = _read(root, "credits", "unlimited")
        if balance is not None or isinstance(unlimited, bool):
            if unlimited is True:
                credit_value = "Unlimited"
            elif balance is not None:
                credit_value = f"{balance:.2f}"
            else:
                credit_value = "Unknown"
            details.append(
                ProviderUsageDetail(
                    name="Credits",
                    used=credit_value,
                    detail_type=DetailType.CREDIT,
                    window_kind=WindowKind.NONE,
                )
            )

        return details

    def load_native_auth(self) -> "CodexAuth | None":
        return read_native_auth(self._auth_path)

    def _unavailable(self, message: "str", http_status: "int" = 200) -> "ProviderUsage":
        return ProviderUsage(
            provider_id=DEFINITION.provider_id,
            provider_name=DEFINITION.display_name,
            is_available=False,
            is_quota_based=True,
            plan_type=PlanType.CODING,
            requests_available=100.0,
            usage_unit="Quota %",
            description=message,
            auth_source="Codex Native",
            http_status=http_status,
        )
