import copy
import math
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum


class PlanType(str, Enum):
    USAGE = "usage"
    CODING = "coding"


class DetailType(str, Enum):
    """
    DetailType classifies a detail row so consumers never need to
    sniff display strings.
    """

    UNKNOWN = "unknown"
    QUOTA_WINDOW = "quota_window"
    CREDIT = "credit"
    MODEL = "model"
    OTHER = "other"


class WindowKind(str, Enum):
    NONE = "none"
    PRIMARY = "primary"
    SECONDARY = "secondary"
    SPARK = "spark"


def utc_now() -> "datetime":
    return datetime.now(UTC)


def as_utc(value: "datetime | None") -> "datetime | None":
    """
    treats naive datetimes as UTC and converts aware ones to UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@dataclass(frozen=True, slots=True)
class ProviderUsageDetail:
    """
    ProviderUsageDetail is one typed sub-row of a usage record, e.g.
    a quota window, a credit balance or a per-model slice.
    """

    name: "str" = ""
    model_name: "str" = ""
    group_name: "str" = ""
    used: "str" = ""
    description: "str" = ""
    next_reset_time: "datetime | None" = None
    detail_type: "DetailType" = DetailType.UNKNOWN
    window_kind: "WindowKind" = WindowKind.NONE

    def is_primary_quota(self) -> "bool":
        return (
            self.detail_type is DetailType.QUOTA_WINDOW
            and self.window_kind is WindowKind.PRIMARY
        )

    def is_secondary_quota(self) -> "bool":
        return (
            self.detail_type is DetailType.QUOTA_WINDOW
            and self.window_kind is WindowKind.SECONDARY
        )

    def is_window_quota(self) -> "bool":
        return self.detail_type is DetailType.QUOTA_WINDOW

    def is_credit(self) -> "bool":
        return self.detail_type is DetailType.CREDIT

    def is_displayable_sub_provider(self) -> "bool":
        return self.detail_type in (DetailType.MODEL, DetailType.OTHER)

    def is_contract_valid(self) -> "bool":
        """
        provider output must never carry an UNKNOWN detail type, and
        quota windows must say which window they are.
        """
        if self.detail_type is DetailType.UNKNOWN:
            return False
        if (
            self.detail_type is DetailType.QUOTA_WINDOW
            and self.window_kind is WindowKind.NONE
        ):
            return False
        return True


@dataclass(frozen=True, slots=True)
class ProviderUsage:
    """
    ProviderUsage is the normalized output of one provider fetch and
    one sample of the usage time series. fetched_at is the series key.

    requests_percentage is "used %" for usage plans and "remaining %"
    for quota-based or coding plans, see usage_math.effective_used_percent.
    """

    provider_id: "str"
    provider_name: "str" = ""
    account_name: "str" = ""
    requests_used: "float" = 0.0
    requests_available: "float" = 0.0
    requests_percentage: "float" = 0.0
    plan_type: "PlanType" = PlanType.USAGE
    usage_unit: "str" = "USD"
    is_quota_based: "bool" = False
    display_as_fraction: "bool" = False
    is_available: "bool" = True
    description: "str" = ""
    auth_source: "str" = ""
    fetched_at: "datetime" = field(default_factory=utc_now)
    response_latency_ms: "float" = 0.0
    http_status: "int" = 200
    details: "tuple[ProviderUsageDetail, ...] | None" = None
    next_reset_time: "datetime | None" = None
    raw_json: "str | None" = None

    def __post_init__(self) -> "None":
        # frozen: normalize through object.__setattr__
        pct = self.requests_percentage
        if math.isnan(pct) or math.isinf(pct):
            pct = 0.0
        object.__setattr__(self, "requests_percentage", min(max(pct, 0.0), 100.0))
        object.__setattr__(self, "fetched_at", as_utc(self.fetched_at))
        object.__setattr__(self, "next_reset_time", as_utc(self.next_reset_time))
        if self.details is not None and not isinstance(self.details, tuple):
            object.__setattr__(self, "details", tuple(self.details))

    def friendly_name(self) -> "str":
        """
        the adapter-provided name wins; otherwise the id is title-cased,
        e.g. "github-copilot" -> "Github Copilot", "codex.spark" -> "Codex Spark".
        """
        if self.provider_name.strip() and (
            self.provider_name.lower() != self.provider_id.lower()
        ):
            return self.provider_name

        if not self.provider_id.strip():
            return "Unknown Provider"

        name = self.provider_id.replace("_", " ").replace("-", " ").replace(".", " ")
        return name.title()


def detail_contract_violations(usage: "ProviderUsage") -> "list[str]":
    """
    lists every detail row of the record that breaks the typed detail
    contract. An empty list means the record is valid.
    """
    violations: "list[str]" = []
    for index, detail in enumerate(usage.details or ()):
        if detail.detail_type is DetailType.UNKNOWN:
            violations.append(f"detail[{index}] '{detail.name}' has type unknown")
        elif not detail.is_contract_valid():
            violations.append(
                f"detail[{index}] '{detail.name}' is a quota window without a kind"
            )
    return violations


@dataclass
class ProviderConfig:
    """
    ProviderConfig is the persisted account configuration of one
    provider. It is edited by the config surface, so it is mutable;
    callers that need to change a shared instance clone() it first.
    """

    provider_id: "str"
    api_key: "str" = ""
    config_type: "str" = "pay-as-you-go"
    base_url: "str | None" = None
    show_in_tray: "bool" = True
    enable_notifications: "bool" = True
    enabled_sub_trays: "list[str]" = field(default_factory=list)
    description: "str | None" = None
    auth_source: "str" = ""
    plan_type: "PlanType" = PlanType.USAGE

    def clone(self) -> "ProviderConfig":
        return copy.deepcopy(self)


@dataclass
class Preferences:
    enable_notifications: "bool" = False
    # alert when the effective used percentage reaches this value
    notification_threshold: "float" = 90.0


@dataclass(frozen=True, slots=True)
class BurnRateForecast:
    is_available: "bool"
    reason: "str | None" = None
    burn_rate_per_day: "float" = 0.0
    remaining_units: "float" = 0.0
    days_until_exhausted: "float" = 0.0
    estimated_exhaustion_utc: "datetime | None" = None
    sample_count: "int" = 0

    @classmethod
    def unavailable(cls, reason: "str") -> "BurnRateForecast":
        return cls(is_available=False, reason=reason)


@dataclass(frozen=True, slots=True)
class ProviderReliabilitySnapshot:
    is_available: "bool"
    reason: "str | None" = None
    sample_count: "int" = 0
    success_count: "int" = 0
    failure_count: "int" = 0
    failure_rate_percent: "float" = 0.0
    average_sync_interval_minutes: "float" = 0.0
    last_successful_sync_utc: "datetime | None" = None
    last_seen_utc: "datetime | None" = None

    @classmethod
    def unavailable(cls, reason: "str") -> "ProviderReliabilitySnapshot":
        return cls(is_available=False, reason=reason)


@dataclass(frozen=True, slots=True)
class ResetEvent:
    provider_id: "str"
    provider_name: "str"
    previous_usage: "float"
    new_usage: "float"
    reset_type: "str" = "Automatic"
    timestamp: "datetime" = field(default_factory=utc_now)


@dataclass(frozen=True, slots=True)
class RefreshTelemetry:
    refresh_count: "int" = 0
    refresh_success_count: "int" = 0
    refresh_failure_count: "int" = 0
    error_rate_percent: "float" = 0.0
    average_latency_ms: "float" = 0.0
    last_latency_ms: "float" = 0.0
    last_refresh_completed_utc: "datetime | None" = None
    last_error: "str | None" = None
