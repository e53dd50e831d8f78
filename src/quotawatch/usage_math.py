"""
Pure functions over ProviderUsage samples. Nothing in here performs I/O;
every function takes a sequence of samples and returns a new value.
"""

import math
from datetime import UTC, datetime, timedelta
from typing import Iterable, Sequence

from quotawatch.models import (
    BurnRateForecast,
    PlanType,
    ProviderReliabilitySnapshot,
    ProviderUsage,
)

# a usage drop of at least this share of the previous reference marks a
# new quota cycle
DEFAULT_RESET_DROP_RATIO = 0.2
DEFAULT_MIN_ELAPSED_HOURS = 1.0
# minimum movement in effective used-percent points between two samples
# that counts as a quota reset event
DEFAULT_RESET_EVENT_THRESHOLD = 20.0


def clamp_percent(value: "float") -> "float":
    if math.isnan(value) or math.isinf(value):
        return 0.0
    return min(max(value, 0.0), 100.0)


def used_percent(used: "float", total: "float") -> "float":
    if total <= 0:
        return 0.0
    return clamp_percent(used / total * 100.0)


def remaining_percent(used: "float", total: "float") -> "float":
    if total <= 0:
        return 100.0
    return clamp_percent((total - used) / total * 100.0)


def effective_used_percent(usage: "ProviderUsage") -> "float":
    """
    quota-based and coding-plan providers store "remaining %" in
    requests_percentage, everyone else stores "used %". This returns
    "used %" for both.
    """
    pct = clamp_percent(usage.requests_percentage)
    if usage.is_quota_based or usage.plan_type is PlanType.CODING:
        return clamp_percent(100.0 - pct)
    return pct


def trim_to_latest_cycle(
    samples: "Sequence[ProviderUsage]",
    drop_ratio: "float" = DEFAULT_RESET_DROP_RATIO,
) -> "list[ProviderUsage]":
    """
    returns the samples of the most recent quota cycle. samples must be
    ordered by fetched_at. A cycle starts after the last drop in
    requests_used that is at least drop_ratio of the previous reference.
    """
    if len(samples) < 2:
        return list(samples)

    cycle_start = 0
    for i in range(1, len(samples)):
        previous = samples[i - 1]
        current = samples[i]
        drop = previous.requests_used - current.requests_used
        if drop <= 0:
            continue

        reference = max(previous.requests_used, previous.requests_available)
        ratio = 0.0 if reference <= 0 else drop / reference
        if ratio >= drop_ratio:
            cycle_start = i

    return list(samples[cycle_start:])


def calculate_burn_rate_forecast(
    history: "Iterable[ProviderUsage]",
    drop_ratio: "float" = DEFAULT_RESET_DROP_RATIO,
    min_elapsed_hours: "float" = DEFAULT_MIN_ELAPSED_HOURS,
) -> "BurnRateForecast":
    samples = sorted(
        (
            s
            for s in history
            if s.fetched_at is not None
            and s.requests_available > 0
            and not math.isnan(s.requests_used)
        ),
        key=lambda s: s.fetched_at,
    )
    if len(samples) < 2:
        return BurnRateForecast.unavailable("Insufficient history")

    cycle = trim_to_latest_cycle(samples, drop_ratio)
    if len(cycle) < 2:
        return BurnRateForecast.unavailable("Insufficient cycle history")

    first, last = cycle[0], cycle[-1]
    elapsed = last.fetched_at - first.fetched_at
    elapsed_days = elapsed / timedelta(days=1)
    if elapsed_days <= 0 or elapsed < timedelta(hours=min_elapsed_hours):
        return BurnRateForecast.unavailable("Insufficient time window")

    # negative deltas are noise (or partial refills) and are ignored
    consumed = 0.0
    for previous, current in zip(cycle, cycle[1:]):
        delta = current.requests_used - previous.requests_used
        if delta > 0:
            consumed += delta

    if consumed <= 0:
        return BurnRateForecast.unavailable("No consumption trend")

    burn_rate = consumed / elapsed_days
    if burn_rate <= 0 or math.isnan(burn_rate) or math.isinf(burn_rate):
        return BurnRateForecast.unavailable("Invalid burn rate")

    remaining = max(0.0, last.requests_available - last.requests_used)
    days_left = 0.0 if remaining <= 0 else remaining / burn_rate
    if math.isnan(days_left) or math.isinf(days_left):
        return BurnRateForecast.unavailable("Invalid forecast")

    # a slow burn on a large allotment can land past datetime.max
    exhaustion: "datetime | None" = None
    if days_left < (datetime.max.replace(tzinfo=UTC) - last.fetched_at).days:
        exhaustion = last.fetched_at + timedelta(days=days_left)

    return BurnRateForecast(
        is_available=True,
        burn_rate_per_day=burn_rate,
        remaining_units=remaining,
        days_until_exhausted=days_left,
        estimated_exhaustion_utc=exhaustion,
        sample_count=len(cycle),
    )


def calculate_reliability_snapshot(
    history: "Iterable[ProviderUsage]",
) -> "ProviderReliabilitySnapshot":
    samples = sorted(
        (s for s in history if s.fetched_at is not None),
        key=lambda s: s.fetched_at,
    )
    if not samples:
        return ProviderReliabilitySnapshot.unavailable("No history")

    success_count = sum(1 for s in samples if s.is_available)
    failure_count = len(samples) - success_count

    # duplicate timestamps carry no interval information
    intervals = [
        (current.fetched_at - previous.fetched_at) / timedelta(minutes=1)
        for previous, current in zip(samples, samples[1:])
    ]
    intervals = [m for m in intervals if m > 0]
    average_interval = sum(intervals) / len(intervals) if intervals else 0.0

    last_success = next((s for s in reversed(samples) if s.is_available), None)

    return ProviderReliabilitySnapshot(
        is_available=True,
        sample_count=len(samples),
        success_count=success_count,
        failure_count=failure_count,
        failure_rate_percent=failure_count / len(samples) * 100.0,
        average_sync_interval_minutes=average_interval,
        last_successful_sync_utc=last_success.fetched_at if last_success else None,
        last_seen_utc=samples[-1].fetched_at,
    )


def is_quota_reset(
    previous_used_percent: "float",
    latest_used_percent: "float",
    threshold: "float" = DEFAULT_RESET_EVENT_THRESHOLD,
) -> "bool":
    """
    a reset shows up as the used percentage falling by at least
    threshold points between two consecutive samples.
    """
    return (
        clamp_percent(previous_used_percent) - clamp_percent(latest_used_percent)
        >= threshold
    )


def is_quota_reset_between(
    previous: "ProviderUsage",
    latest: "ProviderUsage",
    threshold: "float" = DEFAULT_RESET_EVENT_THRESHOLD,
) -> "bool":
    return is_quota_reset(
        effective_used_percent(previous),
        effective_used_percent(latest),
        threshold,
    )
