from dataclasses import dataclass, field
from typing import Iterable, Iterator, Mapping

from quotawatch.models import PlanType

# roots of provider ids that bill as coding subscriptions
CODING_PLAN_PROVIDERS: "frozenset[str]" = frozenset(
    {
        "antigravity",
        "synthetic",
        "zai-coding-plan",
        "github-copilot",
        "gemini-cli",
        "kimi",
        "openai",
        "codex",
    }
)


@dataclass(frozen=True)
class ProviderDefinition:
    """
    ProviderDefinition is the declarative capability descriptor of a
    provider: identity, plan classification and which ids it answers for.

    Ids are compared case-insensitively. When supports_child_ids is set,
    "<handled>.<child>" ids (e.g. "codex.spark") are handled too.
    """

    provider_id: "str"
    display_name: "str"
    plan_type: "PlanType" = PlanType.USAGE
    is_quota_based: "bool" = False
    default_config_type: "str" = "pay-as-you-go"
    auto_include: "bool" = False
    supports_child_ids: "bool" = False
    handled_ids: "frozenset[str]" = field(default_factory=frozenset)
    display_name_overrides: "Mapping[str, str]" = field(
        default_factory=dict, compare=False, hash=False
    )

    def __post_init__(self) -> "None":
        if not self.provider_id or not self.provider_id.strip():
            raise ValueError("Provider id cannot be empty.")
        if not self.display_name or not self.display_name.strip():
            raise ValueError("Display name cannot be empty.")

        handled = {self.provider_id.lower()}
        handled.update(h.lower() for h in self.handled_ids if h and h.strip())
        object.__setattr__(self, "handled_ids", frozenset(handled))
        object.__setattr__(
            self,
            "display_name_overrides",
            {k.lower(): v for k, v in self.display_name_overrides.items()},
        )

    def handles_provider_id(self, provider_id: "str") -> "bool":
        if not provider_id or not provider_id.strip():
            return False

        key = provider_id.lower()
        if key in self.handled_ids:
            return True

        if not self.supports_child_ids:
            return False

        return any(key.startswith(f"{handled}.") for handled in self.handled_ids)

    def resolve_display_name(self, provider_id: "str") -> "str | None":
        """
        returns the explicit override for the id, else the definition's
        display name when the id is handled exactly, else None so the
        caller can fall back to the raw id.
        """
        if not provider_id or not provider_id.strip():
            return None

        key = provider_id.lower()
        if key in self.display_name_overrides:
            return self.display_name_overrides[key]

        if key in self.handled_ids:
            return self.display_name

        return None


def is_coding_plan_provider(provider_id: "str") -> "bool":
    if not provider_id or not provider_id.strip():
        return False

    key = provider_id.lower()
    if key in CODING_PLAN_PROVIDERS:
        return True

    root, sep, _ = key.partition(".")
    return bool(sep) and bool(root) and root in CODING_PLAN_PROVIDERS


class ProviderCatalog:
    """
    ProviderCatalog resolves a provider id to its definition. Lookups
    walk the definitions in registration order and return the first
    that handles the id.
    """

    def __init__(self, definitions: "Iterable[ProviderDefinition]") -> "None":
        self._definitions: "list[ProviderDefinition]" = list(definitions)

        seen: "set[str]" = set()
        duplicates: "list[str]" = []
        for d in self._definitions:
            key = d.provider_id.lower()
            if key in seen:
                duplicates.append(d.provider_id)
            seen.add(key)
        if duplicates:
            raise ValueError(
                f"Duplicate provider definitions detected: {', '.join(duplicates)}"
            )

    def __iter__(self) -> "Iterator[ProviderDefinition]":
        return iter(self._definitions)

    def __len__(self) -> "int":
        return len(self._definitions)

    def find(self, provider_id: "str") -> "ProviderDefinition | None":
        if not provider_id or not provider_id.strip():
            return None
        return next(
            (d for d in self._definitions if d.handles_provider_id(provider_id)),
            None,
        )

    def auto_included(self) -> "list[ProviderDefinition]":
        return [d for d in self._definitions if d.auto_include]

    def get_display_name(
        self,
        provider_id: "str",
        provider_name: "str | None" = None,
    ) -> "str":
        definition = self.find(provider_id)
        if definition is not None:
            mapped = definition.resolve_display_name(provider_id)
            if mapped:
                return mapped

        if provider_name and provider_name.strip():
            return provider_name

        return provider_id or ""
