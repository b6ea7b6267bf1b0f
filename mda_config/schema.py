"""
Configuration schema.

Typed, frozen views of a configuration set.  YAML is parsed into these
types once by the loader; the posting path only ever sees a
``ConfigurationSnapshot``.

Key distinction:
  default.yaml            = source artifact (human-authored, versioned)
  ConfigurationSnapshot   = runtime artifact (validated, frozen, checksummed)
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from decimal import Decimal
from types import MappingProxyType
from uuid import UUID

from mda_kernel.domain.posting_rules import PostingRuleResolver, RuleBook
from mda_kernel.domain.tax import TaxRateTable
from mda_kernel.services.resilience import RetryPolicy

# ---------------------------------------------------------------------------
# Engine settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetrySettings:
    max_attempts: int = 3
    base_delay: float = 0.05
    max_delay: float = 1.0
    timeout: float = 5.0

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            timeout=self.timeout,
        )


@dataclass(frozen=True)
class EngineSettings:
    """Tunables shared by every organization."""

    future_grace_days: int = 7
    max_amount: Decimal = Decimal("100000000")
    text_max_length: int = 500
    max_rounding_absorption: Decimal = Decimal("0.05")
    retry: RetrySettings = field(default_factory=RetrySettings)


# ---------------------------------------------------------------------------
# Organizations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OrganizationProfile:
    """Where an organization operates and how its books are kept."""

    domain: str
    jurisdiction: str
    base_currency: str
    fiscal_year_start_month: int = 1
    name: str | None = None
    organization_id: UUID | None = None


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConfigurationSnapshot:
    """
    Immutable, versioned configuration for one posting session.

    Contract:
        Injected into the orchestrator; nothing on the posting path reads
        configuration any other way.

    Guarantees:
        - ``checksum`` is the SHA-256 of the canonical source data, so two
          snapshots with equal checksums resolve identically.
        - ``profile_for`` always returns a profile: the organization's own,
          else the defaults stamped with the requested id.
    """

    config_id: str
    version: str
    checksum: str
    settings: EngineSettings
    rule_book: RuleBook
    tax_table: TaxRateTable
    default_profile: OrganizationProfile
    profiles: Mapping[UUID, OrganizationProfile] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "profiles", MappingProxyType(dict(self.profiles)))

    @property
    def version_label(self) -> str:
        """Recorded on every posted transaction."""
        return f"{self.config_id}@{self.version}"

    def profile_for(self, organization_id: UUID | None) -> OrganizationProfile:
        profile = self.profiles.get(organization_id) if organization_id else None
        if profile is not None:
            return profile
        return replace(self.default_profile, organization_id=organization_id)

    def resolver(self) -> PostingRuleResolver:
        return PostingRuleResolver(self.rule_book)

    def has_organization(self, organization_id: UUID) -> bool:
        return organization_id in self.profiles
