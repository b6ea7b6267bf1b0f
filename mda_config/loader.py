"""
Configuration loader (``mda_config.loader``).

Responsibility
--------------
Loads a YAML configuration set and parses it into the typed schema:
accounts, jurisdiction tax tables, posting rules keyed by ``SmartCode``,
organization profiles and engine settings.  Runtime callers use
``mda_config.get_active_config()``; this module is the machinery behind it.

Invariants enforced
-------------------
* Every parse problem raises ``ConfigurationError`` naming the offending
  key; there are no silent defaults for required fields.
* Rule tables are built exactly once per load and are immutable after.
* Cross-references are checked before a snapshot is returned: every rule
  role maps to an account, every profile's jurisdiction has a tax table,
  and every rule's VAT category exists in each jurisdiction that uses it.
* ``compute_checksum`` is deterministic over the source data.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Structural problems  -> ``ConfigurationError``.
"""

from __future__ import annotations

import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any
from uuid import UUID

import yaml

from mda_config.schema import (
    ConfigurationSnapshot,
    EngineSettings,
    OrganizationProfile,
    RetrySettings,
)
from mda_kernel.domain.currency import CurrencyRegistry
from mda_kernel.domain.posting_rules import (
    SETTLEMENT_ROLE,
    AccountRef,
    AmountBasis,
    PostingRule,
    RoleTemplate,
    RuleBook,
    Side,
)
from mda_kernel.domain.smart_code import EventKind, InvalidSmartCode, SmartCode
from mda_kernel.domain.tax import STANDARD_CATEGORY, JurisdictionTaxTable, TaxRateTable
from mda_kernel.exceptions import ConfigurationError

_POS_BASES = frozenset({AmountBasis.CASH, AmountBasis.CARD, AmountBasis.OTHER})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of *data*."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def _require(data: dict[str, Any], key: str, where: str) -> Any:
    if not isinstance(data, dict) or key not in data or data[key] is None:
        raise ConfigurationError(f"{where}: missing required key '{key}'")
    return data[key]


def parse_decimal(value: Any, where: str) -> Decimal:
    if isinstance(value, float):
        value = repr(value)
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        raise ConfigurationError(f"{where}: not a number: {value!r}") from None
    if not result.is_finite():
        raise ConfigurationError(f"{where}: not a finite number: {value!r}")
    return result


# ---------------------------------------------------------------------------
# Accounts and tax
# ---------------------------------------------------------------------------


def parse_accounts(data: dict[str, Any] | None, where: str) -> dict[str, AccountRef]:
    accounts: dict[str, AccountRef] = {}
    for role, entry in (data or {}).items():
        location = f"{where}.{role}"
        accounts[str(role)] = AccountRef(
            code=str(_require(entry, "code", location)),
            name=str(_require(entry, "name", location)),
        )
    return accounts


def parse_jurisdiction(code: str, data: dict[str, Any]) -> JurisdictionTaxTable:
    where = f"jurisdictions.{code}"
    standard = parse_decimal(_require(data, "standard_rate", where), f"{where}.standard_rate")
    categories = {
        str(name): parse_decimal(rate, f"{where}.categories.{name}")
        for name, rate in (data.get("categories") or {}).items()
    }
    for name, rate in [(STANDARD_CATEGORY, standard), *categories.items()]:
        if rate < 0 or rate >= 1:
            raise ConfigurationError(f"{where}: rate for {name} must be in [0, 1): {rate}")
    return JurisdictionTaxTable(jurisdiction=code, standard_rate=standard, category_rates=categories)


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


def parse_template(data: dict[str, Any], where: str) -> RoleTemplate:
    try:
        side = Side(str(_require(data, "side", where)).lower())
        basis = AmountBasis(str(data.get("basis", AmountBasis.GROSS.value)).lower())
    except ValueError as exc:
        raise ConfigurationError(f"{where}: {exc}") from None

    amount = data.get("amount")
    try:
        return RoleTemplate(
            role=str(_require(data, "role", where)),
            side=side,
            basis=basis,
            ratio=parse_decimal(data.get("ratio", "1"), f"{where}.ratio"),
            amount=parse_decimal(amount, f"{where}.amount") if amount is not None else None,
            description=data.get("description"),
        )
    except ValueError as exc:
        raise ConfigurationError(f"{where}: {exc}") from None


def parse_rule(key: str, data: dict[str, Any], *, allow_wildcard: bool) -> PostingRule:
    where = f"rules.{key}"
    try:
        code = SmartCode.parse(key, allow_wildcard=allow_wildcard)
    except InvalidSmartCode as exc:
        raise ConfigurationError(f"{where}: {exc}") from None

    kind = code.kind
    if kind is None:
        raise ConfigurationError(f"{where}: smart code has no known event kind")

    raw_lines = _require(data, "lines", where)
    templates = tuple(
        parse_template(line, f"{where}.lines[{index}]") for index, line in enumerate(raw_lines)
    )
    for index, template in enumerate(templates):
        if template.basis in _POS_BASES and kind is not EventKind.POS_SUMMARY:
            raise ConfigurationError(
                f"{where}.lines[{index}]: basis {template.basis.value} is only valid for POS summaries"
            )

    try:
        return PostingRule(
            smart_code=code,
            kind=kind,
            lines=templates,
            vat_category=str(data.get("vat_category", STANDARD_CATEGORY)),
            description=str(data.get("description", "")),
        )
    except ValueError as exc:
        raise ConfigurationError(f"{where}: {exc}") from None


def parse_rules(data: dict[str, Any] | None, *, allow_wildcard: bool) -> dict[SmartCode, PostingRule]:
    rules: dict[SmartCode, PostingRule] = {}
    for key, entry in (data or {}).items():
        rule = parse_rule(str(key), entry, allow_wildcard=allow_wildcard)
        rules[rule.smart_code] = rule
    return rules


# ---------------------------------------------------------------------------
# Settings and profiles
# ---------------------------------------------------------------------------


def parse_settings(data: dict[str, Any] | None) -> EngineSettings:
    data = data or {}
    rounding = data.get("rounding") or {}
    retry = data.get("retry") or {}
    defaults = EngineSettings()
    retry_defaults = RetrySettings()
    return EngineSettings(
        future_grace_days=int(data.get("future_grace_days", defaults.future_grace_days)),
        max_amount=parse_decimal(data.get("max_amount", defaults.max_amount), "settings.max_amount"),
        text_max_length=int(data.get("text_max_length", defaults.text_max_length)),
        max_rounding_absorption=parse_decimal(
            rounding.get("max_absorption", defaults.max_rounding_absorption),
            "settings.rounding.max_absorption",
        ),
        retry=RetrySettings(
            max_attempts=int(retry.get("max_attempts", retry_defaults.max_attempts)),
            base_delay=float(retry.get("base_delay", retry_defaults.base_delay)),
            max_delay=float(retry.get("max_delay", retry_defaults.max_delay)),
            timeout=float(retry.get("timeout", retry_defaults.timeout)),
        ),
    )


def parse_profile(
    data: dict[str, Any],
    where: str,
    fallback: OrganizationProfile | None = None,
    organization_id: UUID | None = None,
) -> OrganizationProfile:
    def pick(key: str) -> Any:
        if data.get(key) is not None:
            return data[key]
        if fallback is not None:
            return getattr(fallback, key)
        return _require(data, key, where)

    start_month = int(
        data.get("fiscal_year_start_month")
        or (fallback.fiscal_year_start_month if fallback else 1)
    )
    if not 1 <= start_month <= 12:
        raise ConfigurationError(f"{where}.fiscal_year_start_month must be 1..12: {start_month}")

    base_currency = str(pick("base_currency"))
    if not CurrencyRegistry.is_valid(base_currency):
        raise ConfigurationError(f"{where}.base_currency: unknown currency {base_currency!r}")

    domain = str(pick("domain"))
    if not domain.isalpha() or not domain.isupper():
        raise ConfigurationError(f"{where}.domain must be upper-case letters: {domain!r}")

    return OrganizationProfile(
        domain=domain,
        jurisdiction=str(pick("jurisdiction")),
        base_currency=base_currency,
        fiscal_year_start_month=start_month,
        name=data.get("name"),
        organization_id=organization_id,
    )


# ---------------------------------------------------------------------------
# Snapshot assembly
# ---------------------------------------------------------------------------


def build_snapshot(data: dict[str, Any]) -> ConfigurationSnapshot:
    """
    Parse and validate a whole configuration set.

    Raises:
        ConfigurationError: naming the first structural problem found.
    """
    config_id = str(_require(data, "config_id", "root"))
    version = str(_require(data, "version", "root"))

    settings = parse_settings(data.get("settings"))
    accounts = parse_accounts(data.get("accounts"), "accounts")
    tax_tables = {
        str(code): parse_jurisdiction(str(code), entry)
        for code, entry in (data.get("jurisdictions") or {}).items()
    }
    default_rules = parse_rules(data.get("rules"), allow_wildcard=True)
    default_profile = parse_profile(data.get("defaults") or {}, "defaults")

    profiles: dict[UUID, OrganizationProfile] = {}
    organization_rules = {}
    organization_accounts = {}
    for raw_id, entry in (data.get("organizations") or {}).items():
        where = f"organizations.{raw_id}"
        try:
            organization_id = UUID(str(raw_id))
        except ValueError:
            raise ConfigurationError(f"{where}: not a UUID") from None
        entry = entry or {}
        profiles[organization_id] = parse_profile(entry, where, default_profile, organization_id)
        organization_accounts[organization_id] = parse_accounts(entry.get("accounts"), f"{where}.accounts")
        organization_rules[organization_id] = parse_rules(entry.get("rules"), allow_wildcard=False)

    rule_book = RuleBook(
        default_rules=default_rules,
        accounts=accounts,
        organization_rules=organization_rules,
        organization_accounts=organization_accounts,
    )
    tax_table = TaxRateTable(tax_tables)

    _check_roles(default_rules.values(), set(accounts), "rules")
    for organization_id, rules in organization_rules.items():
        known = set(accounts) | set(organization_accounts[organization_id])
        _check_roles(rules.values(), known, f"organizations.{organization_id}.rules")

    _check_tax_coverage(default_profile, default_rules.values(), tax_tables, "defaults")
    for organization_id, profile in profiles.items():
        applicable = [*default_rules.values(), *organization_rules[organization_id].values()]
        _check_tax_coverage(profile, applicable, tax_tables, f"organizations.{organization_id}")

    return ConfigurationSnapshot(
        config_id=config_id,
        version=version,
        checksum=compute_checksum(data),
        settings=settings,
        rule_book=rule_book,
        tax_table=tax_table,
        default_profile=default_profile,
        profiles=profiles,
    )


def _check_roles(rules: Any, known_roles: set[str], where: str) -> None:
    for rule in rules:
        for role in rule.roles:
            if role != SETTLEMENT_ROLE and role not in known_roles:
                raise ConfigurationError(f"{where}.{rule.smart_code}: role {role} has no account")


def _check_tax_coverage(
    profile: OrganizationProfile,
    rules: Any,
    tax_tables: dict[str, JurisdictionTaxTable],
    where: str,
) -> None:
    table = tax_tables.get(profile.jurisdiction)
    if table is None:
        raise ConfigurationError(f"{where}: no tax table for jurisdiction {profile.jurisdiction}")
    available = table.categories()
    for rule in rules:
        if rule.vat_category not in available:
            raise ConfigurationError(
                f"{where}: VAT category {rule.vat_category} of {rule.smart_code} "
                f"is not defined for {profile.jurisdiction}"
            )
