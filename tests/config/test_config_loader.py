"""
Configuration loading and validation.

Verifies:
- the shipped default set loads, resolves and is deterministic
- every structural problem raises ConfigurationError naming the key
"""

import copy
from pathlib import Path
from uuid import uuid4

import pytest
import yaml

from mda_config import build_snapshot, get_active_config
from mda_config.loader import compute_checksum, load_yaml_file
from mda_kernel.domain.smart_code import SmartCode
from mda_kernel.exceptions import ConfigurationError

DEFAULT_SET = Path(__file__).resolve().parents[2] / "mda_config" / "sets" / "default.yaml"


@pytest.fixture
def raw_config() -> dict:
    return copy.deepcopy(load_yaml_file(DEFAULT_SET))


class TestDefaultSet:
    def test_loads(self, config):
        assert config.config_id == "mda-default"
        assert config.version_label == "mda-default@2025.10.1"
        assert config.settings.future_grace_days == 7

    def test_checksum_is_deterministic(self, raw_config):
        assert build_snapshot(raw_config).checksum == build_snapshot(copy.deepcopy(raw_config)).checksum

    def test_checksum_changes_with_content(self, raw_config):
        before = compute_checksum(raw_config)
        raw_config["jurisdictions"]["AE"]["standard_rate"] = "0.06"
        assert compute_checksum(raw_config) != before

    def test_unknown_org_gets_defaults(self, config):
        org = uuid4()
        profile = config.profile_for(org)
        assert (profile.domain, profile.jurisdiction, profile.base_currency) == ("SALON", "AE", "AED")
        assert profile.organization_id == org
        assert not config.has_organization(org)

    def test_london_profile(self, config, london_org_id):
        profile = config.profile_for(london_org_id)
        assert (profile.jurisdiction, profile.base_currency, profile.fiscal_year_start_month) == ("GB", "GBP", 4)
        assert profile.name == "Salon London"

    def test_org_rule_overrides_default(self, config, london_org_id):
        rule = config.resolver().resolve(london_org_id, SmartCode.parse("SALON.FINANCE.EXPENSE.RENT.v1"))
        assert rule.vat_category == "exempt"
        default = config.resolver().resolve(uuid4(), SmartCode.parse("SALON.FINANCE.EXPENSE.RENT.v1"))
        assert default.vat_category == "standard"

    def test_org_account_override(self, config, london_org_id):
        assert config.resolver().resolve_account(london_org_id, "BANK").code == "1125"
        assert config.resolver().resolve_account(uuid4(), "BANK").code == "1120"

    def test_profiles_are_read_only(self, config):
        with pytest.raises(TypeError):
            config.profiles[uuid4()] = config.default_profile

    def test_load_is_logged(self, captured_logs):
        get_active_config()
        loaded = [r for r in captured_logs() if r["message"] == "config_loaded"]
        assert loaded[0]["config_id"] == "mda-default"
        assert len(loaded[0]["checksum"]) == 64


class TestSetLookup:
    def test_missing_set(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config(config_dir=tmp_path, set_name="nope")

    def test_custom_directory(self, tmp_path, raw_config):
        raw_config["version"] = "2099.1"
        (tmp_path / "branch.yaml").write_text(yaml.safe_dump(raw_config))
        snapshot = get_active_config(config_dir=tmp_path, set_name="branch")
        assert snapshot.version == "2099.1"


class TestValidation:
    def _expect(self, raw_config, fragment):
        with pytest.raises(ConfigurationError) as exc_info:
            build_snapshot(raw_config)
        assert fragment in exc_info.value.message
        return exc_info.value

    def test_missing_version(self, raw_config):
        del raw_config["version"]
        self._expect(raw_config, "missing required key 'version'")

    def test_rate_out_of_range(self, raw_config):
        raw_config["jurisdictions"]["AE"]["standard_rate"] = "1.5"
        self._expect(raw_config, "jurisdictions.AE")

    def test_non_numeric_rate(self, raw_config):
        raw_config["jurisdictions"]["GB"]["categories"]["reduced"] = "five percent"
        self._expect(raw_config, "not a number")

    def test_pos_basis_outside_pos_rule(self, raw_config):
        raw_config["rules"]["*.FINANCE.EXPENSE.SALARY.v1"]["lines"][0]["basis"] = "cash"
        self._expect(raw_config, "only valid for POS summaries")

    def test_unknown_side(self, raw_config):
        raw_config["rules"]["*.FINANCE.EXPENSE.SALARY.v1"]["lines"][0]["side"] = "left"
        self._expect(raw_config, "rules.*.FINANCE.EXPENSE.SALARY.v1.lines[0]")

    def test_unknown_role(self, raw_config):
        raw_config["rules"]["*.FINANCE.EXPENSE.SALARY.v1"]["lines"][0]["role"] = "PAYROLL_EXPENSE"
        self._expect(raw_config, "role PAYROLL_EXPENSE has no account")

    def test_vat_category_missing_in_jurisdiction(self, raw_config):
        del raw_config["jurisdictions"]["GB"]["categories"]["utilities"]
        self._expect(raw_config, "VAT category utilities")

    def test_jurisdiction_without_table(self, raw_config):
        raw_config["defaults"]["jurisdiction"] = "SA"
        self._expect(raw_config, "no tax table for jurisdiction SA")

    def test_bad_fiscal_start_month(self, raw_config):
        raw_config["defaults"]["fiscal_year_start_month"] = 13
        self._expect(raw_config, "fiscal_year_start_month must be 1..12")

    def test_unknown_base_currency(self, raw_config):
        raw_config["defaults"]["base_currency"] = "XYZ"
        self._expect(raw_config, "unknown currency")

    def test_organization_key_not_uuid(self, raw_config):
        raw_config["organizations"]["london"] = {"name": "Bad"}
        self._expect(raw_config, "organizations.london: not a UUID")

    def test_wildcard_in_organization_rules(self, raw_config, london_org_id):
        org_rules = raw_config["organizations"][str(london_org_id)]["rules"]
        org_rules["*.FINANCE.EXPENSE.SALARY.v1"] = {
            "lines": [
                {"role": "SALARY_EXPENSE", "side": "debit"},
                {"role": "SETTLEMENT", "side": "credit"},
            ]
        }
        self._expect(raw_config, "rules.*.FINANCE.EXPENSE.SALARY.v1")

    def test_rule_without_lines(self, raw_config):
        raw_config["rules"]["*.FINANCE.EXPENSE.SALARY.v1"]["lines"] = []
        self._expect(raw_config, "has no lines")

    def test_error_category(self, raw_config):
        del raw_config["config_id"]
        exc = self._expect(raw_config, "config_id")
        assert exc.code == "ConfigurationError"
        assert exc.category == "configuration"
