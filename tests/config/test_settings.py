"""
Settings loading tests.

Verifies:
- The packaged defaults parse into the documented policies
- PROCURE_CONFIG and explicit paths override the defaults
- Unknown or malformed sections are rejected
- The checksum identifies the document, not the file
"""

from decimal import Decimal

import pytest
import yaml

from procure_config import (
    CONFIG_ENV_VAR,
    DEFAULT_SETTINGS_PATH,
    compute_checksum,
    get_active_settings,
    load_yaml_file,
    parse_settings,
)
from procure_kernel.domain.access import AccessPolicy
from procure_kernel.domain.values import Action, ActorRef, MovementType
from procure_modules.purchasing.config import PurchasingConfig


class TestDefaults:

    def test_packaged_defaults(self, monkeypatch):
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)

        settings = get_active_settings()

        assert settings.source == str(DEFAULT_SETTINGS_PATH)
        assert [lvl.max_amount for lvl in settings.purchasing.approval_levels] == [
            Decimal("10000"), Decimal("50000"), None,
        ]
        assert settings.purchasing.default_currency == "PHP"
        assert settings.purchasing.under_receiving_tolerance_percent == Decimal("10.0")
        assert settings.inventory.audit_write_mode == "joint"
        assert settings.batch.chunk_size == 100
        assert settings.retry.max_attempts == 3

    def test_defaults_match_code_defaults(self):
        settings = get_active_settings(DEFAULT_SETTINGS_PATH)
        code = AccessPolicy.with_defaults()

        assert {r: set(a) for r, a in settings.access.role_permissions.items()} == {
            r: set(a) for r, a in code.role_permissions.items()
        }
        assert dict(settings.access.role_approval_limits) == dict(code.role_approval_limits)
        assert settings.purchasing.approval_levels == PurchasingConfig().approval_levels

    def test_role_limits(self):
        access = get_active_settings(DEFAULT_SETTINGS_PATH).access
        from uuid import uuid4

        assert access.approval_limit_for(ActorRef(uuid4(), "manager")) == Decimal("100000")
        assert access.approval_limit_for(ActorRef(uuid4(), "admin")) is None
        assert not access.allows(ActorRef(uuid4(), "cashier"), Action.RECEIVE)


class TestOverrides:

    def _write(self, tmp_path, data):
        path = tmp_path / "procurement.yaml"
        path.write_text(yaml.safe_dump(data))
        return path

    def test_environment_variable(self, tmp_path, monkeypatch):
        path = self._write(tmp_path, {
            "inventory": {"audit_write_mode": "at_least_once", "negative_stock_movement_types": ["recount"]},
        })
        monkeypatch.setenv(CONFIG_ENV_VAR, str(path))

        settings = get_active_settings()

        assert settings.source == str(path)
        assert settings.inventory.audit_write_mode == "at_least_once"
        assert settings.inventory.negative_stock_movement_types == frozenset({MovementType.RECOUNT})
        assert settings.purchasing.default_currency == "PHP"

    def test_explicit_path_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv(CONFIG_ENV_VAR, str(tmp_path / "ignored.yaml"))
        path = self._write(tmp_path, {"purchasing": {"require_receiving_approval": True}})

        assert get_active_settings(path).purchasing.require_receiving_approval is True

    def test_custom_chain(self, tmp_path):
        path = self._write(tmp_path, {"purchasing": {"approval_levels": [
            {"level": 1, "approver_role": "manager", "max_amount": 500},
            {"level": 2, "approver_role": "admin", "max_amount": None},
        ]}})

        purchasing = get_active_settings(path).purchasing

        assert purchasing.final_level_for(Decimal("400")) == 1
        assert purchasing.final_level_for(Decimal("501")) == 2

    def test_empty_file_is_all_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")

        settings = get_active_settings(path)

        assert load_yaml_file(path) == {}
        assert settings.inventory.history_page_size == 100


class TestValidation:

    def test_unknown_section(self):
        with pytest.raises(ValueError, match="unknown settings section"):
            parse_settings({"purchasing": {}, "shipping": {}})

    def test_section_must_be_mapping(self):
        with pytest.raises(ValueError, match="must be a mapping"):
            parse_settings({"batch": [1, 2]})

    def test_bad_value_rejected_by_schema(self):
        with pytest.raises(ValueError):
            parse_settings({"inventory": {"audit_write_mode": "eventually"}})

    def test_gapped_chain_rejected(self):
        with pytest.raises(ValueError):
            parse_settings({"purchasing": {"approval_levels": [
                {"level": 1, "approver_role": "manager", "max_amount": 10},
                {"level": 3, "approver_role": "admin", "max_amount": None},
            ]}})

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_settings(tmp_path / "absent.yaml")


class TestChecksum:

    def test_key_order_irrelevant(self):
        assert compute_checksum({"a": 1, "b": {"c": 2}}) == compute_checksum({"b": {"c": 2}, "a": 1})

    def test_value_change_changes_checksum(self):
        assert compute_checksum({"a": 1}) != compute_checksum({"a": 2})

    def test_settings_carry_checksum(self):
        data = {"retry": {"max_attempts": 5}}
        assert parse_settings(data).checksum == compute_checksum(data)
