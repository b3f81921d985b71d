"""
Payload schema tests.

Run with: pytest tests/test_payloads.py -v
"""

import pytest
from jsonschema import Draft202012Validator

from rentcycle.core import SCHEMAS_DIR, load_json
from rentcycle.errors import InvalidPayload
from rentcycle.payloads import require_valid_payload, schema_validator, validate_payload
from rentcycle.states import Command


class TestSchemas:

    @pytest.mark.parametrize("path", sorted(SCHEMAS_DIR.glob("*.schema.json")), ids=lambda p: p.name)
    def test_schema_is_valid(self, path):
        Draft202012Validator.check_schema(load_json(path))

    def test_commands_without_payload(self):
        assert schema_validator(Command.START_RENTAL) is None
        assert validate_payload(Command.START_RENTAL, {"anything": 1}) == []


class TestAmounts:

    @pytest.mark.parametrize("amount", ["20", "20.5", "20.50", 0, 20, 19.99])
    def test_accepted(self, amount):
        assert validate_payload(Command.REPORT_DAMAGE, {"description": "dent", "amount": amount}) == []

    @pytest.mark.parametrize("amount", [
        "-1", "1.234", "abc", "", -5, None, True, "1" * 30, 10 ** 30, float("inf"),
    ])
    def test_rejected(self, amount):
        errors = validate_payload(Command.REPORT_DAMAGE, {"description": "dent", "amount": amount})
        assert errors
        assert errors[0].startswith("$.amount")


class TestCommands:

    def test_report_damage_evidence(self):
        ok = {"description": "dent", "amount": "5", "evidence_refs": ["s3://bucket/a.jpg"]}
        assert validate_payload(Command.REPORT_DAMAGE, ok) == []
        bad = dict(ok, evidence_refs=[""])
        assert validate_payload(Command.REPORT_DAMAGE, bad)

    def test_report_damage_requires_description(self):
        errors = validate_payload(Command.REPORT_DAMAGE, {"description": "", "amount": "5"})
        assert errors and errors[0].startswith("$.description")

    def test_report_damage_blank_description(self):
        errors = validate_payload(Command.REPORT_DAMAGE, {"description": " \n ", "amount": "5"})
        assert len(errors) == 1
        assert errors[0].startswith("$.description")

    def test_resolve_dispute_outcome(self):
        assert validate_payload(Command.RESOLVE_DISPUTE, {"outcome": "accepted"}) == []
        assert validate_payload(Command.RESOLVE_DISPUTE, {"outcome": "maybe"})
        assert validate_payload(Command.RESOLVE_DISPUTE, {})

    def test_cancel_reason(self):
        assert validate_payload(Command.CANCEL, None) == []
        assert validate_payload(Command.CANCEL, {"reason": "x" * 1001})
        assert validate_payload(Command.CANCEL, {"why": "no"})

    def test_complete_payment_reference(self):
        assert validate_payload(Command.COMPLETE_PAYMENT, {"payment_reference": "pi_123"}) == []
        assert validate_payload(Command.COMPLETE_PAYMENT, {"payment_reference": ""})

    def test_non_object(self):
        assert validate_payload(Command.CANCEL, "reason") == ["$: payload must be an object, got str"]


class TestRequire:

    def test_returns_copy(self):
        payload = {"reason": "x"}
        result = require_valid_payload("rental-1", Command.CANCEL, payload)
        assert result == payload
        assert result is not payload

    def test_none_becomes_empty(self):
        assert require_valid_payload("rental-1", Command.START_RENTAL, None) == {}

    def test_raises_with_all_errors(self):
        with pytest.raises(InvalidPayload) as exc_info:
            require_valid_payload("rental-1", Command.REPORT_DAMAGE, {"extra": 1})
        error = exc_info.value
        assert len(error.errors) == 3
        assert error.to_dict()["errors"] == error.errors
        assert error.guard == "payload_valid"
        assert error.code == "invalid_payload"
