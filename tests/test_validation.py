import pytest

from core.errors import ValidationFailedError
from core.services.validation import (
    ValidationGate,
    collect_validation_errors,
    transfer_fee,
    validate_note,
    validate_recipient,
    validate_sufficient_balance,
    validate_topup_amount,
    validate_transfer_amount,
)


class TestTransferAmount:
    def test_rejects_negative(self):
        result = validate_transfer_amount(-100)
        assert not result.is_valid
        assert "greater than 0" in result.message

    def test_rejects_zero(self):
        assert not validate_transfer_amount(0).is_valid

    def test_rejects_over_limit(self):
        result = validate_transfer_amount(15000, limit=10000)
        assert not result.is_valid
        assert "exceeds maximum" in result.message

    def test_accepts_at_limit(self):
        assert validate_transfer_amount(10000, limit=10000).is_valid

    @pytest.mark.parametrize("amount", [None, float("nan"), "", "  "])
    def test_missing_amount_is_required(self, amount):
        result = validate_transfer_amount(amount)
        assert not result.is_valid
        assert "required" in result.message

    def test_non_numeric_string(self):
        assert validate_transfer_amount("abc").message == "Amount must be a number"

    def test_numeric_string_accepted(self):
        assert validate_transfer_amount("250").is_valid

    @pytest.mark.parametrize("amount", [0.004, "0.001"])
    def test_rejects_amount_below_one_cent(self, amount):
        result = validate_transfer_amount(amount)
        assert not result.is_valid
        assert result.message == "Amount must be at least 0.01"

    def test_accepts_one_cent(self):
        assert validate_transfer_amount(0.01).is_valid


def test_topup_limits():
    assert validate_topup_amount(500).is_valid
    assert "top-up limit" in validate_topup_amount(200000, topup_limit=100000).message
    assert "maximum limit" in validate_topup_amount(50000, topup_limit=100000, transfer_limit=10000).message


def test_recipient_rules():
    assert validate_recipient("", "1").message == "Please select a recipient"
    assert validate_recipient("1", "1").message == "Cannot transfer money to yourself"
    assert validate_recipient(" 1 ", 1).message == "Cannot transfer money to yourself"
    assert validate_recipient("9", "1", known_users=["1", "2"]).message == "Selected recipient does not exist"
    assert validate_recipient("2", "1", known_users=["1", "2"]).is_valid
    # пустой справочник не проверяется
    assert validate_recipient("9", "1", known_users=[]).is_valid


def test_note_length():
    assert validate_note(None).is_valid
    assert validate_note("x" * 200).is_valid
    assert validate_note("x" * 201).message == "Note cannot exceed 200 characters"


def test_sufficient_balance_includes_fee():
    assert transfer_fee(500, 0.02) == 10
    assert validate_sufficient_balance(510, 500, 0.02).is_valid
    result = validate_sufficient_balance(509.99, 500, 0.02)
    assert not result.is_valid
    assert "510.00" in result.message


def test_collect_aggregates_all_failures():
    result = collect_validation_errors([
        validate_transfer_amount(0),
        validate_recipient("1", "1"),
        validate_note("x" * 300),
    ])
    assert not result.ok
    assert len(result.errors) == 3
    assert result.message.count(". ") == 2


class TestValidationGate:
    def test_valid_transfer(self, repo, make_user):
        alice = make_user("Alice", 5000)
        bob = make_user("Bob")
        result = ValidationGate(repo).validate(500, bob.id, alice.id, "rent", known_users=[alice, bob])
        assert result.ok
        assert result.errors == []

    def test_insufficient_live_balance_rejected_before_any_write(self, repo, make_user):
        alice = make_user("Alice", 100)
        bob = make_user("Bob")
        result = ValidationGate(repo).validate(500, bob.id, alice.id)
        assert not result.ok
        assert result.errors[0].startswith("Insufficient balance")
        assert repo.writes == []
        with pytest.raises(ValidationFailedError):
            result.raise_for_errors()

    def test_reads_balance_from_store_not_a_stale_object(self, repo, make_user):
        alice = make_user("Alice", 5000)
        bob = make_user("Bob")
        repo.update_user_balance(alice.id, 50)
        result = ValidationGate(repo).validate(500, bob.id, alice.id)
        assert not result.ok

    def test_collects_every_violation(self, repo, make_user):
        alice = make_user("Alice", 5000)
        result = ValidationGate(repo).validate(-5, alice.id, alice.id, "x" * 201)
        assert result.errors == [
            "Amount must be greater than 0",
            "Cannot transfer money to yourself",
            "Note cannot exceed 200 characters",
        ]

    def test_unknown_sender(self, repo, make_user):
        bob = make_user("Bob")
        result = ValidationGate(repo).validate(10, bob.id, "ghost")
        assert result.errors == ["Sender account not found"]
