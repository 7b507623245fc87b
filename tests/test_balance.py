from core.entities.transaction import Transaction, CREDIT, DEBIT, FEE, PENDING, SUCCESS, FAILED
from core.services.balance import derive_balance, derive_balances, check_balance, money, sync_balances


def tx(type_, amount, status=SUCCESS, deleted=False, user_id="1"):
    return Transaction(id=None, type=type_, amount=amount, user_id=user_id,
                       status=status, created_at="2025-01-01T00:00:00+00:00", deleted=deleted)


def test_credits_add_debits_and_fees_subtract():
    assert derive_balance([tx(CREDIT, 5000), tx(DEBIT, 500), tx(FEE, 10)]) == 4490


def test_pending_counts_failed_and_deleted_do_not():
    txs = [
        tx(CREDIT, 1000),
        tx(DEBIT, 100, status=PENDING),
        tx(FEE, 2, status=PENDING),
        tx(DEBIT, 300, status=FAILED),
        tx(CREDIT, 700, deleted=True),
    ]
    assert derive_balance(txs) == 898


def test_empty_log_is_zero():
    assert derive_balance([]) == 0


def test_float_noise_is_rounded_to_cents():
    assert derive_balance([tx(CREDIT, 0.1), tx(CREDIT, 0.2)]) == 0.3
    assert money(-0.0) == 0.0


def test_derive_balances_groups_by_user():
    txs = [tx(CREDIT, 100, user_id="1"), tx(CREDIT, 50, user_id="2"), tx(DEBIT, 20, user_id="1")]
    assert derive_balances(txs) == {"1": 80, "2": 50}


def test_check_balance_reports_drift(repo, make_user):
    alice = make_user("Alice", 1000)
    assert check_balance(repo, alice.id).is_consistent

    repo.update_user_balance(alice.id, 999)
    result = check_balance(repo, alice.id)
    assert (result.stored, result.computed, result.is_consistent) == (999, 1000, False)


def test_sync_balances_only_writes_drifted_users(repo, make_user):
    alice = make_user("Alice", 1000)
    bob = make_user("Bob", 200)
    repo.update_user_balance(bob.id, 0)
    repo.writes.clear()

    assert sync_balances(repo) == [bob.id]
    assert repo.writes == [("update_user_balance", bob.id)]
    assert repo.get_user(bob.id).balance == 200
    assert repo.get_user(alice.id).balance == 1000

    repo.writes.clear()
    assert sync_balances(repo) == []
    assert repo.writes == []
