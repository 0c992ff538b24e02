import threading
from decimal import Decimal

import pytest

from summon.budget import (
    BudgetExceededError,
    CostGate,
    CostLedger,
    InMemoryLedgerStore,
    JsonLedgerStore,
    estimate_cost,
    today,
)
from summon.instruction import Instruction


def _instruction(length: int, priority: str = "medium", files: int = 0) -> Instruction:
    return Instruction(
        raw_text="x" * length,
        priority=priority,
        explicit_files=[f"f{i}.py" for i in range(files)] or None,
    )


def test_estimate_formula():
    assert estimate_cost(_instruction(1000, "high")) == Decimal("0.50")
    assert estimate_cost(_instruction(1000, "medium")) == Decimal("0.25")
    assert estimate_cost(_instruction(500, "low")) == Decimal("0.05")
    assert estimate_cost(_instruction(1000, "medium", files=5)) == Decimal("0.125")


def test_estimate_multipliers_are_capped():
    assert estimate_cost(_instruction(10_000, "high", files=40)) == Decimal("1.5")


def test_estimate_is_bounded():
    for length in (0, 1, 999, 2000, 50_000):
        for priority in ("low", "medium", "high"):
            for files in (0, 1, 15, 100):
                value = estimate_cost(_instruction(length, priority, files))
                assert Decimal("0") <= value <= Decimal("1.5")


def test_admit_rejects_over_cap():
    gate = CostGate(Decimal("1.0"), CostLedger(daily_budget=None))
    assert gate.admit(Decimal("1.01")) is False
    assert gate.admit(Decimal("1.0")) is True


def test_admit_rejects_over_daily_budget():
    ledger = CostLedger(daily_budget=Decimal("10"), used_today=Decimal("9.80"))
    gate = CostGate(Decimal("1.0"), ledger)
    assert gate.admit(Decimal("0.25")) is False
    assert "daily budget" in gate.rejection_reason(Decimal("0.25"))


def test_admit_allows_exactly_reaching_budget():
    ledger = CostLedger(daily_budget=Decimal("10"), used_today=Decimal("9.75"))
    assert CostGate(Decimal("1.0"), ledger).admit(Decimal("0.25")) is True


def test_unlimited_budget():
    ledger = CostLedger(daily_budget=None, used_today=Decimal("1000"))
    assert CostGate(Decimal("1.0"), ledger).admit(Decimal("0.9")) is True
    assert ledger.can_proceed is True
    assert ledger.remaining is None


def test_check_raises():
    gate = CostGate(Decimal("0.1"), CostLedger())
    with pytest.raises(BudgetExceededError):
        gate.check(Decimal("0.2"))


def test_reconcile_updates_ledger():
    ledger = CostLedger(daily_budget=Decimal("1"))
    ledger.reconcile(Decimal("0.4"), job_id="a")
    ledger.reconcile(Decimal("0.6"), job_id="b")
    assert ledger.used_today == Decimal("1.0")
    assert ledger.last_operation_cost == Decimal("0.6")
    assert ledger.can_proceed is False
    assert ledger.summary()["can_proceed"] is False


def test_reconcile_once_per_job():
    ledger = CostLedger(daily_budget=Decimal("10"))
    ledger.reconcile(Decimal("0.5"), job_id="same")
    ledger.reconcile(Decimal("0.5"), job_id="same")
    assert ledger.used_today == Decimal("0.5")


def test_concurrent_reconcile_loses_nothing():
    ledger = CostLedger(daily_budget=None)

    def charge(i: int):
        ledger.reconcile(Decimal("0.01"), job_id=f"job-{i}")

    threads = [threading.Thread(target=charge, args=(i,)) for i in range(50)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert ledger.used_today == Decimal("0.50")


def test_ledger_persists_through_store(tmp_path):
    store = JsonLedgerStore(tmp_path / "state" / "ledger.json")
    ledger = CostLedger.open(store, Decimal("5"))
    ledger.reconcile(Decimal("1.25"), job_id="x")

    reopened = CostLedger.open(JsonLedgerStore(tmp_path / "state" / "ledger.json"), Decimal("5"))
    assert reopened.used_today == Decimal("1.25")
    assert reopened.day == today()


def test_in_memory_store():
    store = InMemoryLedgerStore()
    assert store.load("2026-01-01") == Decimal("0")
    store.save("2026-01-01", Decimal("3"))
    assert store.load("2026-01-01") == Decimal("3")


def test_corrupt_ledger_file_starts_fresh(tmp_path):
    path = tmp_path / "ledger.json"
    path.write_text("{not json")
    assert JsonLedgerStore(path).load(today()) == Decimal("0")
