"""
SUMMON Cost Gate

Pre-flight: estimate what an instruction will cost and refuse it when it
breaks the per-operation cap or the remaining daily budget.
Post-flight: charge the actual cost into the ledger, exactly once per job.

The two numbers come from different formulas. The estimate is driven by the
instruction's shape, the actual cost by the volume of backend output.
"""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Protocol

from loguru import logger

from summon.config_loader import BackendDescriptor
from summon.instruction import Instruction


class BudgetExceededError(Exception):
    pass


BASE_COST: dict[str, Decimal] = {
    "high": Decimal("0.50"),
    "medium": Decimal("0.25"),
    "low": Decimal("0.10"),
}
MAX_LENGTH_MULTIPLIER = Decimal("2.0")
MAX_FILE_MULTIPLIER = Decimal("1.5")
ZERO = Decimal("0")


def estimate_cost(instruction: Instruction, backend: BackendDescriptor | None = None) -> Decimal:
    """Estimate the cost of running ``instruction``.

    base(priority) x min(len/1000, 2.0) x min(files/10, 1.5), where the file
    factor is 1.0 when no files were named. The backend does not change the
    estimate; it is accepted so callers can log what the estimate was for.
    """
    base = BASE_COST.get(instruction.priority, BASE_COST["medium"])
    length_multiplier = min(Decimal(len(instruction.raw_text)) / 1000, MAX_LENGTH_MULTIPLIER)
    if instruction.explicit_files:
        file_multiplier = min(Decimal(len(instruction.explicit_files)) / 10, MAX_FILE_MULTIPLIER)
    else:
        file_multiplier = Decimal("1.0")
    return base * length_multiplier * file_multiplier


def today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


# ---------------------------------------------------------------------------
# Ledger persistence
# ---------------------------------------------------------------------------

class LedgerStore(Protocol):
    def load(self, day: str) -> Decimal: ...
    def save(self, day: str, used: Decimal) -> None: ...


class InMemoryLedgerStore:
    def __init__(self):
        self._data: dict[str, Decimal] = {}

    def load(self, day: str) -> Decimal:
        return self._data.get(day, ZERO)

    def save(self, day: str, used: Decimal) -> None:
        self._data[day] = used


class JsonLedgerStore:
    """Day → spend map kept in a small JSON file."""

    def __init__(self, path: Path):
        self.path = path

    def _read(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            return json.loads(self.path.read_text())
        except json.JSONDecodeError:
            logger.warning(f"[BUDGET] Ledger file {self.path} is corrupt, starting fresh")
            return {}

    def load(self, day: str) -> Decimal:
        return Decimal(self._read().get(day, "0"))

    def save(self, day: str, used: Decimal) -> None:
        data = self._read()
        data[day] = str(used)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2, sort_keys=True))


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

@dataclass
class CostLedger:
    """Running spend for the current accounting day.

    Owned by the caller and threaded explicitly through the gate and the
    controller. All mutation goes through ``reconcile``.
    """
    daily_budget: Decimal | None = None
    used_today: Decimal = ZERO
    last_operation_cost: Decimal = ZERO
    store: LedgerStore | None = field(default=None, repr=False)
    day: str = field(default_factory=today)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _reconciled: set[str] = field(default_factory=set, repr=False)

    @classmethod
    def open(cls, store: LedgerStore, daily_budget: Decimal | None) -> "CostLedger":
        day = today()
        return cls(daily_budget=daily_budget, used_today=store.load(day), store=store, day=day)

    @property
    def can_proceed(self) -> bool:
        if self.daily_budget is None:
            return True
        return self.used_today < self.daily_budget

    @property
    def remaining(self) -> Decimal | None:
        if self.daily_budget is None:
            return None
        return max(ZERO, self.daily_budget - self.used_today)

    def reconcile(self, actual_cost: Decimal, job_id: str | None = None) -> None:
        """Charge a finished job. Runs once per job, success or not."""
        with self._lock:
            if job_id is not None:
                if job_id in self._reconciled:
                    logger.warning(f"[BUDGET] Job {job_id} already reconciled, ignoring repeat charge")
                    return
                self._reconciled.add(job_id)

            self.last_operation_cost = actual_cost
            self.used_today += actual_cost
            if self.store is not None:
                self.store.save(self.day, self.used_today)

        logger.info(
            f"[BUDGET] Charged ${actual_cost:.4f}, "
            f"${self.used_today:.4f} used today, can proceed: {self.can_proceed}"
        )

    def summary(self) -> dict:
        return {
            "daily_budget": None if self.daily_budget is None else float(self.daily_budget),
            "used_today": round(float(self.used_today), 4),
            "last_operation_cost": round(float(self.last_operation_cost), 4),
            "can_proceed": self.can_proceed,
        }


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------

class CostGate:
    """Advisory pre-flight check. Actual spend is only known afterwards."""

    def __init__(self, per_operation_cap: Decimal, ledger: CostLedger):
        self.per_operation_cap = per_operation_cap
        self.ledger = ledger

    def estimate(self, instruction: Instruction, backend: BackendDescriptor | None = None) -> Decimal:
        value = estimate_cost(instruction, backend)
        logger.debug(
            f"[BUDGET] Estimate ${value:.4f} for {instruction.priority} priority"
            + (f" on {backend.name}" if backend else "")
        )
        return value

    def rejection_reason(self, estimate: Decimal) -> str | None:
        if estimate > self.per_operation_cap:
            return (
                f"Estimated cost ${estimate:.4f} exceeds max per operation "
                f"${self.per_operation_cap:.4f}"
            )
        budget = self.ledger.daily_budget
        if budget is not None and self.ledger.used_today + estimate > budget:
            return (
                f"Operation would exceed daily budget: ${self.ledger.used_today:.4f} used "
                f"+ ${estimate:.4f} estimated > ${budget:.4f}"
            )
        return None

    def admit(self, estimate: Decimal) -> bool:
        reason = self.rejection_reason(estimate)
        if reason:
            logger.warning(f"[BUDGET] {reason}")
            return False
        return True

    def check(self, estimate: Decimal) -> None:
        """Like admit, but raises BudgetExceededError."""
        reason = self.rejection_reason(estimate)
        if reason:
            raise BudgetExceededError(reason)
