"""Duplicate detection for import candidates.

Advisory only: the functions here report which candidates already exist and
never block a write. Existing rows are indexed by ``(date, payee)`` so each
candidate costs one dictionary lookup plus a scan of the amounts recorded
under that key.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional, Sequence, TypeVar

from csv_utils import normalize_date, parse_amount

# Compared in binary floating point, matching amounts stored as REAL.
AMOUNT_TOLERANCE = 0.001

T = TypeVar("T")


def payee_key(payee: Optional[str]) -> str:
    return (payee or "").casefold()


@dataclass(frozen=True)
class ExistingTransaction:
    id: Optional[int]
    date: date
    payee: str
    amount: Decimal


class TransactionIndex:
    def __init__(self, existing: Iterable[ExistingTransaction] = ()) -> None:
        self._by_key: dict[tuple[date, str], list[ExistingTransaction]] = defaultdict(list)
        for row in existing:
            self.add(row)

    def add(self, row: ExistingTransaction) -> None:
        self._by_key[(row.date, payee_key(row.payee))].append(row)

    def match(
        self, txn_date: date, payee: Optional[str], amount: Decimal
    ) -> Optional[ExistingTransaction]:
        for row in self._by_key.get((txn_date, payee_key(payee)), ()):
            if abs(float(row.amount) - float(amount)) < AMOUNT_TOLERANCE:
                return row
        return None

    def __len__(self) -> int:
        return sum(len(rows) for rows in self._by_key.values())


def find_duplicate_transactions(
    candidates: Sequence[T],
    index: TransactionIndex,
    *,
    date_format: Optional[str] = None,
) -> list[T]:
    """Return the candidates that match an indexed transaction.

    Candidates need ``date``, ``payee`` and ``amount`` attributes. Dates are
    normalized with ``date_format``; a candidate whose date or amount cannot
    be parsed is never flagged.
    """
    duplicates: list[T] = []
    for candidate in candidates:
        try:
            txn_date = normalize_date(candidate.date, date_format)
            amount = parse_amount(candidate.amount)
        except ValueError:
            continue
        if index.match(txn_date, candidate.payee, amount) is not None:
            duplicates.append(candidate)
    return duplicates


def find_duplicate_payees(candidates: Sequence[T], existing_names: Iterable[str]) -> list[T]:
    """Payee names are identity keys, so matching is exact and case-sensitive."""
    names = set(existing_names)
    return [candidate for candidate in candidates if candidate.name in names]
