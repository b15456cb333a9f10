"""Derived balances and usage statistics.

Everything here is a pure function of rows already loaded from the store.
Nothing is cached or written back; callers recompute on every read.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Mapping, Optional, Protocol


class _TransactionRow(Protocol):
    account_id: int
    category_id: Optional[int]
    payee: Optional[str]
    amount: Decimal


class _AccountRow(Protocol):
    id: int
    initial_balance: Decimal


class _CategoryRow(Protocol):
    id: int
    parent_id: Optional[int]


@dataclass(frozen=True)
class UsageStats:
    count: int = 0
    total: Decimal = Decimal("0")

    def __add__(self, other: "UsageStats") -> "UsageStats":
        return UsageStats(self.count + other.count, self.total + other.total)


ZERO_STATS = UsageStats()


def _money(value) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def current_balance(initial_balance, amounts: Iterable) -> Decimal:
    return _money(initial_balance) + sum(
        (_money(amount) for amount in amounts), Decimal("0")
    )


def account_balances(
    accounts: Iterable[_AccountRow], transactions: Iterable[_TransactionRow]
) -> dict[int, Decimal]:
    """Return ``initial_balance + sum(amount)`` for every account.

    Transactions pointing at an account that is not in ``accounts`` are
    ignored.
    """
    balances = {acc.id: _money(acc.initial_balance) for acc in accounts}
    for txn in transactions:
        if txn.account_id in balances:
            balances[txn.account_id] += _money(txn.amount)
    return balances


def _direct_category_stats(
    transactions: Iterable[_TransactionRow], known: set[int]
) -> dict[int, UsageStats]:
    direct: dict[int, UsageStats] = defaultdict(UsageStats)
    for txn in transactions:
        if txn.category_id is None or txn.category_id not in known:
            continue
        direct[txn.category_id] = direct[txn.category_id] + UsageStats(
            1, _money(txn.amount)
        )
    return direct


def build_children(categories: Iterable[_CategoryRow]) -> tuple[list[int], dict[int, list[int]]]:
    """Index a parent-pointer tree.

    Returns ``(roots, children)``. A category whose parent is missing is
    treated as a root.
    """
    rows = list(categories)
    known = {cat.id for cat in rows}
    roots: list[int] = []
    children: dict[int, list[int]] = {cat.id: [] for cat in rows}
    for cat in rows:
        if cat.parent_id is None or cat.parent_id not in known or cat.parent_id == cat.id:
            roots.append(cat.id)
        else:
            children[cat.parent_id].append(cat.id)
    return roots, children


def category_stats(
    categories: Iterable[_CategoryRow], transactions: Iterable[_TransactionRow]
) -> dict[int, UsageStats]:
    """Own transaction tallies plus the recursive tallies of all descendants.

    Categories are folded post-order with an explicit stack so arbitrarily
    deep trees do not hit the recursion limit. Nodes caught in a parent
    cycle are unreachable from any root and only get their own tallies.
    """
    rows = list(categories)
    roots, children = build_children(rows)
    direct = _direct_category_stats(transactions, set(children))

    stats: dict[int, UsageStats] = {}
    for root in roots:
        stack: list[tuple[int, bool]] = [(root, False)]
        while stack:
            node, expanded = stack.pop()
            if node in stats:
                continue
            if not expanded:
                stack.append((node, True))
                stack.extend((child, False) for child in children[node])
                continue
            total = direct.get(node, ZERO_STATS)
            for child in children[node]:
                total = total + stats.get(child, ZERO_STATS)
            stats[node] = total

    for cat in rows:
        stats.setdefault(cat.id, direct.get(cat.id, ZERO_STATS))
    return stats


def payee_stats(
    payee_names: Iterable[str], transactions: Iterable[_TransactionRow]
) -> dict[str, UsageStats]:
    """Tallies keyed by payee name, matched exactly (case-sensitive)."""
    names = set(payee_names)
    stats: dict[str, UsageStats] = {name: ZERO_STATS for name in names}
    for txn in transactions:
        if txn.payee in names:
            stats[txn.payee] = stats[txn.payee] + UsageStats(1, _money(txn.amount))
    return stats


def category_tree(
    categories: Iterable, stats: Mapping[int, UsageStats]
) -> list[dict[str, object]]:
    rows = list(categories)
    by_id = {cat.id: cat for cat in rows}
    roots, children = build_children(rows)

    def node(cat_id: int) -> dict[str, object]:
        cat = by_id[cat_id]
        cat_stats = stats.get(cat_id, ZERO_STATS)
        return {
            "id": cat.id,
            "name": cat.name,
            "type": cat.type,
            "parent_id": cat.parent_id,
            "usage_count": cat_stats.count,
            "total_amount": cat_stats.total,
            "children": [
                node(child)
                for child in sorted(children[cat_id], key=lambda cid: by_id[cid].name)
            ],
        }

    return [
        node(root) for root in sorted(roots, key=lambda cid: by_id[cid].name)
    ]
