"""Transfer pairs.

A transfer is not a table of its own: it is two ``Transaction`` rows sharing a
``transfer_id``, one leg per account, the outgoing leg negative and the
incoming leg positive. Every write touching a leg goes through
``TransferManager`` so both legs change in the same store transaction.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from database import atomic
from errors import (
    ConsistencyError,
    InvalidTransfer,
    NotFoundError,
    OrphanedTransferLeg,
    ValidationError,
)
from models import Account, Category, PaymentMethod, Transaction
from schemas import TransactionUpdate, TransferIn

logger = logging.getLogger(__name__)

TRANSFER_CATEGORY_NAME = "Internal Transfer"


def new_transfer_id() -> str:
    return f"tr-{uuid4().hex}"


def outgoing_label(target: Optional[Account]) -> str:
    return f"Transfer to {target.name if target else 'Account'}"


def incoming_label(source: Optional[Account]) -> str:
    return f"Transfer from {source.name if source else 'Account'}"


@dataclass
class TransferPair:
    source: Transaction
    target: Transaction

    @property
    def transfer_id(self) -> str:
        return self.source.transfer_id

    @property
    def ids(self) -> list[int]:
        return [self.source.id, self.target.id]


@dataclass
class TransferIssue:
    transfer_id: str
    problem: str
    transaction_ids: list[int] = field(default_factory=list)


class TransferManager:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _account(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account:
            raise NotFoundError(f"Account {account_id} not found")
        return account

    def _transfer_category_id(self) -> Optional[int]:
        return self.session.scalar(
            select(Category.id).where(Category.name == TRANSFER_CATEGORY_NAME).limit(1)
        )

    def create(self, data: TransferIn) -> TransferPair:
        if data.source_account_id == data.target_account_id:
            raise InvalidTransfer("Cannot transfer to the same account")
        if data.amount <= 0:
            raise ValidationError("Amount must be positive")
        if data.target_amount is not None and data.target_amount <= 0:
            raise ValidationError("Target amount must be positive")
        source_account = self._account(data.source_account_id)
        target_account = self._account(data.target_account_id)

        transfer_id = new_transfer_id()
        category_id = self._transfer_category_id()
        memo = data.memo or ""
        target_amount = data.target_amount if data.target_amount is not None else data.amount

        with atomic(self.session):
            source = Transaction(
                account_id=source_account.id,
                date=data.date,
                payee=outgoing_label(target_account),
                amount=-data.amount,
                category_id=category_id,
                payment_type=int(PaymentMethod.internal_transfer),
                memo=memo,
                transfer_id=transfer_id,
            )
            target = Transaction(
                account_id=target_account.id,
                date=data.date,
                payee=incoming_label(source_account),
                amount=target_amount,
                category_id=category_id,
                payment_type=int(PaymentMethod.internal_transfer),
                memo=memo,
                transfer_id=transfer_id,
            )
            self.session.add_all([source, target])
            self.session.flush()

        logger.info(
            f"transfer_created: transfer_id={transfer_id} "
            f"source_account={source_account.id} target_account={target_account.id} "
            f"amount={data.amount} target_amount={target_amount}"
        )
        return TransferPair(source=source, target=target)

    def pair_for(self, txn: Transaction) -> TransferPair:
        if not txn.transfer_id:
            raise ValidationError(f"Transaction {txn.id} is not part of a transfer")
        siblings = self.session.scalars(
            select(Transaction).where(
                Transaction.transfer_id == txn.transfer_id, Transaction.id != txn.id
            )
        ).all()
        if not siblings:
            logger.error(
                f"transfer_orphaned: transfer_id={txn.transfer_id} transaction_id={txn.id}"
            )
            raise OrphanedTransferLeg(txn.transfer_id, txn.id)
        if len(siblings) > 1:
            logger.error(
                f"transfer_overfull: transfer_id={txn.transfer_id} legs={len(siblings) + 1}"
            )
            raise ConsistencyError(
                f"Transfer {txn.transfer_id} has {len(siblings) + 1} legs"
            )
        sibling = siblings[0]
        if txn.amount < 0 <= sibling.amount:
            return TransferPair(source=txn, target=sibling)
        if sibling.amount < 0 <= txn.amount:
            return TransferPair(source=sibling, target=txn)
        logger.error(f"transfer_sign_mismatch: transfer_id={txn.transfer_id}")
        raise ConsistencyError(
            f"Transfer {txn.transfer_id} does not have one outgoing and one incoming leg"
        )

    def get(self, transfer_id: str) -> TransferPair:
        first = self.session.scalar(
            select(Transaction)
            .where(Transaction.transfer_id == transfer_id)
            .order_by(Transaction.id)
            .limit(1)
        )
        if not first:
            raise NotFoundError(f"Transfer {transfer_id} not found")
        return self.pair_for(first)

    def update(self, txn: Transaction, data: TransactionUpdate) -> TransferPair:
        """Apply an edit to both legs.

        The payload is read in pair terms whichever leg is addressed:
        ``amount``/``account_id`` describe the outgoing leg and
        ``target_amount``/``target_account_id`` the incoming one. Without a
        ``target_amount`` a new ``amount`` is mirrored onto the incoming leg.
        Date and memo are mirrored to both legs.
        """
        pair = self.pair_for(txn)
        changes = data.model_dump(exclude_unset=True)

        source_account_id = changes.get("account_id") or pair.source.account_id
        target_account_id = changes.get("target_account_id") or pair.target.account_id
        if source_account_id == target_account_id:
            raise InvalidTransfer("Cannot transfer to the same account")
        source_account = self._account(source_account_id)
        target_account = self._account(target_account_id)

        amount = changes.get("amount")
        if amount is not None and amount == 0:
            raise ValidationError("Amount must be non-zero")
        target_amount = changes.get("target_amount")

        with atomic(self.session):
            if "date" in changes and changes["date"] is not None:
                pair.source.date = changes["date"]
                pair.target.date = changes["date"]
            if "memo" in changes:
                memo = changes["memo"] or ""
                pair.source.memo = memo
                pair.target.memo = memo
            if amount is not None:
                pair.source.amount = -abs(amount)
            if target_amount is not None:
                pair.target.amount = abs(target_amount)
            elif amount is not None:
                pair.target.amount = abs(amount)

            accounts_changed = (
                source_account_id != pair.source.account_id
                or target_account_id != pair.target.account_id
            )
            pair.source.account_id = source_account_id
            pair.target.account_id = target_account_id
            if accounts_changed:
                pair.source.payee = outgoing_label(target_account)
                pair.target.payee = incoming_label(source_account)
            self.session.flush()

        logger.info(
            f"transfer_updated: transfer_id={pair.transfer_id} "
            f"source_amount={pair.source.amount} target_amount={pair.target.amount}"
        )
        return pair

    def delete(self, txn: Transaction) -> list[int]:
        pair = self.pair_for(txn)
        ids = pair.ids
        with atomic(self.session):
            self.session.delete(pair.source)
            self.session.delete(pair.target)
        logger.info(f"transfer_deleted: transfer_id={pair.transfer_id} ids={ids}")
        return ids

    def delete_for_account(self, account_id: int) -> int:
        """Delete every transfer leg pair touching ``account_id``.

        Does not commit; the caller owns the surrounding store transaction.
        """
        transfer_ids = self.session.scalars(
            select(Transaction.transfer_id)
            .where(
                Transaction.account_id == account_id,
                Transaction.transfer_id.is_not(None),
            )
            .distinct()
        ).all()
        if not transfer_ids:
            return 0
        result = self.session.execute(
            delete(Transaction).where(Transaction.transfer_id.in_(transfer_ids))
        )
        return result.rowcount or 0

    def integrity_report(self) -> list[TransferIssue]:
        rows = self.session.execute(
            select(
                Transaction.id,
                Transaction.transfer_id,
                Transaction.account_id,
                Transaction.amount,
            )
            .where(Transaction.transfer_id.is_not(None))
            .order_by(Transaction.transfer_id, Transaction.id)
        ).all()
        groups: dict[str, list] = defaultdict(list)
        for row in rows:
            groups[row.transfer_id].append(row)

        issues: list[TransferIssue] = []
        for transfer_id, legs in groups.items():
            ids = [leg.id for leg in legs]
            if len(legs) != 2:
                issues.append(
                    TransferIssue(transfer_id, f"expected 2 legs, found {len(legs)}", ids)
                )
                continue
            first, second = legs
            if first.account_id == second.account_id:
                issues.append(TransferIssue(transfer_id, "both legs on one account", ids))
                continue
            signs = sorted(Decimal(leg.amount) < 0 for leg in legs)
            if signs != [False, True]:
                issues.append(
                    TransferIssue(transfer_id, "legs are not one outgoing and one incoming", ids)
                )
        return issues
