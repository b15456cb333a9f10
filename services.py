from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session, aliased, joinedload

from aggregates import (
    UsageStats,
    ZERO_STATS,
    account_balances,
    build_children,
    category_stats,
    category_tree,
    current_balance,
    payee_stats,
)
from config import get_settings
from csv_utils import (
    DATE_FORMATS,
    DEFAULT_DATE_FORMAT,
    category_path,
    flow_type_code,
    format_homebank_row,
    format_row,
    join_lines,
    normalize_date,
    parse_category_csv,
    parse_homebank_transactions,
    parse_payee_csv,
    safe_account_filename,
    split_category_path,
)
from database import atomic
from dedup import (
    ExistingTransaction,
    TransactionIndex,
    find_duplicate_payees,
    find_duplicate_transactions,
)
from errors import ConflictError, NotFoundError, ValidationError
from models import (
    Account,
    Category,
    ExportManifest,
    FlowType,
    PAYMENT_METHOD_NAMES,
    Payee,
    Setting,
    Transaction,
    TransactionType,
)
from schemas import (
    AccountIn,
    AccountUpdate,
    CategoryIn,
    CategoryUpdate,
    DuplicateCandidate,
    ExportFilters,
    ManifestIn,
    PayeeCandidate,
    PayeeIn,
    PayeeUpdate,
    TransactionImportIn,
    TransactionIn,
    TransactionUpdate,
    TransferIn,
)
from transfers import TransferIssue, TransferManager

logger = logging.getLogger(__name__)


def _transaction_rows(session: Session, *criteria):
    stmt = select(
        Transaction.account_id,
        Transaction.category_id,
        Transaction.payee,
        Transaction.amount,
    )
    if criteria:
        stmt = stmt.where(*criteria)
    return session.execute(stmt).all()


class AccountService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account:
            raise NotFoundError("Account not found")
        return account

    def list_with_balances(self) -> list[dict[str, object]]:
        accounts = self.session.scalars(select(Account).order_by(Account.name)).all()
        balances = account_balances(accounts, _transaction_rows(self.session))
        return [
            {
                "id": acc.id,
                "name": acc.name,
                "currency": acc.currency,
                "initial_balance": acc.initial_balance,
                "current_balance": balances[acc.id],
            }
            for acc in accounts
        ]

    def balance(self, account_id: int) -> Decimal:
        account = self.get(account_id)
        amounts = self.session.scalars(
            select(Transaction.amount).where(Transaction.account_id == account_id)
        ).all()
        return current_balance(account.initial_balance, amounts)

    def create(self, data: AccountIn) -> Account:
        account = Account(
            name=data.name.strip(),
            currency=data.currency.strip(),
            initial_balance=data.initial_balance,
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def update(self, account_id: int, data: AccountUpdate) -> Account:
        account = self.get(account_id)
        changes = data.model_dump(exclude_unset=True)
        if changes.get("name") is not None:
            account.name = changes["name"].strip()
        if changes.get("currency") is not None:
            account.currency = changes["currency"].strip()
        if changes.get("initial_balance") is not None:
            account.initial_balance = changes["initial_balance"]
        self.session.commit()
        self.session.refresh(account)
        return account

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        with atomic(self.session):
            legs = TransferManager(self.session).delete_for_account(account_id)
            result = self.session.execute(
                delete(Transaction).where(Transaction.account_id == account_id)
            )
            self.session.delete(account)
        logger.info(
            f"account_deleted: account_id={account_id} "
            f"transactions={result.rowcount or 0} transfer_legs={legs}"
        )

    def rename_currency(self, old_code: str, new_code: str) -> int:
        old_code = (old_code or "").strip()
        new_code = (new_code or "").strip()
        if not old_code:
            raise ValidationError("Old currency code is required")
        if not 2 <= len(new_code) <= 10:
            raise ValidationError("New currency code must be 2 to 10 characters")
        with atomic(self.session):
            result = self.session.execute(
                update(Account)
                .where(Account.currency == old_code)
                .values(currency=new_code)
            )
        changed = result.rowcount or 0
        logger.info(
            f"currency_renamed: old={old_code} new={new_code} accounts={changed}"
        )
        return changed


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Category]:
        stmt = select(Category).order_by(Category.name, Category.id)
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFoundError("Category not found")
        return category

    def stats(self) -> dict[int, UsageStats]:
        return category_stats(self.list_all(), _transaction_rows(self.session))

    def tree(self) -> list[dict[str, object]]:
        categories = self.list_all()
        stats = category_stats(categories, _transaction_rows(self.session))
        return category_tree(categories, stats)

    def _descendant_ids(self, category_id: int) -> set[int]:
        _, children = build_children(self.list_all())
        found: set[int] = set()
        stack = list(children.get(category_id, []))
        while stack:
            node = stack.pop()
            if node in found:
                continue
            found.add(node)
            stack.extend(children.get(node, []))
        return found

    def create(self, data: CategoryIn) -> Category:
        if data.parent_id is not None:
            self.get(data.parent_id)
        name = data.name.strip()
        if not name:
            raise ValidationError("Category name is required")
        category = Category(name=name, type=data.type, parent_id=data.parent_id)
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        category = self.get(category_id)
        changes = data.model_dump(exclude_unset=True)
        if "parent_id" in changes:
            parent_id = changes["parent_id"]
            if parent_id is not None:
                self.get(parent_id)
                if parent_id == category_id or parent_id in self._descendant_ids(category_id):
                    raise ValidationError(
                        "A category cannot be moved under itself or its descendants"
                    )
            category.parent_id = parent_id
        if changes.get("name") is not None:
            name = changes["name"].strip()
            if not name:
                raise ValidationError("Category name is required")
            category.name = name
        if changes.get("type") is not None:
            category.type = changes["type"]
        self.session.commit()
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        with atomic(self.session):
            self.session.execute(
                update(Category)
                .where(Category.parent_id == category_id)
                .values(parent_id=None)
            )
            self.session.execute(
                update(Transaction)
                .where(Transaction.category_id == category_id)
                .values(category_id=None)
            )
            self.session.execute(
                update(Payee)
                .where(Payee.default_category_id == category_id)
                .values(default_category_id=None)
            )
            self.session.delete(category)

    def resolve_path(
        self,
        path: str,
        new_type: FlowType,
        cache: Optional[dict[tuple[Optional[int], str], int]] = None,
    ) -> Optional[int]:
        """Find or create the category for a ``Parent:Child`` path.

        Each level matches case-insensitively under the previous one.
        Missing levels are created with ``new_type``. Flushes, never commits.
        """
        cache = cache if cache is not None else {}
        parent_id: Optional[int] = None
        category_id: Optional[int] = None
        for name in split_category_path(path):
            key = (parent_id, name.lower())
            category_id = cache.get(key)
            if category_id is None:
                parent_clause = (
                    Category.parent_id.is_(None)
                    if parent_id is None
                    else Category.parent_id == parent_id
                )
                category_id = self.session.scalar(
                    select(Category.id)
                    .where(func.lower(Category.name) == name.lower(), parent_clause)
                    .order_by(Category.id)
                    .limit(1)
                )
                if category_id is None:
                    created = Category(name=name, type=new_type, parent_id=parent_id)
                    self.session.add(created)
                    self.session.flush()
                    category_id = created.id
                cache[key] = category_id
            parent_id = category_id
        return category_id

    def export_csv(self) -> str:
        categories = self.list_all()
        by_id = {cat.id: cat for cat in categories}
        roots, children = build_children(categories)
        lines: list[str] = []
        stack = [(cat_id, 1) for cat_id in sorted(roots, key=lambda c: by_id[c].name, reverse=True)]
        while stack:
            cat_id, level = stack.pop()
            cat = by_id[cat_id]
            lines.append(format_row([level, flow_type_code(cat.type), cat.name]))
            kids = sorted(children[cat_id], key=lambda c: by_id[c].name, reverse=True)
            stack.extend((kid, level + 1) for kid in kids)
        return join_lines(lines)

    def import_csv(self, content: str) -> int:
        rows = parse_category_csv(content)
        imported = 0
        last_root_id: Optional[int] = None
        with atomic(self.session):
            for row in rows:
                if row.level == 1:
                    category = Category(name=row.name, type=row.type, parent_id=None)
                elif row.level == 2 and last_root_id is not None:
                    category = Category(name=row.name, type=row.type, parent_id=last_root_id)
                else:
                    continue
                self.session.add(category)
                self.session.flush()
                if row.level == 1:
                    last_root_id = category.id
                imported += 1
        logger.info(f"categories_imported: count={imported}")
        return imported


class PayeeService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Payee]:
        return self.session.scalars(
            select(Payee).options(joinedload(Payee.default_category)).order_by(Payee.name)
        ).all()

    def list_with_stats(self) -> list[dict[str, object]]:
        payees = self.list_all()
        stats = payee_stats(
            [p.name for p in payees],
            _transaction_rows(self.session, Transaction.payee.in_([p.name for p in payees])),
        )
        return [
            {
                "id": p.id,
                "name": p.name,
                "default_category_id": p.default_category_id,
                "category_name": p.default_category.name if p.default_category else None,
                "default_payment_type": p.default_payment_type,
                "usage_count": stats.get(p.name, ZERO_STATS).count,
                "total_amount": stats.get(p.name, ZERO_STATS).total,
            }
            for p in payees
        ]

    def get(self, payee_id: int) -> Payee:
        payee = self.session.get(Payee, payee_id)
        if not payee:
            raise NotFoundError("Payee not found")
        return payee

    def _ensure_unique(self, name: str, exclude_id: Optional[int] = None) -> None:
        stmt = select(Payee.id).where(Payee.name == name)
        if exclude_id is not None:
            stmt = stmt.where(Payee.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise ConflictError(f"Payee '{name}' already exists")

    def create(self, data: PayeeIn) -> Payee:
        name = data.name.strip()
        if not name:
            raise ValidationError("Payee name is required")
        self._ensure_unique(name)
        payee = Payee(
            name=name,
            default_category_id=data.default_category_id,
            default_payment_type=data.default_payment_type,
        )
        self.session.add(payee)
        self.session.commit()
        self.session.refresh(payee)
        return payee

    def update(self, payee_id: int, data: PayeeUpdate) -> Payee:
        payee = self.get(payee_id)
        changes = data.model_dump(exclude_unset=True)
        if changes.get("name") is not None:
            name = changes["name"].strip()
            if not name:
                raise ValidationError("Payee name is required")
            self._ensure_unique(name, exclude_id=payee_id)
            payee.name = name
        if "default_category_id" in changes:
            payee.default_category_id = changes["default_category_id"]
        if "default_payment_type" in changes:
            payee.default_payment_type = changes["default_payment_type"]
        self.session.commit()
        self.session.refresh(payee)
        return payee

    def delete(self, payee_id: int) -> None:
        payee = self.get(payee_id)
        self.session.delete(payee)
        self.session.commit()

    def upsert_defaults(
        self, name: str, category_id: Optional[int], payment_type: Optional[int]
    ) -> Payee:
        """Remember the defaults of the latest transaction for ``name``.

        Flushes, never commits.
        """
        payee = self.session.scalar(select(Payee).where(Payee.name == name))
        if payee:
            payee.default_category_id = category_id
            payee.default_payment_type = payment_type
        else:
            payee = Payee(
                name=name,
                default_category_id=category_id,
                default_payment_type=payment_type,
            )
            self.session.add(payee)
        self.session.flush()
        return payee

    def export_csv(self) -> str:
        parent = aliased(Category)
        rows = self.session.execute(
            select(Payee.name, Payee.default_payment_type, Category.name, parent.name)
            .outerjoin(Category, Payee.default_category_id == Category.id)
            .outerjoin(parent, Category.parent_id == parent.id)
            .order_by(Payee.name)
        ).all()
        lines = []
        for name, payment_type, category_name, parent_name in rows:
            payment_name = ""
            if payment_type is not None:
                payment_name = PAYMENT_METHOD_NAMES.get(payment_type, "")
            lines.append(
                format_row([name, category_path(category_name, parent_name), payment_name])
            )
        return join_lines(lines)

    def import_csv(self, content: str, skip_duplicates: bool = False) -> int:
        rows = parse_payee_csv(content)
        payment_codes = {label.lower(): int(code) for code, label in PAYMENT_METHOD_NAMES.items()}
        categories = CategoryService(self.session)
        cache: dict[tuple[Optional[int], str], int] = {}
        imported = 0
        with atomic(self.session):
            for row in rows:
                existing = self.session.scalar(select(Payee).where(Payee.name == row.name))
                if existing and skip_duplicates:
                    continue
                category_id = None
                if row.category:
                    category_id = categories.resolve_path(row.category, FlowType.expense, cache)
                payment_type = payment_codes.get(row.payment_name.lower()) if row.payment_name else None
                if existing:
                    existing.default_category_id = category_id
                    existing.default_payment_type = payment_type
                else:
                    self.session.add(
                        Payee(
                            name=row.name,
                            default_category_id=category_id,
                            default_payment_type=payment_type,
                        )
                    )
                self.session.flush()
                imported += 1
        logger.info(f"payees_imported: count={imported} skip_duplicates={skip_duplicates}")
        return imported


@dataclass
class TransactionFilters:
    account_id: Optional[int] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None


@dataclass
class CreateResult:
    id: Optional[int] = None
    transfer_id: Optional[str] = None


class TransactionService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category), joinedload(Transaction.account))
            .where(Transaction.id == transaction_id)
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def list(self, filters: Optional[TransactionFilters] = None) -> list[Transaction]:
        filters = filters or TransactionFilters()
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category), joinedload(Transaction.account))
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        if filters.account_id:
            stmt = stmt.where(Transaction.account_id == filters.account_id)
        if filters.date_from:
            stmt = stmt.where(Transaction.date >= filters.date_from)
        if filters.date_to:
            stmt = stmt.where(Transaction.date <= filters.date_to)
        return self.session.scalars(stmt).all()

    def _require_account(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account:
            raise NotFoundError(f"Account {account_id} not found")
        return account

    def _require_category(self, category_id: Optional[int]) -> None:
        if category_id is not None and not self.session.get(Category, category_id):
            raise NotFoundError(f"Category {category_id} not found")

    def create(self, data: TransactionIn) -> CreateResult:
        if data.amount <= 0:
            raise ValidationError("Amount must be a positive number")
        if data.type == TransactionType.transfer:
            if not data.target_account_id:
                raise ValidationError("Target account required for transfers")
            pair = TransferManager(self.session).create(
                TransferIn(
                    source_account_id=data.account_id,
                    target_account_id=data.target_account_id,
                    amount=data.amount,
                    target_amount=data.target_amount,
                    date=data.date,
                    memo=data.memo,
                )
            )
            return CreateResult(transfer_id=pair.transfer_id)

        self._require_account(data.account_id)
        self._require_category(data.category_id)
        amount = -data.amount if data.type == TransactionType.expense else data.amount
        payee = (data.payee or "").strip()
        with atomic(self.session):
            txn = Transaction(
                account_id=data.account_id,
                date=data.date,
                payee=payee,
                amount=amount,
                category_id=data.category_id,
                payment_type=data.payment_type or 0,
                memo=(data.memo or "").strip(),
            )
            self.session.add(txn)
            if payee and data.category_id:
                PayeeService(self.session).upsert_defaults(
                    payee, data.category_id, data.payment_type
                )
            self.session.flush()
        return CreateResult(id=txn.id)

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        txn = self.get(transaction_id)
        if txn.transfer_id:
            TransferManager(self.session).update(txn, data)
            return self.get(transaction_id)

        changes = data.model_dump(exclude_unset=True)
        if changes.get("account_id") is not None:
            self._require_account(changes["account_id"])
        if "category_id" in changes:
            self._require_category(changes["category_id"])
        with atomic(self.session):
            for key in ("date", "amount", "account_id"):
                if changes.get(key) is not None:
                    setattr(txn, key, changes[key])
            if "payee" in changes:
                txn.payee = (changes["payee"] or "").strip()
            if "memo" in changes:
                txn.memo = (changes["memo"] or "").strip()
            if "category_id" in changes:
                txn.category_id = changes["category_id"]
            if "payment_type" in changes:
                txn.payment_type = changes["payment_type"] or 0
        return self.get(transaction_id)

    def delete(self, transaction_id: int) -> list[int]:
        txn = self.get(transaction_id)
        if txn.transfer_id:
            return TransferManager(self.session).delete(txn)
        with atomic(self.session):
            self.session.delete(txn)
        return [transaction_id]

    def transfer_integrity(self) -> list[TransferIssue]:
        return TransferManager(self.session).integrity_report()


class DuplicateDetectionService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def index_for_dates(self, dates: Iterable[date]) -> TransactionIndex:
        wanted = sorted(set(dates))
        if not wanted:
            return TransactionIndex()
        rows = self.session.execute(
            select(
                Transaction.id, Transaction.date, Transaction.payee, Transaction.amount
            ).where(Transaction.date.in_(wanted))
        ).all()
        return TransactionIndex(
            ExistingTransaction(id=row.id, date=row.date, payee=row.payee or "", amount=row.amount)
            for row in rows
        )

    def check_transactions(
        self, candidates: list[DuplicateCandidate], date_format: Optional[str] = None
    ) -> list[DuplicateCandidate]:
        dates = []
        for candidate in candidates:
            try:
                dates.append(normalize_date(candidate.date, date_format))
            except ValueError:
                continue
        index = self.index_for_dates(dates)
        return find_duplicate_transactions(candidates, index, date_format=date_format)

    def check_payees(self, candidates: list[PayeeCandidate]) -> list[PayeeCandidate]:
        names = [candidate.name for candidate in candidates]
        existing = self.session.scalars(select(Payee.name).where(Payee.name.in_(names))).all()
        return find_duplicate_payees(candidates, existing)


@dataclass
class ImportResult:
    count: int = 0
    skipped_duplicates: int = 0
    errors: list[str] = field(default_factory=list)


class ImportService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _date_format(self, requested: Optional[str]) -> str:
        if requested:
            if requested not in DATE_FORMATS:
                raise ValidationError(f"Unsupported date format '{requested}'")
            return requested
        return SettingsService(self.session).get("date_format")

    def preview(
        self, content: str, date_format: Optional[str] = None
    ) -> tuple[list[dict[str, object]], list[str]]:
        rows, errors = parse_homebank_transactions(content, self._date_format(date_format))
        index = DuplicateDetectionService(self.session).index_for_dates(r.date for r in rows)
        preview_rows = []
        for row in rows:
            preview_rows.append(
                {
                    "line": row.line,
                    "date": row.date,
                    "payment_type": row.payment_type,
                    "payee": row.payee,
                    "memo": row.memo,
                    "amount": row.amount,
                    "category": row.category,
                    "duplicate": index.match(row.date, row.payee, row.amount) is not None,
                }
            )
        return preview_rows, errors

    def import_csv(self, data: TransactionImportIn) -> ImportResult:
        account = self.session.get(Account, data.account_id)
        if not account:
            raise NotFoundError("Target account not found")
        rows, errors = parse_homebank_transactions(
            data.csv_data, self._date_format(data.date_format)
        )
        index = (
            DuplicateDetectionService(self.session).index_for_dates(r.date for r in rows)
            if data.skip_duplicates
            else None
        )
        categories = CategoryService(self.session)
        cache: dict[tuple[Optional[int], str], int] = {}
        result = ImportResult(errors=errors)

        with atomic(self.session):
            for row in rows:
                if index is not None:
                    if index.match(row.date, row.payee, row.amount) is not None:
                        result.skipped_duplicates += 1
                        continue
                    index.add(ExistingTransaction(None, row.date, row.payee, row.amount))
                category_id = None
                if row.category:
                    new_type = FlowType.expense if row.amount < 0 else FlowType.income
                    category_id = categories.resolve_path(row.category, new_type, cache)
                self.session.add(
                    Transaction(
                        account_id=account.id,
                        date=row.date,
                        payee=row.payee,
                        amount=row.amount,
                        category_id=category_id,
                        payment_type=row.payment_type,
                        memo=row.memo,
                    )
                )
                result.count += 1
            self.session.flush()

        logger.info(
            f"import_committed: account_id={account.id} count={result.count} "
            f"skipped_duplicates={result.skipped_duplicates} errors={len(errors)}"
        )
        return result


@dataclass
class ExportResult:
    content: str
    count: int
    transaction_ids: list[int]


@dataclass
class AccountExport:
    account_id: int
    name: str
    content: str
    count: int
    transaction_ids: list[int]


class ExportService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _rows(self, filters: ExportFilters):
        parent = aliased(Category)
        stmt = (
            select(
                Transaction.id,
                Transaction.date,
                Transaction.payment_type,
                Transaction.payee,
                Transaction.memo,
                Transaction.amount,
                Transaction.account_id,
                Account.name.label("account_name"),
                Category.name.label("category_name"),
                parent.name.label("parent_category_name"),
            )
            .join(Account, Transaction.account_id == Account.id)
            .outerjoin(Category, Transaction.category_id == Category.id)
            .outerjoin(parent, Category.parent_id == parent.id)
            .order_by(Account.name.asc(), Transaction.date.desc(), Transaction.id.desc())
        )
        if filters.ids:
            stmt = stmt.where(Transaction.id.in_(filters.ids))
        if filters.account_id:
            stmt = stmt.where(Transaction.account_id == filters.account_id)
        if filters.date_from:
            stmt = stmt.where(Transaction.date >= filters.date_from)
        if filters.date_to:
            stmt = stmt.where(Transaction.date <= filters.date_to)
        if filters.category_id:
            stmt = stmt.where(
                or_(
                    Transaction.category_id == filters.category_id,
                    Category.parent_id == filters.category_id,
                )
            )
        if filters.payee:
            stmt = stmt.where(
                func.lower(Transaction.payee).like(f"%{filters.payee.lower()}%")
            )
        return self.session.execute(stmt).all()

    def _format(self, row, filters: ExportFilters) -> str:
        return format_homebank_row(
            row.date,
            row.payment_type,
            row.payee,
            row.memo,
            row.amount or Decimal("0"),
            category_path(row.category_name, row.parent_category_name),
            date_format=filters.date_format or DEFAULT_DATE_FORMAT,
            decimal_separator=filters.decimal_separator,
        )

    def export(self, filters: ExportFilters) -> ExportResult:
        rows = self._rows(filters)
        content = join_lines([self._format(row, filters) for row in rows])
        return ExportResult(
            content=content,
            count=len(rows),
            transaction_ids=[row.id for row in rows],
        )

    def export_grouped(self, filters: ExportFilters) -> "OrderedDict[int, AccountExport]":
        groups: OrderedDict[int, list] = OrderedDict()
        names: dict[int, str] = {}
        for row in self._rows(filters):
            groups.setdefault(row.account_id, []).append(row)
            names[row.account_id] = row.account_name
        result: OrderedDict[int, AccountExport] = OrderedDict()
        for account_id, rows in groups.items():
            lines = [self._format(row, filters) for row in rows]
            result[account_id] = AccountExport(
                account_id=account_id,
                name=names[account_id],
                content=join_lines(lines),
                count=len(lines),
                transaction_ids=[row.id for row in rows],
            )
        return result


class ExportManifestService:
    """Records what was exported and which transactions it covered.

    Deleting a manifest clears ``exported`` and the manifest reference on the
    transactions it covered, so the pair is always both set or both empty.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[ExportManifest]:
        return self.session.scalars(
            select(ExportManifest).order_by(ExportManifest.id.desc())
        ).all()

    def get(self, manifest_id: int) -> ExportManifest:
        manifest = self.session.get(ExportManifest, manifest_id)
        if not manifest:
            raise NotFoundError("Export manifest not found")
        return manifest

    def _validate(self, data: ManifestIn) -> list[int]:
        if not data.filename.strip():
            raise ValidationError("Filename is required")
        if data.count < 0:
            raise ValidationError("Row count must not be negative")
        limit = get_settings().max_manifest_bytes
        if len(data.content.encode("utf-8")) > limit:
            raise ValidationError(f"Export content exceeds {limit} bytes")
        ids = sorted(set(data.transaction_ids or []))
        if ids:
            found = set(
                self.session.scalars(select(Transaction.id).where(Transaction.id.in_(ids))).all()
            )
            missing = [txn_id for txn_id in ids if txn_id not in found]
            if missing:
                raise NotFoundError(f"Transactions not found: {missing}")
        return ids

    def _record(self, data: ManifestIn, ids: list[int]) -> ExportManifest:
        manifest = ExportManifest(
            timestamp=datetime.utcnow(),
            filename=data.filename.strip(),
            count=data.count,
            content=data.content,
        )
        self.session.add(manifest)
        self.session.flush()
        if ids:
            self.session.execute(
                update(Transaction)
                .where(Transaction.id.in_(ids))
                .values(exported=True, export_manifest_id=manifest.id)
            )
        return manifest

    def record(self, data: ManifestIn) -> ExportManifest:
        ids = self._validate(data)
        with atomic(self.session):
            manifest = self._record(data, ids)
        logger.info(
            f"manifest_recorded: id={manifest.id} filename={manifest.filename} "
            f"count={manifest.count} transactions={len(ids)}"
        )
        return manifest

    def record_export(self, result: ExportResult, filename: str) -> ExportManifest:
        return self.record(
            ManifestIn(
                filename=filename,
                count=result.count,
                content=result.content,
                transaction_ids=result.transaction_ids,
            )
        )

    def record_grouped(
        self, groups: dict[int, AccountExport], on_date: Optional[date] = None
    ) -> dict[int, ExportManifest]:
        """One manifest per account, each marking only its own transactions."""
        on_date = on_date or date.today()
        payloads = {
            account_id: ManifestIn(
                filename=safe_account_filename(group.name, on_date),
                count=group.count,
                content=group.content,
                transaction_ids=group.transaction_ids,
            )
            for account_id, group in groups.items()
        }
        validated = {account_id: self._validate(data) for account_id, data in payloads.items()}
        manifests: dict[int, ExportManifest] = {}
        with atomic(self.session):
            for account_id, data in payloads.items():
                manifests[account_id] = self._record(data, validated[account_id])
        for account_id, manifest in manifests.items():
            logger.info(
                f"manifest_recorded: id={manifest.id} account_id={account_id} "
                f"filename={manifest.filename} count={manifest.count}"
            )
        return manifests

    def delete(self, manifest_id: int) -> int:
        manifest = self.get(manifest_id)
        with atomic(self.session):
            result = self.session.execute(
                update(Transaction)
                .where(Transaction.export_manifest_id == manifest_id)
                .values(exported=False, export_manifest_id=None)
            )
            self.session.delete(manifest)
        cleared = result.rowcount or 0
        logger.info(f"manifest_deleted: id={manifest_id} cleared={cleared}")
        return cleared

    def delete_all(self) -> int:
        with atomic(self.session):
            result = self.session.execute(
                update(Transaction)
                .where(Transaction.export_manifest_id.is_not(None))
                .values(exported=False, export_manifest_id=None)
            )
            self.session.execute(delete(ExportManifest))
        cleared = result.rowcount or 0
        logger.info(f"manifests_cleared: cleared={cleared}")
        return cleared


BOOLEAN_VALUES = ("true", "false")

SETTING_DEFAULTS = {
    "allow_registration": "false",
    "privacy_mode": "false",
    "date_format": DEFAULT_DATE_FORMAT,
}

SETTING_CHOICES = {
    "allow_registration": BOOLEAN_VALUES,
    "privacy_mode": BOOLEAN_VALUES,
    "date_format": DATE_FORMATS,
}


class SettingsService:
    """Persisted application settings.

    Every read goes to the table; nothing is held in memory between calls.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def _check_key(self, key: str) -> None:
        if key not in SETTING_DEFAULTS:
            raise ValidationError(f"Invalid setting key '{key}'")

    def get(self, key: str) -> str:
        self._check_key(key)
        value = self.session.scalar(select(Setting.value).where(Setting.key == key))
        return value if value is not None else SETTING_DEFAULTS[key]

    def all(self) -> dict[str, str]:
        stored = dict(self.session.execute(select(Setting.key, Setting.value)).all())
        return {key: stored.get(key, default) for key, default in SETTING_DEFAULTS.items()}

    def set(self, key: str, value: str) -> str:
        self._check_key(key)
        if not isinstance(value, str):
            raise ValidationError("Value must be a string")
        if value not in SETTING_CHOICES[key]:
            allowed = ", ".join(SETTING_CHOICES[key])
            raise ValidationError(f"Invalid value for '{key}'; expected one of: {allowed}")
        with atomic(self.session):
            setting = self.session.get(Setting, key)
            if setting:
                setting.value = value
                setting.updated_at = datetime.utcnow()
            else:
                self.session.add(Setting(key=key, value=value, updated_at=datetime.utcnow()))
        logger.info(f"setting_updated: key={key} value={value}")
        return value


class SystemService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def reset(self) -> None:
        with atomic(self.session):
            self.session.execute(delete(Transaction))
            self.session.execute(delete(Payee))
            self.session.execute(delete(Account))
            self.session.execute(update(Category).values(parent_id=None))
            self.session.execute(delete(Category))
            self.session.execute(delete(ExportManifest))
        logger.warning("system_reset: all ledger data deleted")
