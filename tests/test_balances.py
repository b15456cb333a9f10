from datetime import date
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from aggregates import account_balances, category_stats, payee_stats
from database import Base
from models import Account, Category, FlowType, Transaction, TransactionType
from schemas import AccountIn, CategoryIn, TransactionIn, TransactionUpdate
from services import AccountService, CategoryService, PayeeService, TransactionService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def expense(account_id, amount, day=1, **extra) -> TransactionIn:
    return TransactionIn(
        type=TransactionType.expense,
        account_id=account_id,
        amount=Decimal(amount),
        date=date(2024, 1, day),
        **extra,
    )


def test_balance_is_initial_plus_signed_sum() -> None:
    session = make_session()
    accounts = AccountService(session)
    checking = accounts.create(
        AccountIn(name="Checking", currency="EUR", initial_balance=Decimal("1000"))
    )
    txns = TransactionService(session)
    txns.create(expense(checking.id, "120.50"))
    txns.create(
        TransactionIn(
            type=TransactionType.income,
            account_id=checking.id,
            amount=Decimal("2000"),
            date=date(2024, 1, 2),
        )
    )

    assert accounts.balance(checking.id) == Decimal("2879.50")
    listed = accounts.list_with_balances()
    assert listed[0]["current_balance"] == Decimal("2879.50")


def test_balance_follows_amount_edits_and_deletes() -> None:
    session = make_session()
    accounts = AccountService(session)
    acc = accounts.create(AccountIn(name="Cash", currency="EUR"))
    txns = TransactionService(session)
    created = txns.create(expense(acc.id, "10"))

    assert accounts.balance(acc.id) == Decimal("-10")

    txns.update(created.id, TransactionUpdate(amount=Decimal("-25.25")))
    assert accounts.balance(acc.id) == Decimal("-25.25")

    txns.delete(created.id)
    assert accounts.balance(acc.id) == Decimal("0")


def test_account_balances_ignores_unknown_accounts() -> None:
    accounts = [Account(id=1, name="A", currency="EUR", initial_balance=Decimal("5"))]
    rows = [
        Transaction(account_id=1, amount=Decimal("-2")),
        Transaction(account_id=99, amount=Decimal("-1000")),
    ]

    assert account_balances(accounts, rows) == {1: Decimal("3")}


def test_category_stats_are_recursive() -> None:
    categories = [
        Category(id=1, name="Home", type=FlowType.expense, parent_id=None),
        Category(id=2, name="Rent", type=FlowType.expense, parent_id=1),
        Category(id=3, name="Power", type=FlowType.expense, parent_id=1),
        Category(id=4, name="Lost", type=FlowType.expense, parent_id=42),
    ]
    rows = [
        Transaction(account_id=1, category_id=1, amount=Decimal("-5")),
        Transaction(account_id=1, category_id=2, amount=Decimal("-800")),
        Transaction(account_id=1, category_id=3, amount=Decimal("-60")),
        Transaction(account_id=1, category_id=3, amount=Decimal("-40")),
        Transaction(account_id=1, category_id=77, amount=Decimal("-1")),
    ]

    stats = category_stats(categories, rows)

    assert stats[1].count == 4
    assert stats[1].total == Decimal("-905")
    assert stats[3].count == 2
    assert stats[3].total == Decimal("-100")
    assert stats[4].count == 0


def test_category_stats_survive_parent_cycles() -> None:
    categories = [
        Category(id=1, name="A", type=FlowType.expense, parent_id=2),
        Category(id=2, name="B", type=FlowType.expense, parent_id=1),
    ]
    rows = [Transaction(account_id=1, category_id=1, amount=Decimal("-3"))]

    stats = category_stats(categories, rows)

    assert stats[1].count == 1
    assert stats[2].count == 0


def test_category_tree_promotes_orphans_and_sums_children() -> None:
    session = make_session()
    acc = AccountService(session).create(AccountIn(name="Cash", currency="EUR"))
    categories = CategoryService(session)
    home = categories.create(CategoryIn(name="Home", type=FlowType.expense))
    rent = categories.create(
        CategoryIn(name="Rent", type=FlowType.expense, parent_id=home.id)
    )
    txns = TransactionService(session)
    txns.create(expense(acc.id, "700", category_id=rent.id))
    txns.create(expense(acc.id, "30", category_id=home.id))

    tree = categories.tree()

    assert [node["name"] for node in tree] == ["Home"]
    assert tree[0]["usage_count"] == 2
    assert tree[0]["total_amount"] == Decimal("-730")
    assert tree[0]["children"][0]["name"] == "Rent"
    assert tree[0]["children"][0]["usage_count"] == 1


def test_payee_stats_match_exact_names() -> None:
    rows = [
        Transaction(account_id=1, payee="Bakery", amount=Decimal("-3")),
        Transaction(account_id=1, payee="bakery", amount=Decimal("-4")),
        Transaction(account_id=1, payee="Bakery", amount=Decimal("-5")),
    ]

    stats = payee_stats(["Bakery"], rows)

    assert stats["Bakery"].count == 2
    assert stats["Bakery"].total == Decimal("-8")


def test_payee_listing_reports_usage() -> None:
    session = make_session()
    acc = AccountService(session).create(AccountIn(name="Cash", currency="EUR"))
    food = CategoryService(session).create(CategoryIn(name="Food", type=FlowType.expense))
    TransactionService(session).create(expense(acc.id, "12", payee="Bakery", category_id=food.id))

    listed = PayeeService(session).list_with_stats()

    assert listed[0]["name"] == "Bakery"
    assert listed[0]["usage_count"] == 1
    assert listed[0]["total_amount"] == Decimal("-12")
    assert listed[0]["category_name"] == "Food"
