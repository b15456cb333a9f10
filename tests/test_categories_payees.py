from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import ConflictError, NotFoundError, ValidationError
from models import Account, Category, FlowType, Payee, PaymentMethod, Transaction, TransactionType
from schemas import (
    AccountIn,
    CategoryIn,
    CategoryUpdate,
    PayeeIn,
    PayeeUpdate,
    TransactionIn,
)
from services import (
    AccountService,
    CategoryService,
    PayeeService,
    SystemService,
    TransactionService,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def test_category_cannot_move_under_its_descendant() -> None:
    session = make_session()
    service = CategoryService(session)
    home = service.create(CategoryIn(name="Home", type=FlowType.expense))
    rent = service.create(CategoryIn(name="Rent", type=FlowType.expense, parent_id=home.id))

    with pytest.raises(ValidationError):
        service.update(home.id, CategoryUpdate(parent_id=rent.id))
    with pytest.raises(ValidationError):
        service.update(home.id, CategoryUpdate(parent_id=home.id))


def test_category_with_missing_parent_is_rejected() -> None:
    session = make_session()

    with pytest.raises(NotFoundError):
        CategoryService(session).create(
            CategoryIn(name="Rent", type=FlowType.expense, parent_id=12)
        )


def test_deleting_category_detaches_dependents() -> None:
    session = make_session()
    service = CategoryService(session)
    home = service.create(CategoryIn(name="Home", type=FlowType.expense))
    rent = service.create(CategoryIn(name="Rent", type=FlowType.expense, parent_id=home.id))
    acc = AccountService(session).create(AccountIn(name="Cash", currency="EUR"))
    created = TransactionService(session).create(
        TransactionIn(
            type=TransactionType.expense,
            account_id=acc.id,
            amount=Decimal("5"),
            date=date(2024, 1, 1),
            payee="Landlord",
            category_id=home.id,
        )
    )

    service.delete(home.id)

    assert session.get(Category, rent.id).parent_id is None
    assert session.get(Transaction, created.id).category_id is None
    payee = session.scalar(select(Payee).where(Payee.name == "Landlord"))
    assert payee.default_category_id is None


def test_category_csv_round_trip_keeps_hierarchy() -> None:
    session = make_session()
    service = CategoryService(session)
    home = service.create(CategoryIn(name="Home", type=FlowType.expense))
    service.create(CategoryIn(name="Rent", type=FlowType.expense, parent_id=home.id))
    service.create(CategoryIn(name="Salary", type=FlowType.income))

    content = service.export_csv()

    assert content.split("\r\n") == ["1;-;Home", "2;-;Rent", "1;+;Salary"]

    fresh = make_session()
    imported = CategoryService(fresh).import_csv("level;type;name\n" + content)
    assert imported == 3
    rent = fresh.scalar(select(Category).where(Category.name == "Rent"))
    assert rent.parent.name == "Home"


def test_payee_names_are_unique() -> None:
    session = make_session()
    service = PayeeService(session)
    service.create(PayeeIn(name="Bakery"))
    other = service.create(PayeeIn(name="Butcher"))

    with pytest.raises(ConflictError):
        service.create(PayeeIn(name="Bakery"))
    with pytest.raises(ConflictError):
        service.update(other.id, PayeeUpdate(name="Bakery"))


def test_transaction_with_payee_and_category_upserts_payee_defaults() -> None:
    session = make_session()
    acc = AccountService(session).create(AccountIn(name="Cash", currency="EUR"))
    food = CategoryService(session).create(CategoryIn(name="Food", type=FlowType.expense))
    txns = TransactionService(session)
    base = dict(
        type=TransactionType.expense,
        account_id=acc.id,
        amount=Decimal("4"),
        date=date(2024, 1, 1),
        payee="Bakery",
    )

    txns.create(TransactionIn(**base))
    assert session.query(Payee).count() == 0

    txns.create(TransactionIn(**base, category_id=food.id, payment_type=3))
    payee = session.scalar(select(Payee))
    assert payee.default_category_id == food.id
    assert payee.default_payment_type == PaymentMethod.cash


def test_payee_csv_import_resolves_paths_and_payment_names() -> None:
    session = make_session()
    service = PayeeService(session)
    service.create(PayeeIn(name="Bakery"))
    content = "name;category;payment\nBakery;Food:Bread;cash\nGrid;Home:Power;Direct Debit"

    assert service.import_csv(content, skip_duplicates=True) == 1

    grid = session.scalar(select(Payee).where(Payee.name == "Grid"))
    assert grid.default_payment_type == PaymentMethod.direct_debit
    assert grid.default_category.name == "Power"
    assert grid.default_category.parent.name == "Home"
    assert grid.default_category.type == FlowType.expense
    bakery = session.scalar(select(Payee).where(Payee.name == "Bakery"))
    assert bakery.default_category_id is None

    assert service.import_csv(content, skip_duplicates=False) == 2
    assert session.scalar(select(Payee).where(Payee.name == "Bakery")).default_payment_type == 3


def test_payee_csv_export() -> None:
    session = make_session()
    home = CategoryService(session).create(CategoryIn(name="Home", type=FlowType.expense))
    power = CategoryService(session).create(
        CategoryIn(name="Power", type=FlowType.expense, parent_id=home.id)
    )
    PayeeService(session).create(
        PayeeIn(name="Grid", default_category_id=power.id, default_payment_type=11)
    )

    assert PayeeService(session).export_csv() == "Grid;Home:Power;Direct Debit"


def test_rename_currency_counts_changed_accounts() -> None:
    session = make_session()
    accounts = AccountService(session)
    accounts.create(AccountIn(name="A", currency="EUR"))
    accounts.create(AccountIn(name="B", currency="EUR"))
    accounts.create(AccountIn(name="C", currency="USD"))

    assert accounts.rename_currency("EUR", "EURO") == 2
    assert sorted(a.currency for a in session.scalars(select(Account))) == ["EURO", "EURO", "USD"]

    with pytest.raises(ValidationError):
        accounts.rename_currency("USD", "X")


def test_system_reset_keeps_nothing() -> None:
    session = make_session()
    acc = AccountService(session).create(AccountIn(name="Cash", currency="EUR"))
    home = CategoryService(session).create(CategoryIn(name="Home", type=FlowType.expense))
    CategoryService(session).create(CategoryIn(name="Rent", type=FlowType.expense, parent_id=home.id))
    TransactionService(session).create(
        TransactionIn(
            type=TransactionType.expense,
            account_id=acc.id,
            amount=Decimal("5"),
            date=date(2024, 1, 1),
            payee="Landlord",
            category_id=home.id,
        )
    )

    SystemService(session).reset()

    for model in (Account, Category, Payee, Transaction):
        assert session.query(model).count() == 0
