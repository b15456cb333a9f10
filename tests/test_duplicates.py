from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from csv_utils import normalize_date
from database import Base
from dedup import ExistingTransaction, TransactionIndex, find_duplicate_transactions
from models import Account, Transaction
from schemas import DuplicateCandidate, PayeeCandidate, PayeeIn
from services import DuplicateDetectionService, PayeeService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def seed(session, *rows):
    account = Account(name="Checking", currency="EUR", initial_balance=Decimal("0"))
    session.add(account)
    session.flush()
    for txn_date, payee, amount in rows:
        session.add(
            Transaction(
                account_id=account.id, date=txn_date, payee=payee, amount=Decimal(amount)
            )
        )
    session.commit()
    return account


def test_flags_case_insensitive_payee_within_tolerance() -> None:
    session = make_session()
    seed(session, (date(2024, 1, 5), "landlord", "1200.001"))

    candidates = [DuplicateCandidate(date="2024-01-05", payee="Landlord", amount=Decimal("1200.00"))]
    duplicates = DuplicateDetectionService(session).check_transactions(candidates)

    assert duplicates == candidates


def test_amounts_at_least_a_tenth_of_a_cent_apart_are_distinct() -> None:
    index = TransactionIndex(
        [ExistingTransaction(1, date(2024, 2, 1), "Cafe", Decimal("50.00"))]
    )

    assert index.match(date(2024, 2, 1), "cafe", Decimal("50.002")) is None
    assert index.match(date(2024, 2, 1), "CAFE", Decimal("50.0004")) is not None


def test_different_date_or_payee_is_not_a_duplicate() -> None:
    session = make_session()
    seed(session, (date(2024, 1, 5), "Landlord", "-1200"))

    candidates = [
        DuplicateCandidate(date="06-01-2024", payee="Landlord", amount=Decimal("-1200")),
        DuplicateCandidate(date="05-01-2024", payee="Landlady", amount=Decimal("-1200")),
        DuplicateCandidate(date="05-01-2024", payee=" landlord ", amount=Decimal("-1200")),
        DuplicateCandidate(date="05-01-2024", payee="LANDLORD", amount=Decimal("-1200")),
    ]
    duplicates = DuplicateDetectionService(session).check_transactions(candidates)

    assert duplicates == [candidates[3]]


def test_date_format_decides_day_month_order() -> None:
    session = make_session()
    seed(session, (date(2024, 3, 4), "Shop", "-9.99"))

    day_first = [DuplicateCandidate(date="04/03/2024", payee="Shop", amount=Decimal("-9.99"))]
    month_first = [DuplicateCandidate(date="03.04.2024", payee="Shop", amount=Decimal("-9.99"))]
    service = DuplicateDetectionService(session)

    assert service.check_transactions(day_first) == day_first
    assert service.check_transactions(month_first, "MM-DD-YYYY") == month_first
    assert service.check_transactions(month_first) == []


def test_unparseable_candidates_are_never_flagged() -> None:
    index = TransactionIndex(
        [ExistingTransaction(1, date(2024, 2, 1), "Cafe", Decimal("5"))]
    )
    candidates = [DuplicateCandidate(date="not a date", payee="Cafe", amount=Decimal("5"))]

    assert find_duplicate_transactions(candidates, index) == []


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("2024-01-05", date(2024, 1, 5)),
        ("05-01-2024", date(2024, 1, 5)),
        ("05.01.2024", date(2024, 1, 5)),
        ("2024/01/05", date(2024, 1, 5)),
    ],
)
def test_normalize_date_accepts_common_separators(raw, expected) -> None:
    assert normalize_date(raw) == expected


def test_payee_duplicates_are_case_sensitive() -> None:
    session = make_session()
    PayeeService(session).create(PayeeIn(name="Bakery"))

    candidates = [PayeeCandidate(name="Bakery"), PayeeCandidate(name="bakery")]
    duplicates = DuplicateDetectionService(session).check_payees(candidates)

    assert [c.name for c in duplicates] == ["Bakery"]


def test_tolerance_is_evaluated_on_stored_float_values() -> None:
    index = TransactionIndex(
        [ExistingTransaction(1, date(2024, 2, 1), "Cafe", Decimal("50.000"))]
    )

    # 50.001 - 50.000 is just below 0.001 in binary floating point
    assert index.match(date(2024, 2, 1), "Cafe", Decimal("50.001")) is not None
    assert index.match(date(2024, 2, 1), "Cafe", Decimal("50.0011")) is None
