import pytest
from sqlalchemy import create_engine, update
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import ValidationError
from models import Setting
from services import SettingsService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def test_defaults_apply_when_unset() -> None:
    session = make_session()

    assert SettingsService(session).all() == {
        "allow_registration": "false",
        "privacy_mode": "false",
        "date_format": "DD-MM-YYYY",
    }


def test_set_upserts_and_reads_back() -> None:
    session = make_session()
    service = SettingsService(session)

    service.set("privacy_mode", "true")
    service.set("privacy_mode", "false")
    service.set("date_format", "YYYY-MM-DD")

    assert service.get("privacy_mode") == "false"
    assert service.get("date_format") == "YYYY-MM-DD"
    assert session.query(Setting).count() == 2


def test_reads_are_never_cached() -> None:
    session = make_session()
    service = SettingsService(session)
    service.set("allow_registration", "false")

    session.execute(
        update(Setting).where(Setting.key == "allow_registration").values(value="true")
    )
    session.commit()

    assert service.get("allow_registration") == "true"


@pytest.mark.parametrize(
    "key, value",
    [("theme", "dark"), ("privacy_mode", "yes"), ("date_format", "YY-MM-DD")],
)
def test_invalid_keys_and_values_are_rejected(key, value) -> None:
    session = make_session()

    with pytest.raises(ValidationError):
        SettingsService(session).set(key, value)

    assert session.query(Setting).count() == 0
