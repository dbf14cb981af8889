from datetime import date, datetime
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from config import Settings
from database import Base
from errors import NotFoundError, ValidationError
from identifiers import RecordId
from schemas import CategoryIn, ExpenseIn, ExpenseUpdate
from services import CategoryService, ExpenseService


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def test_create_without_date_uses_today_and_no_category() -> None:
    session = make_session()
    settings = Settings()
    expense = ExpenseService(session, "u1", settings).create(
        ExpenseIn(amount=Decimal("42.5"), currency_code="USD", name="Coffee")
    )

    assert expense.id
    assert expense.date == datetime.now(ZoneInfo(settings.timezone)).date()
    assert expense.category_id is None
    assert expense.amount == Decimal("42.5")
    assert expense.user_id == "u1"


def test_create_stores_amount_without_scaling() -> None:
    session = make_session()
    expense = ExpenseService(session, "u1").create(
        ExpenseIn(amount=Decimal("25"), currency_code="vnd", name="Pho")
    )
    assert expense.amount == Decimal("25")
    assert expense.currency_code == "VND"


@pytest.mark.parametrize(
    "payload, reason",
    [
        ({"amount": "0", "currency_code": "USD", "name": "Tea"}, "amount_required"),
        ({"amount": "3", "currency_code": "  ", "name": "Tea"}, "currency_code_required"),
        ({"amount": "3", "currency_code": "USD", "name": " "}, "name_required"),
    ],
)
def test_create_rejects_missing_required_fields(payload, reason) -> None:
    session = make_session()
    with pytest.raises(ValidationError) as excinfo:
        ExpenseService(session, "u1").create(ExpenseIn(**payload))
    assert excinfo.value.reason == reason


def test_create_with_unknown_category_inserts_nothing() -> None:
    session = make_session()
    service = ExpenseService(session, "u1")
    with pytest.raises(NotFoundError) as excinfo:
        service.create(
            ExpenseIn(
                amount=Decimal("10"),
                currency_code="USD",
                name="Lunch",
                category_id=RecordId.new().value,
            )
        )
    assert excinfo.value.entity == "category"
    assert service.list().total_count == 0


def test_create_rejects_category_of_another_owner() -> None:
    session = make_session()
    foreign = CategoryService(session, "u2").create(CategoryIn(name="Food"))
    with pytest.raises(NotFoundError):
        ExpenseService(session, "u1").create(
            ExpenseIn(
                amount=Decimal("10"),
                currency_code="USD",
                name="Lunch",
                category_id=foreign.id,
            )
        )


def test_expense_is_invisible_to_other_owners() -> None:
    session = make_session()
    expense = ExpenseService(session, "alice").create(
        ExpenseIn(amount=Decimal("9"), currency_code="USD", name="Book")
    )
    record_id = RecordId.parse(expense.id)

    other = ExpenseService(session, "bob")
    with pytest.raises(NotFoundError):
        other.get(record_id)
    with pytest.raises(NotFoundError):
        other.update(record_id, ExpenseUpdate(name="Stolen"))
    with pytest.raises(NotFoundError):
        other.delete(record_id)

    assert ExpenseService(session, "alice").get(record_id).name == "Book"


def test_partial_update_leaves_absent_fields_unchanged() -> None:
    session = make_session()
    category = CategoryService(session, "u1").create(CategoryIn(name="Food"))
    service = ExpenseService(session, "u1")
    expense = service.create(
        ExpenseIn(
            amount=Decimal("12.25"),
            currency_code="EUR",
            name="Lunch",
            description="with team",
            date=date(2024, 5, 2),
            category_id=category.id,
        )
    )

    updated = service.update(RecordId(expense.id), ExpenseUpdate(name="X"))

    assert updated.name == "X"
    assert updated.amount == Decimal("12.25")
    assert updated.currency_code == "EUR"
    assert updated.description == "with team"
    assert updated.date == date(2024, 5, 2)
    assert updated.category_id == category.id


def test_update_can_set_zero_amount_and_clear_fields() -> None:
    session = make_session()
    category = CategoryService(session, "u1").create(CategoryIn(name="Food"))
    service = ExpenseService(session, "u1")
    expense = service.create(
        ExpenseIn(
            amount=Decimal("5"),
            currency_code="USD",
            name="Snack",
            description="vending",
            category_id=category.id,
        )
    )

    updated = service.update(
        RecordId(expense.id),
        ExpenseUpdate(amount=Decimal("0"), description="", category_id=None),
    )

    assert updated.amount == Decimal("0")
    assert updated.description == ""
    assert updated.category_id is None


def test_update_accepts_legacy_expense_key_for_amount() -> None:
    session = make_session()
    service = ExpenseService(session, "u1")
    expense = service.create(
        ExpenseIn(amount=Decimal("5"), currency_code="USD", name="Snack")
    )
    update = ExpenseUpdate.model_validate({"expense": "7.5"})

    assert service.update(RecordId(expense.id), update).amount == Decimal("7.5")


def test_update_with_unknown_category_applies_nothing() -> None:
    session = make_session()
    service = ExpenseService(session, "u1")
    expense = service.create(
        ExpenseIn(amount=Decimal("5"), currency_code="USD", name="Snack")
    )

    with pytest.raises(NotFoundError):
        service.update(
            RecordId(expense.id),
            ExpenseUpdate(name="Renamed", category_id=RecordId.new().value),
        )
    assert service.get(RecordId(expense.id)).name == "Snack"


def test_update_rejects_explicit_null_name() -> None:
    session = make_session()
    service = ExpenseService(session, "u1")
    expense = service.create(
        ExpenseIn(amount=Decimal("5"), currency_code="USD", name="Snack")
    )
    with pytest.raises(ValidationError):
        service.update(RecordId(expense.id), ExpenseUpdate(name=None))


def test_update_missing_expense_is_not_found() -> None:
    session = make_session()
    with pytest.raises(NotFoundError):
        ExpenseService(session, "u1").update(
            RecordId.new(), ExpenseUpdate(name="Ghost")
        )


def test_delete_is_physical() -> None:
    session = make_session()
    service = ExpenseService(session, "u1")
    expense = service.create(
        ExpenseIn(amount=Decimal("5"), currency_code="USD", name="Snack")
    )
    service.delete(RecordId(expense.id))

    with pytest.raises(NotFoundError):
        service.get(RecordId(expense.id))
    with pytest.raises(NotFoundError):
        service.delete(RecordId(expense.id))


def test_deleting_category_keeps_its_expenses() -> None:
    session = make_session()
    categories = CategoryService(session, "u1")
    category = categories.create(CategoryIn(name="Travel"))
    service = ExpenseService(session, "u1")
    expense = service.create(
        ExpenseIn(
            amount=Decimal("80"),
            currency_code="USD",
            name="Train",
            category_id=category.id,
        )
    )

    categories.delete(RecordId(category.id))

    assert service.get(RecordId(expense.id)).category_id == category.id


def test_record_id_parse_rejects_garbage() -> None:
    with pytest.raises(ValidationError) as excinfo:
        RecordId.parse("not-an-id", "expense")
    assert excinfo.value.reason == "invalid_id"
    assert RecordId.parse(RecordId.new().value.upper()).value.islower()
