import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from identifiers import RecordId
from models import DEFAULT_CATEGORY_COLOR, DEFAULT_CATEGORY_ICON, DEFAULT_CATEGORY_NAME
from schemas import CategoryIn, CategoryUpdate
from services import CategoryService, TagService


def test_listing_creates_default_category_once() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = CategoryService(session, "u1")
        first = service.list_all()
        second = service.list_all()

        assert [c.name for c in first] == [DEFAULT_CATEGORY_NAME]
        assert [c.id for c in second] == [first[0].id]
        assert first[0].color == DEFAULT_CATEGORY_COLOR
        assert first[0].icon_name == DEFAULT_CATEGORY_ICON
        assert CategoryService(session, "u2").list_all()[0].id != first[0].id


def test_create_rejects_reserved_and_duplicate_names() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = CategoryService(session, "u1")
        service.create(CategoryIn(name="Food", color="#ff0000", icon_name="fa-bowl"))

        with pytest.raises(ValidationError) as excinfo:
            service.create(CategoryIn(name="Default"))
        assert excinfo.value.reason == "reserved_name"

        with pytest.raises(ConflictError):
            service.create(CategoryIn(name=" Food "))

        # names are scoped per owner
        assert CategoryService(session, "u2").create(CategoryIn(name="Food")).name == "Food"


def test_default_category_cannot_be_modified_or_deleted() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = CategoryService(session, "u1")
        default = service.ensure_default()

        with pytest.raises(ForbiddenError):
            service.update(RecordId(default.id), CategoryUpdate(color="#ffffff"))
        with pytest.raises(ForbiddenError):
            service.delete(RecordId(default.id))


def test_update_applies_only_present_fields() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = CategoryService(session, "u1")
        category = service.create(
            CategoryIn(name="Food", color="#ff0000", icon_name="fa-bowl")
        )
        service.create(CategoryIn(name="Travel"))

        updated = service.update(RecordId(category.id), CategoryUpdate(color="#00ff00"))
        assert updated.name == "Food"
        assert updated.color == "#00ff00"
        assert updated.icon_name == "fa-bowl"

        with pytest.raises(ConflictError):
            service.update(RecordId(category.id), CategoryUpdate(name="Travel"))
        with pytest.raises(ValidationError):
            service.update(RecordId(category.id), CategoryUpdate(name="Default"))

        renamed = service.update(RecordId(category.id), CategoryUpdate(name="Groceries"))
        assert renamed.name == "Groceries"


def test_categories_of_other_owners_are_not_found() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        category = CategoryService(session, "u1").create(CategoryIn(name="Food"))
        other = CategoryService(session, "u2")

        with pytest.raises(NotFoundError):
            other.get(RecordId(category.id))
        with pytest.raises(NotFoundError):
            other.delete(RecordId(category.id))
        assert other.name_of(category.id) == ""
        assert other.name_of("garbage") == ""


def test_tag_names_conflict_case_insensitively() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        tags = TagService(session, "u1")
        tag = tags.create(" Travel ")

        assert tag.name == "Travel"
        with pytest.raises(ConflictError):
            tags.create("travel")
        assert TagService(session, "u2").create("travel").name == "travel"
        assert [t.id for t in tags.list_all()] == [tag.id]
        assert tags.get(RecordId(tag.id)).name == "Travel"
        with pytest.raises(NotFoundError):
            TagService(session, "u2").get(RecordId(tag.id))


def test_racing_category_names_surface_as_conflicts(monkeypatch) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        service = CategoryService(session, "u1")
        service.create(CategoryIn(name="Food"))
        travel = service.create(CategoryIn(name="Travel"))
        # another request committed the same name after the pre-check ran
        monkeypatch.setattr(service, "_name_taken", lambda name, exclude_id=None: False)

        with pytest.raises(ConflictError) as excinfo:
            service.create(CategoryIn(name="Food"))
        assert excinfo.value.reason == "category_exists"

        with pytest.raises(ConflictError):
            service.update(RecordId(travel.id), CategoryUpdate(name="Food"))
        assert service.get(RecordId(travel.id)).name == "Travel"
        assert sorted(c.name for c in service.list_all()) == ["Default", "Food", "Travel"]
