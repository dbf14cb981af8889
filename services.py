from __future__ import annotations

import logging
import math
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Iterator, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Settings
from csv_utils import (
    IMPORT_FIELDS,
    PLACEHOLDER_NAME,
    decode_upload,
    export_expenses,
    is_csv_filename,
    parse_price,
    parse_us_date,
    read_records,
    scale_amount,
)
from database import store_call
from errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from identifiers import RecordId
from models import (
    DEFAULT_CATEGORY_COLOR,
    DEFAULT_CATEGORY_ICON,
    DEFAULT_CATEGORY_NAME,
    Category,
    Expense,
    Tag,
)
from periods import resolve_month
from schemas import CategoryIn, CategoryUpdate, ExpenseIn, ExpenseUpdate

logger = logging.getLogger(__name__)

ROLLING_WINDOWS = (7, 30)


@dataclass
class _OwnerLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


_import_locks: dict[str, _OwnerLock] = {}
_import_locks_guard = threading.Lock()


@contextmanager
def _import_lock(user_id: str) -> Iterator[None]:
    """Serialize imports per owner; idle entries are dropped."""
    with _import_locks_guard:
        entry = _import_locks.setdefault(user_id, _OwnerLock())
        entry.holders += 1
    try:
        with entry.lock:
            yield
    finally:
        with _import_locks_guard:
            entry.holders -= 1
            if entry.holders == 0:
                del _import_locks[user_id]


def _as_decimal(value: object) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass
class ExpensePage:
    expenses: list[Expense]
    total_count: int
    current_page: int
    total_pages: int
    limit: int


@dataclass
class MonthlyExpenses:
    expenses: list[Expense]
    total_amount: int


@dataclass
class RollingSums:
    last_7_days: Decimal
    last_30_days: Decimal


@dataclass
class CSVImportResult:
    success_count: int = 0
    error_count: int = 0
    errors: list[str] = field(default_factory=list)

    def fail(self, line: int, message: str) -> None:
        self.errors.append(f"Line {line}: {message}")
        self.error_count += 1


class CategoryService:
    def __init__(
        self, session: Session, user_id: str, settings: Optional[Settings] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.settings = settings or Settings()

    def _name_taken(self, name: str, exclude_id: Optional[str] = None) -> bool:
        stmt = select(Category.id).where(
            Category.user_id == self.user_id, Category.name == name
        )
        if exclude_id:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt.limit(1)) is not None

    def ensure_default(self) -> Category:
        stmt = select(Category).where(
            Category.user_id == self.user_id, Category.name == DEFAULT_CATEGORY_NAME
        )
        with store_call(self.session, "initialize default category"):
            existing = self.session.scalar(stmt)
            if existing:
                return existing
            category = Category(
                id=str(RecordId.new()),
                user_id=self.user_id,
                name=DEFAULT_CATEGORY_NAME,
                color=DEFAULT_CATEGORY_COLOR,
                icon_name=DEFAULT_CATEGORY_ICON,
            )
            self.session.add(category)
            try:
                self.session.commit()
            except IntegrityError:
                # a concurrent request created it first
                self.session.rollback()
                return self.session.scalars(stmt).one()
        logger.info(f"category_default_created: user={self.user_id}")
        return category

    def list_all(self) -> list[Category]:
        self.ensure_default()
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.name)
        )
        with store_call(self.session, "fetch categories"):
            return list(self.session.scalars(stmt).all())

    def get(self, category_id: RecordId) -> Category:
        stmt = (
            select(Category)
            .where(Category.id == str(category_id), Category.user_id == self.user_id)
            .execution_options(populate_existing=True)
        )
        with store_call(
            self.session, "fetch category", self.settings.store_timeout_secs
        ):
            category = self.session.scalar(stmt)
        if category is None:
            raise NotFoundError("category")
        return category

    def resolve(self, raw_id: str) -> Category:
        return self.get(RecordId.parse(raw_id, "category"))

    def name_of(self, raw_id: str) -> str:
        try:
            return self.resolve(raw_id).name
        except (ValidationError, NotFoundError):
            return ""

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        if not name:
            raise ValidationError("Category name cannot be empty", "name_required")
        if name == DEFAULT_CATEGORY_NAME:
            raise ValidationError(
                "Cannot create category with reserved name 'Default'", "reserved_name"
            )
        self.ensure_default()

        with store_call(
            self.session, "create category", self.settings.store_timeout_secs
        ):
            if self._name_taken(name):
                raise ConflictError(
                    "Category with this name already exists", "category_exists"
                )
            category = Category(
                id=str(RecordId.new()),
                user_id=self.user_id,
                name=name,
                color=data.color,
                icon_name=data.icon_name,
            )
            self.session.add(category)
            try:
                self.session.commit()
            except IntegrityError as exc:
                self.session.rollback()
                raise ConflictError(
                    "Category with this name already exists", "category_exists"
                ) from exc
        logger.info(f"category_created: user={self.user_id} id={category.id}")
        return category

    def update(self, category_id: RecordId, data: CategoryUpdate) -> Category:
        category = self.get(category_id)
        if category.name == DEFAULT_CATEGORY_NAME:
            raise ForbiddenError("Cannot modify default category", "default_category")

        present = data.model_fields_set
        changes: dict[str, object] = {}
        if "name" in present:
            name = (data.name or "").strip()
            if not name:
                raise ValidationError("Category name cannot be empty", "name_required")
            if name != category.name:
                if name == DEFAULT_CATEGORY_NAME:
                    raise ValidationError(
                        "Cannot use reserved name 'Default'", "reserved_name"
                    )
                with store_call(self.session, "check category name"):
                    taken = self._name_taken(name, exclude_id=category.id)
                if taken:
                    raise ConflictError(
                        "Category with this name already exists", "category_exists"
                    )
            changes["name"] = name
        if "color" in present:
            changes["color"] = data.color or ""
        if "icon_name" in present:
            changes["icon_name"] = data.icon_name or ""

        if changes:
            with store_call(
                self.session, "update category", self.settings.store_timeout_secs
            ):
                try:
                    result = self.session.execute(
                        update(Category)
                        .where(
                            Category.id == str(category_id),
                            Category.user_id == self.user_id,
                        )
                        .values(**changes)
                    )
                except IntegrityError as exc:
                    self.session.rollback()
                    raise ConflictError(
                        "Category with this name already exists", "category_exists"
                    ) from exc
                if result.rowcount == 0:
                    self.session.rollback()
                    raise NotFoundError("category")
                self.session.commit()
        return self.get(category_id)

    def delete(self, category_id: RecordId) -> None:
        category = self.get(category_id)
        if category.name == DEFAULT_CATEGORY_NAME:
            raise ForbiddenError("Cannot delete default category", "default_category")
        with store_call(
            self.session, "delete category", self.settings.store_timeout_secs
        ):
            result = self.session.execute(
                delete(Category).where(
                    Category.id == str(category_id), Category.user_id == self.user_id
                )
            )
            if result.rowcount == 0:
                self.session.rollback()
                raise NotFoundError("category")
            self.session.commit()
        logger.info(f"category_deleted: user={self.user_id} id={category_id}")


class TagService:
    def __init__(
        self, session: Session, user_id: str, settings: Optional[Settings] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.settings = settings or Settings()

    def list_all(self) -> list[Tag]:
        stmt = select(Tag).where(Tag.user_id == self.user_id).order_by(Tag.name)
        with store_call(self.session, "fetch tags", self.settings.store_timeout_secs):
            return list(self.session.scalars(stmt).all())

    def get(self, tag_id: RecordId) -> Tag:
        stmt = select(Tag).where(Tag.id == str(tag_id), Tag.user_id == self.user_id)
        with store_call(self.session, "fetch tag", self.settings.store_timeout_secs):
            tag = self.session.scalar(stmt)
        if tag is None:
            raise NotFoundError("tag")
        return tag

    def create(self, name: str) -> Tag:
        clean_name = name.strip()
        if not clean_name:
            raise ValidationError("Tag name cannot be empty", "name_required")

        stmt = select(Tag).where(
            Tag.user_id == self.user_id, func.lower(Tag.name) == clean_name.lower()
        )
        with store_call(self.session, "create tag", self.settings.store_timeout_secs):
            if self.session.scalar(stmt):
                raise ConflictError("Tag with this name already exists", "tag_exists")
            tag = Tag(id=str(RecordId.new()), user_id=self.user_id, name=clean_name)
            self.session.add(tag)
            try:
                self.session.commit()
            except IntegrityError as exc:
                self.session.rollback()
                raise ConflictError(
                    "Tag with this name already exists", "tag_exists"
                ) from exc
        return tag


class ExpenseService:
    def __init__(
        self, session: Session, user_id: str, settings: Optional[Settings] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.settings = settings or Settings()
        self.categories = CategoryService(session, user_id, self.settings)

    def today(self) -> date:
        return datetime.now(ZoneInfo(self.settings.timezone)).date()

    def _category_id(self, raw: Optional[str]) -> Optional[str]:
        raw = (raw or "").strip()
        if not raw:
            return None
        return self.categories.resolve(raw).id

    def create(self, data: ExpenseIn) -> Expense:
        name = data.name.strip()
        currency_code = data.currency_code.strip().upper()
        if not data.amount:
            raise ValidationError("Amount is required", "amount_required")
        if not currency_code:
            raise ValidationError("Currency code is required", "currency_code_required")
        if not name:
            raise ValidationError("Name is required", "name_required")

        expense = Expense(
            id=str(RecordId.new()),
            user_id=self.user_id,
            category_id=self._category_id(data.category_id),
            amount=data.amount,
            currency_code=currency_code,
            name=name,
            description=data.description or "",
            date=data.date or self.today(),
        )
        with store_call(
            self.session, "create expense", self.settings.store_timeout_secs
        ):
            self.session.add(expense)
            self.session.commit()
        logger.info(f"expense_created: user={self.user_id} id={expense.id}")
        return expense

    def get(self, expense_id: RecordId) -> Expense:
        stmt = (
            select(Expense)
            .where(Expense.id == str(expense_id), Expense.user_id == self.user_id)
            .execution_options(populate_existing=True)
        )
        with store_call(self.session, "fetch expense", self.settings.store_timeout_secs):
            expense = self.session.scalar(stmt)
        if expense is None:
            raise NotFoundError("expense")
        return expense

    def list(
        self, offset: int = 0, limit: int = 10, category_id: Optional[str] = None
    ) -> ExpensePage:
        if offset < 0:
            raise ValidationError("Invalid offset parameter", "invalid_offset")
        if limit <= 0:
            raise ValidationError("Invalid limit parameter", "invalid_limit")

        conditions = [Expense.user_id == self.user_id]
        if category_id:
            conditions.append(Expense.category_id == category_id)
        page_stmt = (
            select(Expense)
            .where(*conditions)
            .order_by(Expense.date.desc(), Expense.id.desc())
            .offset(offset)
            .limit(limit)
        )
        with store_call(self.session, "fetch expenses", self.settings.store_timeout_secs):
            total = self.session.execute(
                select(func.count(Expense.id)).where(*conditions)
            ).scalar_one()
            expenses = list(self.session.scalars(page_stmt).all())

        return ExpensePage(
            expenses=expenses,
            total_count=total,
            current_page=offset // limit + 1,
            total_pages=math.ceil(total / limit),
            limit=limit,
        )

    def _changes(self, data: ExpenseUpdate) -> dict[str, object]:
        present = data.model_fields_set
        changes: dict[str, object] = {}
        if "amount" in present:
            if data.amount is None:
                raise ValidationError("Amount cannot be null", "invalid_amount")
            changes["amount"] = data.amount
        if "currency_code" in present:
            code = (data.currency_code or "").strip().upper()
            if not code:
                raise ValidationError(
                    "Currency code cannot be empty", "currency_code_required"
                )
            changes["currency_code"] = code
        if "name" in present:
            name = (data.name or "").strip()
            if not name:
                raise ValidationError("Name cannot be empty", "name_required")
            changes["name"] = name
        if "description" in present:
            changes["description"] = data.description or ""
        if "date" in present:
            if data.date is None:
                raise ValidationError("Date cannot be null", "invalid_date")
            changes["date"] = data.date
        if "category_id" in present:
            changes["category_id"] = self._category_id(data.category_id)
        return changes

    def update(self, expense_id: RecordId, data: ExpenseUpdate) -> Expense:
        changes = self._changes(data)
        if changes:
            with store_call(
                self.session, "update expense", self.settings.store_timeout_secs
            ):
                result = self.session.execute(
                    update(Expense)
                    .where(
                        Expense.id == str(expense_id),
                        Expense.user_id == self.user_id,
                    )
                    .values(**changes)
                )
                if result.rowcount == 0:
                    self.session.rollback()
                    raise NotFoundError("expense")
                self.session.commit()
            logger.info(
                f"expense_updated: user={self.user_id} id={expense_id} "
                f"fields={','.join(sorted(changes))}"
            )
        return self.get(expense_id)

    def delete(self, expense_id: RecordId) -> None:
        with store_call(
            self.session, "delete expense", self.settings.store_timeout_secs
        ):
            result = self.session.execute(
                delete(Expense).where(
                    Expense.id == str(expense_id), Expense.user_id == self.user_id
                )
            )
            if result.rowcount == 0:
                self.session.rollback()
                raise NotFoundError("expense")
            self.session.commit()
        logger.info(f"expense_deleted: user={self.user_id} id={expense_id}")


class MetricsService:
    def __init__(
        self, session: Session, user_id: str, settings: Optional[Settings] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.settings = settings or Settings()

    def monthly(self, month: int, year: Optional[int] = None) -> MonthlyExpenses:
        today = datetime.now(ZoneInfo(self.settings.timezone)).date()
        period = resolve_month(month, year, today=today)
        stmt = (
            select(Expense)
            .where(
                Expense.user_id == self.user_id,
                Expense.date >= period.start,
                Expense.date < period.end,
            )
            .order_by(Expense.date.asc(), Expense.id.asc())
        )
        with store_call(self.session, "fetch expenses", self.settings.store_timeout_secs):
            expenses = list(self.session.scalars(stmt).all())
        total = sum((_as_decimal(e.amount) for e in expenses), Decimal("0"))
        return MonthlyExpenses(expenses=expenses, total_amount=int(total))

    def distinct_days_sum(self, days: int) -> Decimal:
        """Sum of the per-date totals of the ``days`` most recent active dates.

        Dates without any expense do not count towards the window, so sparse
        activity stretches the window further back in time.
        """
        if days <= 0:
            raise ValidationError("Window must be positive", "invalid_window")
        daily = (
            select(
                Expense.date.label("day"),
                func.sum(Expense.amount).label("daily_total"),
            )
            .where(Expense.user_id == self.user_id)
            .group_by(Expense.date)
            .order_by(Expense.date.desc())
            .limit(days)
            .subquery()
        )
        stmt = select(func.coalesce(func.sum(daily.c.daily_total), 0))
        with store_call(
            self.session, "aggregate expenses", self.settings.store_timeout_secs * 2
        ):
            total = self.session.execute(stmt).scalar_one()
        return _as_decimal(total)

    def rolling_sums(self) -> RollingSums:
        short, long = ROLLING_WINDOWS
        return RollingSums(
            last_7_days=self.distinct_days_sum(short),
            last_30_days=self.distinct_days_sum(long),
        )


class CSVService:
    def __init__(
        self, session: Session, user_id: str, settings: Optional[Settings] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.settings = settings or Settings()
        self.categories = CategoryService(session, user_id, self.settings)

    def import_csv(self, filename: Optional[str], content: bytes) -> CSVImportResult:
        if not is_csv_filename(filename):
            raise ValidationError("File must be a CSV", "invalid_file_type")
        text = decode_upload(content)
        # imports of one owner run one at a time so the duplicate check
        # always sees rows inserted by an earlier import
        with _import_lock(self.user_id):
            result = self._import_rows(text)
        logger.info(
            f"csv_import: user={self.user_id} file={filename} "
            f"success={result.success_count} errors={result.error_count}"
        )
        return result

    def _import_rows(self, text: str) -> CSVImportResult:
        result = CSVImportResult()
        carried_date: Optional[date] = None
        scaled_currency = self.settings.import_currency_code

        for line, fields in read_records(text):
            if fields is None or len(fields) != len(IMPORT_FIELDS):
                result.fail(line, "Could not read row")
                continue
            raw_date, raw_name, raw_price, raw_note, raw_currency = (
                value.strip() for value in fields
            )

            if not raw_date:
                if carried_date is None:
                    result.fail(line, "Empty date field with no previous valid date")
                    continue
                expense_date = carried_date
            else:
                try:
                    expense_date = parse_us_date(raw_date)
                except ValueError:
                    result.fail(line, "Invalid date format")
                    continue
                carried_date = expense_date

            if not raw_name and not raw_price:
                continue
            name = raw_name or PLACEHOLDER_NAME
            try:
                price = parse_price(raw_price)
            except ValueError:
                result.fail(line, "Invalid price")
                continue

            currency_code = (raw_currency or scaled_currency).upper()
            amount = scale_amount(
                price, currency_code, scaled_currency, self.settings.import_scale_factor
            )

            try:
                if self._exists(name, expense_date):
                    result.fail(line, "Expense with same name and date existed")
                    continue
                self._insert(name, expense_date, amount, currency_code, raw_note)
            except StoreError:
                result.fail(line, "Could not save expense")
                continue
            result.success_count += 1
        return result

    def _exists(self, name: str, expense_date: date) -> bool:
        stmt = (
            select(Expense.id)
            .where(
                Expense.user_id == self.user_id,
                Expense.name == name,
                Expense.date == expense_date,
            )
            .limit(1)
        )
        with store_call(self.session, "check duplicates", self.settings.bulk_timeout_secs):
            return self.session.scalar(stmt) is not None

    def _insert(
        self,
        name: str,
        expense_date: date,
        amount: Decimal,
        currency_code: str,
        description: str,
    ) -> None:
        with store_call(self.session, "save expense", self.settings.bulk_timeout_secs):
            self.session.add(
                Expense(
                    id=str(RecordId.new()),
                    user_id=self.user_id,
                    amount=amount,
                    currency_code=currency_code,
                    name=name,
                    description=description,
                    date=expense_date,
                )
            )
            self.session.commit()

    def export_csv(self) -> bytes:
        stmt = (
            select(Expense)
            .where(Expense.user_id == self.user_id)
            .order_by(Expense.date.asc(), Expense.id.asc())
        )
        with store_call(self.session, "fetch expenses", self.settings.bulk_timeout_secs):
            expenses = list(self.session.scalars(stmt).all())

        category_names: dict[str, str] = {}
        for expense in expenses:
            category_id = expense.category_id
            if category_id and category_id not in category_names:
                category_names[category_id] = self.categories.name_of(category_id)

        logger.info(f"csv_export: user={self.user_id} rows={len(expenses)}")
        return export_expenses(expenses, category_names)
