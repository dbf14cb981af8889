import logging
import platform
import tomllib
from datetime import datetime
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, File, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session

from auth import current_user_id
from config import Settings, load_settings
from database import Base, build_engine, build_sessionmaker
from errors import LedgerError, ValidationError
from identifiers import RecordId
from schemas import (
    CategoryIn,
    CategoryOut,
    CategoryUpdate,
    CSVUploadOut,
    ExpenseIn,
    ExpenseOut,
    ExpenseUpdate,
    InfoOut,
    LastExpensesOut,
    MonthlyExpensesOut,
    PaginatedExpensesOut,
    TagIn,
    TagOut,
)
from services import (
    CategoryService,
    CSVService,
    ExpenseService,
    MetricsService,
    TagService,
)

logger = logging.getLogger(__name__)


def _load_app_version() -> str:
    pyproject = Path(__file__).resolve().parent / "pyproject.toml"
    try:
        with open(pyproject, "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError):
        return "unknown"
    return str(data.get("project", {}).get("version", "unknown"))


APP_VERSION = _load_app_version()


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_db(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def int_query(request: Request, name: str, default: Optional[int]) -> Optional[int]:
    raw = request.query_params.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValidationError(f"Invalid {name} parameter", f"invalid_{name}") from exc


def expense_out(expense) -> ExpenseOut:
    return ExpenseOut.model_validate(expense)


public = APIRouter(prefix="/api")
router = APIRouter(prefix="/api")


@public.get("/info", response_model=InfoOut)
def info(settings: Settings = Depends(get_settings)):
    return InfoOut(
        version=APP_VERSION,
        python_version=platform.python_version(),
        server_env=settings.app_env,
    )


@router.post(
    "/expenses",
    response_model=ExpenseOut,
    response_model_exclude_none=True,
    status_code=201,
)
def create_expense(
    data: ExpenseIn,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return expense_out(ExpenseService(db, user_id, settings).create(data))


@router.get(
    "/expenses",
    response_model=PaginatedExpensesOut,
    response_model_exclude_none=True,
)
def list_expenses(
    request: Request,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    offset = int_query(request, "offset", 0)
    limit = int_query(request, "limit", 10)
    category_id = request.query_params.get("category_id") or None
    page = ExpenseService(db, user_id, settings).list(offset, limit, category_id)
    return PaginatedExpensesOut(
        expenses=[expense_out(e) for e in page.expenses],
        total_count=page.total_count,
        current_page=page.current_page,
        total_pages=page.total_pages,
        limit=page.limit,
    )


@router.get("/expenses_last", response_model=LastExpensesOut)
def last_expenses(
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    sums = MetricsService(db, user_id, settings).rolling_sums()
    return LastExpensesOut(
        total_expenses_last_7_days=float(sums.last_7_days),
        total_expenses_last_30_days=float(sums.last_30_days),
    )


@router.get(
    "/expenses_monthly",
    response_model=MonthlyExpensesOut,
    response_model_exclude_none=True,
)
@router.get(
    "/expenses_montly",
    response_model=MonthlyExpensesOut,
    response_model_exclude_none=True,
    include_in_schema=False,
)
def monthly_expenses(
    request: Request,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    month = int_query(request, "month", None)
    if month is None:
        raise ValidationError("Month is required", "invalid_month")
    year = int_query(request, "year", None)
    monthly = MetricsService(db, user_id, settings).monthly(month, year)
    return MonthlyExpensesOut(
        expenses=[expense_out(e) for e in monthly.expenses],
        total_amount=monthly.total_amount,
    )


@router.post("/expenses/upload", response_model=CSVUploadOut)
def upload_csv(
    file: UploadFile = File(...),
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    content = file.file.read()
    result = CSVService(db, user_id, settings).import_csv(file.filename, content)
    return CSVUploadOut(
        success_count=result.success_count,
        error_count=result.error_count,
        errors=result.errors,
    )


@router.get("/expenses/download")
def download_csv(
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    payload = CSVService(db, user_id, settings).export_csv()
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    filename = f"expenses_{timestamp}.csv"
    return StreamingResponse(
        iter([payload]),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get(
    "/expenses/{expense_id}",
    response_model=ExpenseOut,
    response_model_exclude_none=True,
)
def get_expense(
    expense_id: str,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    record_id = RecordId.parse(expense_id, "expense")
    return expense_out(ExpenseService(db, user_id, settings).get(record_id))


@router.put(
    "/expenses/{expense_id}",
    response_model=ExpenseOut,
    response_model_exclude_none=True,
)
def update_expense(
    expense_id: str,
    data: ExpenseUpdate,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    record_id = RecordId.parse(expense_id, "expense")
    return expense_out(ExpenseService(db, user_id, settings).update(record_id, data))


@router.delete("/expenses/{expense_id}")
def delete_expense(
    expense_id: str,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    record_id = RecordId.parse(expense_id, "expense")
    ExpenseService(db, user_id, settings).delete(record_id)
    return {"message": "Expense deleted successfully"}


@router.post("/categories", response_model=CategoryOut, status_code=201)
def create_category(
    data: CategoryIn,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return CategoryService(db, user_id, settings).create(data)


@router.get("/categories", response_model=list[CategoryOut])
def list_categories(
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return CategoryService(db, user_id, settings).list_all()


@router.get("/categories/{category_id}", response_model=CategoryOut)
def get_category(
    category_id: str,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    record_id = RecordId.parse(category_id, "category")
    return CategoryService(db, user_id, settings).get(record_id)


@router.put("/categories/{category_id}", response_model=CategoryOut)
def update_category(
    category_id: str,
    data: CategoryUpdate,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    record_id = RecordId.parse(category_id, "category")
    return CategoryService(db, user_id, settings).update(record_id, data)


@router.delete("/categories/{category_id}")
def delete_category(
    category_id: str,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    record_id = RecordId.parse(category_id, "category")
    CategoryService(db, user_id, settings).delete(record_id)
    return {"message": "Category deleted successfully"}


@router.post("/tags", response_model=TagOut, status_code=201)
def create_tag(
    data: TagIn,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return TagService(db, user_id, settings).create(data.name)


@router.get("/tags", response_model=list[TagOut])
def list_tags(
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return TagService(db, user_id, settings).list_all()


@router.get("/tags/{tag_id}", response_model=TagOut)
def get_tag(
    tag_id: str,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    record_id = RecordId.parse(tag_id, "tag")
    return TagService(db, user_id, settings).get(record_id)


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"request_failed: path={request.url.path} reason={exc.reason}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "reason": exc.reason},
    )


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request body", "reason": "invalid_request"},
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or load_settings()
    logging.basicConfig(level=settings.log_level)

    engine = build_engine(settings)
    if settings.create_schema:
        Base.metadata.create_all(engine)

    app = FastAPI(
        title="My Finance Ledger",
        version=APP_VERSION,
        docs_url=None if settings.is_production else "/docs",
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = build_sessionmaker(engine)

    app.add_exception_handler(LedgerError, ledger_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(public)
    app.include_router(router)

    logger.info(
        f"app_started: env={settings.app_env} version={APP_VERSION} "
        f"database={engine.url.render_as_string(hide_password=True)}"
    )
    return app


def main():
    import uvicorn

    uvicorn.run("main:create_app", factory=True, host="0.0.0.0", port=8080, reload=False)


if __name__ == "__main__":
    main()
