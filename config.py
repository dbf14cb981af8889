import os
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str = "sqlite://",
        app_env: str = "development",
        timezone: str = "Asia/Ho_Chi_Minh",
        auth_secret: str = "dev-secret-change-me",
        token_max_age_secs: int = 7 * 24 * 3600,
        import_currency_code: str = "VND",
        import_scale_factor: int = 1000,
        store_timeout_secs: float = 5,
        bulk_timeout_secs: float = 30,
        log_level: str = "INFO",
        create_schema: bool = True,
    ) -> None:
        self.database_url = database_url
        self.app_env = app_env
        self.timezone = timezone
        self.auth_secret = auth_secret
        self.token_max_age_secs = token_max_age_secs
        self.import_currency_code = import_currency_code
        self.import_scale_factor = import_scale_factor
        self.store_timeout_secs = store_timeout_secs
        self.bulk_timeout_secs = bulk_timeout_secs
        self.log_level = log_level
        self.create_schema = create_schema

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("MYFINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def load_settings() -> Settings:
    database_url = os.getenv("MYFINANCE_DATABASE_URL")
    if not database_url:
        database_url = f"sqlite:///{_ensure_data_dir() / 'myfinance.db'}"
    app_env = os.getenv("MYFINANCE_APP_ENV", "development")
    auth_secret = os.getenv("MYFINANCE_AUTH_SECRET", "dev-secret-change-me")
    if app_env == "production" and auth_secret == "dev-secret-change-me":
        raise RuntimeError("MYFINANCE_AUTH_SECRET must be set in production")
    return Settings(
        database_url=database_url,
        app_env=app_env,
        timezone=os.getenv("MYFINANCE_TIMEZONE", "Asia/Ho_Chi_Minh"),
        auth_secret=auth_secret,
        token_max_age_secs=int(os.getenv("MYFINANCE_TOKEN_MAX_AGE_SECS", "604800")),
        import_currency_code=os.getenv("MYFINANCE_IMPORT_CURRENCY", "VND").upper(),
        import_scale_factor=int(os.getenv("MYFINANCE_IMPORT_SCALE_FACTOR", "1000")),
        store_timeout_secs=float(os.getenv("MYFINANCE_STORE_TIMEOUT_SECS", "5")),
        bulk_timeout_secs=float(os.getenv("MYFINANCE_BULK_TIMEOUT_SECS", "30")),
        log_level=os.getenv("MYFINANCE_LOG_LEVEL", "INFO").upper(),
        create_schema=os.getenv("MYFINANCE_CREATE_SCHEMA", "1") not in {"0", "false"},
    )
