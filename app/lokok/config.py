import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    supplier_backend: str
    user_backend: str
    data_dir: str
    excel_path: str
    google_drive_file_id: str
    spreadsheet_cache_path: str
    spreadsheet_cache_max_age: int
    users_json_path: str
    approvals_json_path: str

    storage_backend: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def load_settings() -> Settings:
    data_dir = _getenv("DATA_DIR", "data")
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///lokok.db"),
        supplier_backend=_getenv("SUPPLIER_BACKEND", "excel").lower(),
        user_backend=_getenv("USER_BACKEND", "db").lower(),
        data_dir=data_dir,
        excel_path=_getenv("EXCEL_PATH", os.path.join(data_dir, "Lokok2 Wholesale Dashboard.xlsx")),
        google_drive_file_id=_getenv("GOOGLE_DRIVE_FILE_ID", ""),
        spreadsheet_cache_path=_getenv("SPREADSHEET_CACHE_PATH", os.path.join(data_dir, "cached_spreadsheet.xlsx")),
        spreadsheet_cache_max_age=_getenv_int("SPREADSHEET_CACHE_MAX_AGE", 300),
        users_json_path=_getenv("USERS_JSON_PATH", os.path.join(data_dir, "users.json")),
        approvals_json_path=_getenv("APPROVALS_JSON_PATH", os.path.join(data_dir, "approvals.json")),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "SUPPLIER_BACKEND": s.supplier_backend,
        "USER_BACKEND": s.user_backend,
        "DATA_DIR": s.data_dir,
        "EXCEL_PATH": s.excel_path,
        "GOOGLE_DRIVE_FILE_ID": s.google_drive_file_id,
        "SPREADSHEET_CACHE_PATH": s.spreadsheet_cache_path,
        "SPREADSHEET_CACHE_MAX_AGE": s.spreadsheet_cache_max_age,
        "USERS_JSON_PATH": s.users_json_path,
        "APPROVALS_JSON_PATH": s.approvals_json_path,
        "STORAGE_BACKEND": s.storage_backend,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # whole-request ceiling; xlsx uploads are capped at 10MB in the route
        "MAX_CONTENT_LENGTH": 25 * 1024 * 1024,
    }
