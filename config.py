import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from sqlalchemy.engine import URL


class Settings:
    def __init__(
        self,
        database_url: str,
        db_timeout_secs: float,
        db_ssl: bool,
        db_ssl_ca: Optional[str],
        session_secret: str,
        session_cookie: str,
        session_ttl_secs: int,
        frontend_origins: list[str],
        production: bool,
        static_dir: Path,
        password_hash_rounds: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.db_timeout_secs = db_timeout_secs
        self.db_ssl = db_ssl
        self.db_ssl_ca = db_ssl_ca
        self.session_secret = session_secret
        self.session_cookie = session_cookie
        self.session_ttl_secs = session_ttl_secs
        self.frontend_origins = frontend_origins
        self.production = production
        self.static_dir = static_dir
        self.password_hash_rounds = password_hash_rounds
        self.log_level = log_level

    @property
    def same_site(self) -> str:
        return "none" if self.production else "lax"


def _database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if url:
        return url
    host = os.getenv("DB_HOST")
    if host:
        port = os.getenv("DB_PORT")
        return URL.create(
            "mysql+pymysql",
            username=os.getenv("DB_USER"),
            password=os.getenv("DB_PASSWORD"),
            host=host,
            port=int(port) if port else None,
            database=os.getenv("DB_DATABASE"),
        ).render_as_string(hide_password=False)
    data_dir = Path(os.getenv("BUDGET_DATA_DIR", "./data")).resolve()
    data_dir.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{data_dir / 'budget.db'}"


def _origins(raw: str) -> list[str]:
    return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    env = os.getenv("APP_ENV") or os.getenv("NODE_ENV", "development")
    return Settings(
        database_url=_database_url(),
        db_timeout_secs=float(os.getenv("DB_TIMEOUT_SECS", "5")),
        db_ssl=os.getenv("DB_SSL", "").strip().lower() == "true",
        db_ssl_ca=os.getenv("DB_SSL_CA") or None,
        session_secret=os.getenv("SESSION_SECRET", "change_me"),
        session_cookie=os.getenv("SESSION_COOKIE", "budget_session"),
        session_ttl_secs=int(os.getenv("SESSION_TTL_SECS", str(24 * 3600))),
        frontend_origins=_origins(os.getenv("FRONTEND_ORIGINS", "")),
        production=env.lower() == "production",
        static_dir=Path(os.getenv("STATIC_DIR", "docs")),
        password_hash_rounds=int(os.getenv("PASSWORD_HASH_ROUNDS", "12")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
