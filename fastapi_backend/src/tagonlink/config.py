import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, Tuple

DEFAULT_JWT_SECRET = "your-secret-key-change-in-production"

_DEFAULT_CORS_ORIGINS = "http://localhost:3000,http://localhost:5173,http://127.0.0.1:3000,http://127.0.0.1:5173"


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise RuntimeError(f"Environment variable '{name}' must be an integer, got {value!r}.")


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() not in ("", "0", "false", "no")


def _build_dsn() -> Optional[str]:
    """
    Build DSN from the standardized database env vars.

    Uses:
      - DATABASE_URL (full DSN; if provided, it wins)
      - POSTGRES_USER, POSTGRES_PASSWORD, POSTGRES_DB, POSTGRES_PORT, POSTGRES_HOST
    Returns None when neither form is configured.
    """
    url = os.getenv("DATABASE_URL")
    if url:
        return url

    user = os.getenv("POSTGRES_USER")
    password = os.getenv("POSTGRES_PASSWORD")
    db = os.getenv("POSTGRES_DB")
    if not (user and password and db):
        return None
    port = os.getenv("POSTGRES_PORT", "5432")
    host = os.getenv("POSTGRES_HOST", "localhost")
    return f"postgresql://{user}:{password}@{host}:{port}/{db}"


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, read once from the environment."""

    database_url: Optional[str] = None
    db_sslmode: str = "prefer"
    db_pool_min: int = 1
    db_pool_max: int = 10
    jwt_secret: str = DEFAULT_JWT_SECRET
    jwt_algorithm: str = "HS256"
    jwt_expires_minutes: int = 10080  # 7 days
    bcrypt_rounds: int = 10
    port: int = 3000
    vercel: bool = False
    cors_allow_origins: Tuple[str, ...] = ()
    log_level: str = "INFO"
    environment: str = "development"

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("CORS_ALLOW_ORIGINS", _DEFAULT_CORS_ORIGINS)
        settings = cls(
            database_url=_build_dsn(),
            db_sslmode=os.getenv("DB_SSLMODE", "prefer"),
            db_pool_min=_env_int("DB_POOL_MIN", 1),
            db_pool_max=_env_int("DB_POOL_MAX", 10),
            jwt_secret=os.getenv("JWT_SECRET") or DEFAULT_JWT_SECRET,
            jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
            jwt_expires_minutes=_env_int("JWT_EXPIRES_MINUTES", 10080),
            bcrypt_rounds=_env_int("BCRYPT_ROUNDS", 10),
            port=_env_int("PORT", 3000),
            vercel=_env_flag("VERCEL"),
            cors_allow_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            environment=os.getenv("ENVIRONMENT", "development"),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Refuse insecure settings in production."""
        if self.is_production and self.jwt_secret == DEFAULT_JWT_SECRET:
            raise RuntimeError("JWT_SECRET must be changed in production.")
        if self.db_pool_min < 0 or self.db_pool_max < max(self.db_pool_min, 1):
            raise RuntimeError("DB_POOL_MAX must be >= DB_POOL_MIN and >= 1.")

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


# PUBLIC_INTERFACE
@lru_cache
def get_settings() -> Settings:
    """Return the cached process settings."""
    return Settings.from_env()


# PUBLIC_INTERFACE
def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the root logger."""
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
