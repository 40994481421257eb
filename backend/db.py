from contextlib import contextmanager
from typing import Optional

from pydantic_settings import BaseSettings
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase, Session

class Settings(BaseSettings):
    MYSQL_HOST: str = "127.0.0.1"
    MYSQL_PORT: int = 3306
    MYSQL_USER: str = "root"
    MYSQL_PASSWORD: str = ""
    MYSQL_DB: str = "library_db"
    # overrides the MySQL DSN when set (sqlite in tests)
    DATABASE_URL: str = ""

    JWT_SECRET: str = "please_change_me"
    JWT_EXPIRE_MINUTES: int = 720

    LOG_LEVEL: str = "INFO"

    # circulation rules
    MAX_ACTIVE_LOANS: int = 3
    MAX_RENEWALS: int = 2
    DEFAULT_LOAN_DAYS: int = 14
    DEFAULT_RENEWAL_DAYS: int = 7

    # fine schedules; the return desk and the standalone damage/loss fine
    # historically disagree, so both are kept
    OVERDUE_DAILY_RATE: float = 100
    RETURN_DAMAGE_PERCENT_OF_PRICE: float = 0.5
    DAMAGE_PERCENT_OF_PRICE: float = 0.3
    LOSS_PERCENT_OF_PRICE: float = 1.0
    FINE_DUE_DAYS: int = 7
    FINE_ESCALATION_RATE: float = 0.10
    BAN_PENDING_FINES: int = 2
    BAN_DAYS: int = 90
    SWEEP_OVERDUE_CAP_PERCENT_OF_PRICE: Optional[float] = None

    class Config:
        env_file = ".env"

settings = Settings()

def database_url(cfg: Settings) -> str:
    if cfg.DATABASE_URL:
        return cfg.DATABASE_URL
    return (
        f"mysql+pymysql://{cfg.MYSQL_USER}:{cfg.MYSQL_PASSWORD}"
        f"@{cfg.MYSQL_HOST}:{cfg.MYSQL_PORT}/{cfg.MYSQL_DB}"
        "?charset=utf8mb4"
    )

def make_engine(cfg: Settings):
    url = database_url(cfg)
    kwargs = {"pool_pre_ping": True, "echo": False}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    return create_engine(url, **kwargs)

def make_session_factory(engine) -> sessionmaker:
    # returned entities are serialized after commit, keep them loaded
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

class Base(DeclarativeBase):
    pass

@contextmanager
def transaction(db: Session):
    """Commit everything done inside the block, or roll all of it back."""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
