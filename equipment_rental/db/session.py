import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from .base import Base


DEFAULT_RENTAL_DB_URL = "sqlite+pysqlite:///./equipment_rental.db"


def _env_or_default(name: str, default: str) -> str:
    value = (os.environ.get(name) or "").strip()
    return value or default


RENTAL_DB_URL = _env_or_default("RENTAL_DB_URL", DEFAULT_RENTAL_DB_URL)


def build_engine(url: str, **kwargs):
    if url.startswith("sqlite"):
        connect_args = dict(kwargs.pop("connect_args", {}))
        connect_args.setdefault("check_same_thread", False)
        kwargs["connect_args"] = connect_args
    return create_engine(url, pool_pre_ping=True, future=True, **kwargs)


engine_rental = build_engine(RENTAL_DB_URL)

SessionLocalRental = sessionmaker(
    bind=engine_rental,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)


def init_db(engine=None) -> None:
    # Importing the models registers their tables on Base.metadata.
    from equipment_rental.models import rental_models  # noqa: F401

    Base.metadata.create_all(bind=engine or engine_rental)
