from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from .settings import settings


def _is_postgres(database_url: str) -> bool:
    try:
        return make_url(database_url).get_backend_name() == "postgresql"
    except Exception:
        return database_url.startswith("postgres")


connect_args: dict[str, object] = {}
engine_kwargs: dict[str, object] = {"pool_pre_ping": True}
if _is_postgres(settings.DATABASE_URL):
    engine_kwargs.update(pool_size=10, max_overflow=5, pool_recycle=1800)
    if settings.DB_STATEMENT_TIMEOUT_SECONDS > 0:
        timeout_ms = int(settings.DB_STATEMENT_TIMEOUT_SECONDS * 1000)
        connect_args["options"] = f"-c statement_timeout={timeout_ms}"

engine = create_engine(settings.DATABASE_URL, connect_args=connect_args, **engine_kwargs)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


class Base(DeclarativeBase):
    pass


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
