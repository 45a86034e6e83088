from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool
from examprep.core.config import settings


class Base(DeclarativeBase):
    pass


def make_engine(url: str, echo: bool = False):
    if url.startswith("sqlite"):
        # single shared connection so in-memory databases survive across sessions
        return create_engine(url, echo=echo, future=True,
                             connect_args={"check_same_thread": False}, poolclass=StaticPool)
    return create_engine(url, echo=echo, future=True, pool_pre_ping=True)


engine = make_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False, future=True)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None) -> None:
    """Create tables if they don't exist. Production schemas are managed outside the app."""
    from examprep.models import orm  # noqa: F401  registers mappers on Base.metadata
    Base.metadata.create_all(bind=bind or engine)
