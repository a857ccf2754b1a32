from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy import create_engine
from .config import settings


_engine_kwargs = {"future": True, "pool_pre_ping": True}
if settings.database_url.startswith("sqlite"):
    _engine_kwargs["connect_args"] = {"check_same_thread": False}
else:
    # Scheduler workers each hold their own connection during a run
    _engine_kwargs.update(pool_size=5, max_overflow=10, pool_recycle=3600)

engine = create_engine(settings.database_url, **_engine_kwargs)

# IMPORTANT: do not share a Session across scheduler worker threads; create a fresh Session per unit of work
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
