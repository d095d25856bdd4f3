from sqlmodel import Session, SQLModel, create_engine

from listing_ops.core.config import settings
import listing_ops.models  # noqa: F401  # ensure model metadata is registered


engine = create_engine(settings.database_url, echo=False, pool_pre_ping=True)


def init_db() -> None:
    SQLModel.metadata.create_all(engine)


def get_session():
    with Session(engine) as session:
        yield session


def is_postgres(db: Session) -> bool:
    bind = db.get_bind()
    if bind is None:
        return False
    return str(getattr(bind.dialect, "name", "")).lower().startswith("postgres")
