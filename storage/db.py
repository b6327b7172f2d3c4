# veloce/storage/db.py
from sqlmodel import SQLModel, create_engine, Session

from core.settings import DB_PATH

# Ensure SQLModel metadata is populated
import models.pending_op  # noqa: F401
from storage import migrations


_engine = create_engine(
    f"sqlite:///{DB_PATH.as_posix()}",
    echo=False,
    connect_args={"check_same_thread": False},
)


def init_db(engine=None):
    target = engine or _engine
    if target is _engine:
        DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    SQLModel.metadata.create_all(target)
    migrations.run_all(target)


def get_session() -> Session:
    return Session(_engine)
