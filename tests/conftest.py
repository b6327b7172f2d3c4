import os
import sys
import tempfile
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Keep the runtime data directory away from the real user profile.
os.environ.setdefault("VELOCE_DATA_DIR", tempfile.mkdtemp(prefix="veloce-tests-"))

import pytest
from sqlmodel import Session, SQLModel, create_engine

import models.pending_op  # noqa: F401
from services.pending_ops_queue import PendingOpsQueue
from services.retry_policy import RetryPolicy
from services.sync_meta_storage import SyncMetaStorage
from storage import migrations


@pytest.fixture()
def db_engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{(tmp_path / 'queue.db').as_posix()}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(engine)
    migrations.run_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(db_engine):
    def factory():
        return Session(db_engine)

    return factory


@pytest.fixture()
def policy():
    return RetryPolicy(base_delay=1.0, factor=2.0, max_delay=30.0, max_attempts=5)


@pytest.fixture()
def queue(session_factory, policy):
    return PendingOpsQueue(session_factory=session_factory, policy=policy)


@pytest.fixture()
def meta(tmp_path):
    return SyncMetaStorage(tmp_path / "sync_meta.json")
