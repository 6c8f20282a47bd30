# file: models.py

import logging
import os
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, Boolean, JSON, DateTime, ForeignKey, UniqueConstraint, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

logger = logging.getLogger(__name__)

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_uid() -> str:
    return str(uuid.uuid4())


class Namespace(Base):
    __tablename__ = "namespaces"
    name = Column(String, primary_key=True)
    deletion_timestamp = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class Cluster(Base):
    __tablename__ = "clusters"
    __table_args__ = (UniqueConstraint("namespace", "name"),)
    uid = Column(String, primary_key=True, default=new_uid)
    namespace = Column(String, ForeignKey("namespaces.name"), nullable=False)
    name = Column(String, nullable=False)
    replicas = Column(Integer, default=1)
    image = Column(String, nullable=False)
    postgres_version = Column(Integer, nullable=False)
    finalizers = Column(JSON, default=list)
    deletion_timestamp = Column(DateTime, nullable=True)
    propagation = Column(String, default="Background")
    status = Column(JSON, default=dict)
    # Bumped on every write; a write carrying a stale value is rejected
    resource_version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    __mapper_args__ = {"version_id_col": resource_version}


class Instance(Base):
    """One database pod and its backing workload."""

    __tablename__ = "instances"
    __table_args__ = (UniqueConstraint("namespace", "name"),)
    uid = Column(String, primary_key=True, default=new_uid)
    namespace = Column(String, nullable=False)
    name = Column(String, nullable=False)
    # Owner reference, kept after the owner is gone so the collector can find orphans
    cluster_uid = Column(String, nullable=False)
    labels = Column(JSON, default=dict)
    workload = Column(String, nullable=False)
    ready = Column(Boolean, default=False)
    deletion_timestamp = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class ConsensusRecord(Base):
    """A consensus-store object written by the HA agent."""

    __tablename__ = "consensus_records"
    __table_args__ = (UniqueConstraint("namespace", "name"),)
    uid = Column(String, primary_key=True, default=new_uid)
    namespace = Column(String, nullable=False)
    name = Column(String, nullable=False)
    cluster_uid = Column(String, nullable=False)
    kind = Column(String, nullable=False)
    labels = Column(JSON, default=dict)
    annotations = Column(JSON, default=dict)
    deletion_timestamp = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

# ============================================================================
# Database Configuration (SQLite for Persistence)
# ============================================================================

DB_DIR = os.getenv("DB_DIR", "/tmp")
DB_PATH = os.getenv("DB_PATH", os.path.join(DB_DIR, "control_plane.db"))
DB_TIMEOUT_SECONDS = float(os.getenv("DB_TIMEOUT_SECONDS", "5"))

if not DB_PATH.startswith(":memory:"):
    os.makedirs(os.path.dirname(os.path.abspath(DB_PATH)), exist_ok=True)

SQLALCHEMY_DATABASE_URL = f"sqlite:///{DB_PATH}"

# timeout bounds how long a writer waits on the SQLite lock
engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False, "timeout": DB_TIMEOUT_SECONDS},
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind=None):
    """Create all tables on the given engine (defaults to the module engine)."""
    bind = bind or engine
    Base.metadata.create_all(bind=bind)
    logger.info("Database tables ready at %s", bind.url)
