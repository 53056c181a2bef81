from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, String, Text, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from curriculum_studio import config
from curriculum_studio.models import ProgramState, default_state


logger = logging.getLogger(__name__)

CURRENT_ID = "current"


class Base(DeclarativeBase):
    pass


class ProgramSnapshot(Base):
    __tablename__ = "program_snapshots"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    state_version: Mapped[str] = mapped_column(String)
    state_json: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class AuditLog(Base):
    __tablename__ = "audit_log"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    action: Mapped[str] = mapped_column(String)
    entity_type: Mapped[str] = mapped_column(String)
    entity_id: Mapped[str] = mapped_column(String)
    payload: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


engine = create_engine(config.DATABASE_URL, future=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None) -> None:
    Base.metadata.create_all(bind or engine)


def _dump(state: ProgramState) -> str:
    return json.dumps(state.to_json_dict(), ensure_ascii=False)


def load_state(db: Session) -> ProgramState:
    """The current tree, or the seeded default when nothing was saved yet."""
    row = db.get(ProgramSnapshot, CURRENT_ID)
    if not row:
        return default_state()
    return ProgramState.model_validate_json(row.state_json)


def save_state(db: Session, state: ProgramState) -> None:
    row = db.get(ProgramSnapshot, CURRENT_ID)
    if not row:
        row = ProgramSnapshot(id=CURRENT_ID)
        db.add(row)
    row.state_version = state.version
    row.state_json = _dump(state)
    db.commit()


def write_audit(db: Session, action: str, entity: str, entity_id: str, payload: Optional[str] = None) -> None:
    db.add(AuditLog(action=action, entity_type=entity, entity_id=entity_id or "", payload=payload))
    db.commit()
    logger.info("%s %s %s", action, entity, entity_id)


def list_snapshots(db: Session) -> list[ProgramSnapshot]:
    return db.scalars(
        select(ProgramSnapshot).where(ProgramSnapshot.id != CURRENT_ID).order_by(ProgramSnapshot.created_at.desc())
    ).all()


def save_snapshot(db: Session, state: ProgramState, name: str) -> ProgramSnapshot:
    row = ProgramSnapshot(name=name.strip(), state_version=state.version, state_json=_dump(state))
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def snapshot_state(row: ProgramSnapshot) -> ProgramState:
    """Validated tree of a saved snapshot; raises pydantic's ValidationError when the payload is stale."""
    return ProgramState.model_validate_json(row.state_json)


def audit_rows(db: Session, limit: int = 100) -> list[AuditLog]:
    return db.scalars(select(AuditLog).order_by(AuditLog.created_at.desc()).limit(limit)).all()
