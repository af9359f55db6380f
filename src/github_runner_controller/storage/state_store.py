"""SQLAlchemy-backed durable store for pools, instances and scaling events.

The store is synchronous; the pool registry calls it from a worker thread.
``commit`` writes everything one registry transaction changed inside a
single database transaction, so a crash never leaves half a scaling action
on disk.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional

import structlog
from sqlalchemy import create_engine, delete, event, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ..models.runner import Credential, RepositoryPool, RunnerInstance, ScalingEvent, utcnow
from ..utils.security import CredentialCipher
from .tables import ControllerBase, RunnerInstanceTable, RunnerPoolTable, ScalingEventTable


def create_controller_engine(url: str = "sqlite:///runner-controller.db", *, echo: bool = False, **kwargs: Any) -> Engine:
    """Create a SQLAlchemy engine with SQLite tweaks (WAL, shared in-memory DB)."""
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs.setdefault("poolclass", StaticPool)

        engine = create_engine(url, echo=echo, **kwargs)

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection: Any, _rec: Any) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_engine(url, echo=echo, **kwargs)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite returns naive datetimes even for timezone-aware columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlStateStore:
    """Durable state for the pool registry."""

    def __init__(self, engine: Engine, cipher: Optional[CredentialCipher] = None, logger: Any = None) -> None:
        self.engine = engine
        self.cipher = cipher or CredentialCipher()
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False)
        self.logger = (logger or structlog.get_logger()).bind(component="state_store")

    @classmethod
    def from_url(cls, url: str, cipher: Optional[CredentialCipher] = None) -> "SqlStateStore":
        store = cls(create_controller_engine(url), cipher=cipher)
        store.create_schema()
        return store

    def create_schema(self) -> None:
        ControllerBase.metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    def load_pools(self) -> List[RepositoryPool]:
        with self._sessions() as session:
            rows = session.scalars(select(RunnerPoolTable).order_by(RunnerPoolTable.repository)).all()
            return [RepositoryPool.model_validate(row.payload) for row in rows]

    def load_instances(self, repository: Optional[str] = None) -> List[RunnerInstance]:
        stmt = select(RunnerInstanceTable).order_by(RunnerInstanceTable.repository, RunnerInstanceTable.id)
        if repository is not None:
            stmt = stmt.where(RunnerInstanceTable.repository == repository)

        with self._sessions() as session:
            return [self._instance_from_row(row) for row in session.scalars(stmt).all()]

    def load_scaling_events(self, repository: Optional[str] = None, limit: int = 50) -> List[ScalingEvent]:
        """Most recent events first."""
        stmt = select(ScalingEventTable).order_by(ScalingEventTable.seq.desc()).limit(limit)
        if repository is not None:
            stmt = stmt.where(ScalingEventTable.repository == repository)

        with self._sessions() as session:
            return [
                ScalingEvent(
                    event_id=row.event_id,
                    repository=row.repository,
                    action=row.action,
                    reason=row.reason,
                    outcome=row.outcome,
                    instance_id=row.instance_id,
                    detail=row.detail,
                    timestamp=_as_utc(row.timestamp),
                )
                for row in session.scalars(stmt).all()
            ]

    def commit(self,
               pools: Iterable[RepositoryPool] = (),
               upserts: Iterable[RunnerInstance] = (),
               removals: Iterable[str] = (),
               events: Iterable[ScalingEvent] = ()) -> None:
        """Persist one registry transaction atomically."""
        now = utcnow()
        with self._sessions.begin() as session:
            for pool in pools:
                session.merge(RunnerPoolTable(
                    repository=pool.repository,
                    dedicated_count=pool.dedicated_count,
                    dynamic_count=pool.dynamic_count,
                    dynamic_ceiling=pool.dynamic_ceiling,
                    payload=pool.model_dump(mode="json"),
                    updated_at=now,
                ))
            for instance in upserts:
                session.merge(self._instance_to_row(instance, now))
            removal_ids = list(removals)
            if removal_ids:
                session.execute(delete(RunnerInstanceTable).where(RunnerInstanceTable.id.in_(removal_ids)))
            for scaling_event in events:
                session.add(ScalingEventTable(
                    event_id=scaling_event.event_id,
                    repository=scaling_event.repository,
                    action=scaling_event.action.value,
                    reason=scaling_event.reason.value,
                    outcome=scaling_event.outcome.value,
                    instance_id=scaling_event.instance_id,
                    detail=scaling_event.detail,
                    timestamp=scaling_event.timestamp,
                ))

    def _instance_to_row(self, instance: RunnerInstance, now: datetime) -> RunnerInstanceTable:
        ciphertext = None
        if instance.credential is not None:
            credential = instance.credential.model_dump(mode="json")
            credential["value"] = instance.credential.value.get_secret_value()
            ciphertext = self.cipher.encrypt(json.dumps(credential))

        return RunnerInstanceTable(
            id=instance.id,
            repository=instance.repository,
            kind=instance.kind.value,
            state=instance.state.value,
            runner_name=instance.runner_name,
            quarantined=int(instance.quarantined),
            generation=instance.generation,
            payload=instance.model_dump(mode="json", exclude={"credential"}),
            credential_ciphertext=ciphertext,
            updated_at=now,
        )

    def _instance_from_row(self, row: RunnerInstanceTable) -> RunnerInstance:
        instance = RunnerInstance.model_validate(row.payload)
        if row.credential_ciphertext:
            plaintext = self.cipher.decrypt(row.credential_ciphertext)
            if plaintext is None:
                self.logger.warning(
                    "Stored credential unreadable with current key",
                    instance_id=row.id,
                )
            else:
                instance.credential = Credential.model_validate(json.loads(plaintext))
        return instance
