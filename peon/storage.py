"""
SQL Storage Layer for Peon.

This module provides the datastore used by the status store, the renderer
and the HTTP API. Repositories, builds and build steps are kept in a
SQLAlchemy database (SQLite under the working directory by default), so
build history, stale builds and build ids survive a restart.

Every operation runs in its own session under a reentrant lock, so the
datastore can be used from the event loop and from threadpool workers alike.

The datastore enforces the build lifecycle:
- pending -> running -> success | failed | cancelled
- success -> cleaned
- pending -> cancelled (stale builds that never started)

Timestamp rules:
- updated_at changes on every update except the transition to 'cleaned'
- started_at is set on the first update that is neither 'failed' nor 'cancelled'
- ended_at is set when a build becomes 'success' or 'failed'

Classes:
    Database: Thread-safe SQL storage for repositories, builds and steps
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from threading import RLock
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    create_engine,
    select,
)
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import (
    Build,
    BuildStatus,
    InvalidTransitionError,
    RefMode,
    Repo,
    Step,
    StepStatus,
    can_transition,
    utcnow,
)


class UTCDateTime(TypeDecorator):
    """DateTime column handing back timezone-aware UTC values."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    pass


class RepoRecord(Base):
    __tablename__ = "repos"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)


class BuildRecord(Base):
    __tablename__ = "builds"
    # ids are never reused, cleanup data on disk refers to them
    __table_args__ = {"sqlite_autoincrement": True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    repo_id: Mapped[int] = mapped_column(ForeignKey("repos.id"), nullable=False)
    repo: Mapped[RepoRecord] = relationship(lazy="joined")
    ref_mode: Mapped[str] = mapped_column(String(16), nullable=False)
    ref: Mapped[str] = mapped_column(Text, nullable=False)
    sha: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    enqueued_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    ended_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    extra: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    def to_model(self) -> Build:
        return Build(
            id=self.id,
            repo_id=self.repo_id,
            repo_name=self.repo.name,
            repo_url=self.repo.url,
            ref_mode=RefMode(self.ref_mode),
            ref=self.ref,
            sha=self.sha,
            status=BuildStatus(self.status),
            enqueued_at=self.enqueued_at,
            updated_at=self.updated_at,
            started_at=self.started_at,
            ended_at=self.ended_at,
            extra=self.extra,
        )


class StepRecord(Base):
    __tablename__ = "steps"
    __table_args__ = (UniqueConstraint("build_id", "description"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    build_id: Mapped[int] = mapped_column(ForeignKey("builds.id"), nullable=False, index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    output: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    ended_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    def to_model(self) -> Step:
        return Step(
            build_id=self.build_id,
            description=self.description,
            status=StepStatus(self.status),
            output=self.output,
            started_at=self.started_at,
            ended_at=self.ended_at,
        )


def _repo_model(record: RepoRecord) -> Repo:
    return Repo(id=record.id, name=record.name, url=record.url)


class Database:
    """
    Thread-safe SQL database for repositories, builds and steps.

    Builds and repositories get increasing integer ids. Steps are keyed by
    (build_id, description): reporting a step again updates it in place.

    Args:
        url (str): SQLAlchemy database URL; defaults to a private in-memory
            SQLite database

    Note:
        Returned models are detached copies; mutate them through the update
        methods.
    """

    def __init__(self, url: str = "sqlite://") -> None:
        self.url = make_url(url)
        engine_options: Dict[str, Any] = {}
        if self.url.get_backend_name() == "sqlite":
            engine_options["connect_args"] = {"check_same_thread": False}
            if self.url.database in (None, "", ":memory:"):
                engine_options["poolclass"] = StaticPool
            else:
                Path(self.url.database).parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_engine(self.url, **engine_options)
        Base.metadata.create_all(self.engine)
        self._sessions = sessionmaker(self.engine, expire_on_commit=False)
        self._lock = RLock()

    def _session(self) -> Session:
        return self._sessions()

    def get_repos(self) -> List[Repo]:
        with self._lock, self._session() as session:
            records = session.scalars(select(RepoRecord).order_by(RepoRecord.id))
            return [_repo_model(r) for r in records]

    def get_repo_by_name(self, name: str) -> Optional[Repo]:
        with self._lock, self._session() as session:
            record = session.scalars(select(RepoRecord).where(RepoRecord.name == name)).first()
            return _repo_model(record) if record else None

    def get_or_create_repo(self, name: str, url: str) -> Repo:
        """Find a repository by name, creating it when unknown."""
        with self._lock, self._session() as session, session.begin():
            record = session.scalars(select(RepoRecord).where(RepoRecord.name == name)).first()
            if record is None:
                record = RepoRecord(name=name, url=url)
                session.add(record)
                session.flush()
            return _repo_model(record)

    def create_build(
        self,
        repo_id: int,
        ref_mode: RefMode,
        ref: str,
        sha: str,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Build:
        """
        Create a pending build for a repository.

        Raises:
            KeyError: If the repository does not exist
        """
        with self._lock, self._session() as session, session.begin():
            repo = session.get(RepoRecord, repo_id)
            if repo is None:
                raise KeyError(repo_id)
            now = utcnow()
            record = BuildRecord(
                repo=repo,
                ref_mode=ref_mode.value,
                ref=ref,
                sha=sha,
                status=BuildStatus.pending.value,
                enqueued_at=now,
                updated_at=now,
                extra=extra,
            )
            session.add(record)
            session.flush()
            return record.to_model()

    def update_build(
        self,
        build_id: int,
        status: BuildStatus,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Build:
        """
        Change the status of a build, applying the timestamp rules.

        Args:
            build_id (int): ID of the build to update
            status (BuildStatus): New status; may equal the current one
            extra (Optional[dict]): Replaces the build extra data when given

        Raises:
            KeyError: If the build does not exist
            InvalidTransitionError: If the lifecycle forbids the change
        """
        with self._lock, self._session() as session, session.begin():
            return self._update_build(session, build_id, status, extra).to_model()

    def _update_build(
        self,
        session: Session,
        build_id: int,
        status: BuildStatus,
        extra: Optional[Dict[str, Any]] = None,
    ) -> BuildRecord:
        record = session.get(BuildRecord, build_id)
        if record is None:
            raise KeyError(build_id)
        current = BuildStatus(record.status)
        if not can_transition(current, status):
            raise InvalidTransitionError(
                f"build {build_id} cannot go from {current.value} to {status.value}"
            )

        now = utcnow()
        record.status = status.value
        if status != BuildStatus.cleaned:
            record.updated_at = now
        if record.started_at is None and status not in (
            BuildStatus.failed,
            BuildStatus.cancelled,
        ):
            record.started_at = now
        if status in (BuildStatus.success, BuildStatus.failed):
            record.ended_at = now
        if extra:
            record.extra = extra
        return record

    def update_step(
        self,
        build_id: int,
        description: str,
        status: StepStatus,
        output: Optional[str] = None,
    ) -> Step:
        """
        Create or update a build step; the build is marked running.

        Raises:
            KeyError: If the build does not exist
            InvalidTransitionError: If the build is already finished
        """
        with self._lock, self._session() as session, session.begin():
            self._update_build(session, build_id, BuildStatus.running)

            now = utcnow()
            record = session.scalars(
                select(StepRecord).where(
                    StepRecord.build_id == build_id,
                    StepRecord.description == description,
                )
            ).first()
            if record is None:
                record = StepRecord(build_id=build_id, description=description, started_at=now)
                session.add(record)

            record.status = status.value
            if status.is_finished:
                record.ended_at = now
            if output:
                record.output = output
            session.flush()
            return record.to_model()

    def get_steps(self, build_id: int) -> List[Step]:
        """Return the steps of a build, ordered by start time."""
        with self._lock, self._session() as session:
            records = session.scalars(
                select(StepRecord)
                .where(StepRecord.build_id == build_id)
                .order_by(StepRecord.started_at, StepRecord.id)
            )
            return [r.to_model() for r in records]

    def get_build(self, build_id: int) -> Optional[Build]:
        with self._lock, self._session() as session:
            record = session.get(BuildRecord, build_id)
            return record.to_model() if record else None

    def get_builds(self, repo_id: int) -> List[Build]:
        """Return the builds of a repository, most recently updated first."""
        with self._lock, self._session() as session:
            records = session.scalars(
                self._by_update(select(BuildRecord).where(BuildRecord.repo_id == repo_id))
            )
            return [r.to_model() for r in records]

    def get_builds_for(self, repo_name: str, ref_mode: RefMode, ref: str) -> List[Build]:
        """Return the builds of a repository ref, in creation order."""
        with self._lock, self._session() as session:
            records = session.scalars(
                select(BuildRecord)
                .join(BuildRecord.repo)
                .where(
                    RepoRecord.name == repo_name,
                    BuildRecord.ref_mode == ref_mode.value,
                    BuildRecord.ref == ref,
                )
                .order_by(BuildRecord.id)
            )
            return [r.to_model() for r in records]

    def get_stale_builds(self) -> List[Build]:
        """Return builds left pending or running."""
        with self._lock, self._session() as session:
            records = session.scalars(
                select(BuildRecord)
                .where(
                    BuildRecord.status.in_(
                        [BuildStatus.pending.value, BuildStatus.running.value]
                    )
                )
                .order_by(BuildRecord.id)
            )
            return [r.to_model() for r in records]

    def get_last_updated_builds(self, limit: Optional[int] = None) -> List[Build]:
        """Return the most recently updated builds across repositories."""
        with self._lock, self._session() as session:
            query = self._by_update(select(BuildRecord))
            if limit:
                query = query.limit(limit)
            return [r.to_model() for r in session.scalars(query)]

    def get_git_build_info(self, build_id: int) -> Optional[Tuple[str, str]]:
        """Return (repository url, sha) of a build."""
        with self._lock, self._session() as session:
            record = session.get(BuildRecord, build_id)
            if record is None:
                return None
            return record.repo.url, record.sha

    @staticmethod
    def _by_update(query):
        return query.order_by(BuildRecord.updated_at.desc(), BuildRecord.id.desc())
