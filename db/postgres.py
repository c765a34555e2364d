"""SQL-backed generation store (PostgreSQL in production, SQLite in tests)."""

from __future__ import annotations

import contextlib
import json
import logging
import random
import threading
import time
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from psycopg.errors import OperationalError as PsycopgOperationalError
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, URL, make_url
from sqlalchemy.exc import ArgumentError, IntegrityError, OperationalError

from generation.errors import DuplicateTrackNumber, InvalidRequest
from generation.models import Generation, Track, new_id, utcnow
from generation.store import GenerationStore, InMemoryGenerationStore

log = logging.getLogger("db.postgres")

_RETRYABLE_MESSAGES = (
    "SSL connection has been closed unexpectedly",
    "server closed the connection unexpectedly",
    "connection already closed",
    "timeout expired",
    "timed out",
)

# Plain types so the same DDL runs on PostgreSQL and SQLite.
_PROJECTS_DDL = """
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    title TEXT NOT NULL,
    type TEXT NOT NULL DEFAULT 'single',
    status TEXT NOT NULL DEFAULT 'draft',
    created_at TEXT NOT NULL
)
"""

_TRACKS_DDL = """
CREATE TABLE IF NOT EXISTS tracks (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    track_number INTEGER NOT NULL CHECK (track_number > 0),
    audio_url TEXT,
    cover_url TEXT,
    lyrics TEXT,
    duration DOUBLE PRECISION CHECK (duration IS NULL OR duration > 0),
    style_tags TEXT NOT NULL DEFAULT '[]',
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (project_id, track_number)
)
"""

_GENERATIONS_DDL = """
CREATE TABLE IF NOT EXISTS generations (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    service TEXT NOT NULL,
    kind TEXT NOT NULL,
    prompt TEXT NOT NULL DEFAULT '',
    external_id TEXT,
    status TEXT NOT NULL,
    result_url TEXT,
    error_message TEXT,
    track_id TEXT,
    project_id TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
)
"""

_CALLBACK_EVENTS_DDL = """
CREATE TABLE IF NOT EXISTS callback_events (
    external_id TEXT NOT NULL,
    callback_type TEXT NOT NULL,
    payload TEXT NOT NULL,
    received_at TEXT NOT NULL,
    PRIMARY KEY (external_id, callback_type)
)
"""

_INDEXES_DDL = (
    "CREATE INDEX IF NOT EXISTS idx_generations_external ON generations(service, external_id)",
    "CREATE INDEX IF NOT EXISTS idx_generations_status_updated ON generations(status, updated_at)",
    "CREATE INDEX IF NOT EXISTS idx_generations_user ON generations(user_id, created_at)",
)

_GENERATION_COLUMNS = (
    "id",
    "user_id",
    "service",
    "kind",
    "prompt",
    "external_id",
    "status",
    "result_url",
    "error_message",
    "track_id",
    "project_id",
    "metadata",
    "created_at",
    "updated_at",
)

_TRACK_COLUMNS = (
    "id",
    "project_id",
    "title",
    "track_number",
    "audio_url",
    "cover_url",
    "lyrics",
    "duration",
    "style_tags",
    "metadata",
    "created_at",
    "updated_at",
)


def _render_postgres_url(url: URL) -> str:
    rendered = url.render_as_string(hide_password=False)
    if rendered.startswith("postgresql://"):
        return "postgres://" + rendered[len("postgresql://") :]
    return rendered


def mask_dsn(dsn: str) -> str:
    """Return a DSN safe for logging with the password redacted."""

    if not dsn:
        return ""
    try:
        parsed = make_url(dsn)
    except ArgumentError:
        return "***"
    if parsed.password is None:
        return _render_postgres_url(parsed)
    return _render_postgres_url(parsed.set(password="***"))


def normalize_dsn(raw: str) -> str:
    """Return a SQLAlchemy URL using the psycopg driver for PostgreSQL DSNs.

    ``postgres://``, ``postgresql://`` and ``postgresql+<driver>://`` all map
    to ``postgresql+psycopg://``. SQLite URLs pass through unchanged.
    """

    candidate = (raw or "").strip()
    if not candidate:
        raise ValueError("DSN invalid: connection string is empty")
    try:
        parsed: URL = make_url(candidate)
    except ArgumentError as exc:
        raise ValueError("DSN invalid: could not parse URL") from exc

    driver = (parsed.drivername or "").lower()
    if driver.startswith("sqlite"):
        return candidate
    if driver not in {"postgres", "postgresql"} and not driver.startswith("postgresql+"):
        raise ValueError(f"DSN invalid: unsupported scheme {driver!r}")
    if not parsed.host:
        raise ValueError("DSN invalid: host is missing")
    if not parsed.database:
        raise ValueError("DSN invalid: database name is missing")
    return parsed.set(drivername="postgresql+psycopg").render_as_string(hide_password=False)


def _iter_exception_chain(exc: BaseException) -> Iterable[BaseException]:
    current: Optional[BaseException] = exc
    seen: set[int] = set()
    while current is not None and id(current) not in seen:
        yield current
        seen.add(id(current))
        current = current.__cause__ or current.__context__


def _is_retryable_error(exc: BaseException) -> bool:
    for candidate in _iter_exception_chain(exc):
        if isinstance(candidate, (OperationalError, PsycopgOperationalError, ConnectionResetError, TimeoutError)):
            return True
        if any(token in str(candidate) for token in _RETRYABLE_MESSAGES):
            return True
    return False


def _test_connection(engine: Engine) -> None:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


def connect_with_retry(dsn: str, attempts: int = 6, backoff: float = 1.5) -> Engine:
    """Create a SQLAlchemy engine with retry logic and a health check."""

    if attempts <= 0:
        raise ValueError("attempts must be a positive integer")
    if backoff <= 1.0:
        backoff = 1.5

    url = normalize_dsn(dsn)
    is_sqlite = url.startswith("sqlite")
    last_error: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        log.info("db.connect_attempt", extra={"meta": {"attempt": attempt, "attempts": attempts, "dsn": mask_dsn(url)}})
        engine: Optional[Engine] = None
        try:
            if is_sqlite:
                engine = create_engine(url, future=True)
            else:
                engine = create_engine(
                    url,
                    future=True,
                    pool_pre_ping=True,
                    pool_size=5,
                    max_overflow=5,
                    pool_timeout=15,
                )
            _test_connection(engine)
            log.info("db.connected", extra={"meta": {"driver": engine.dialect.name}})
            return engine
        except Exception as exc:
            last_error = exc
            if engine is not None:
                engine.dispose()
            retryable = _is_retryable_error(exc)
            if not retryable or attempt == attempts:
                log.error(
                    "db.connect_fail",
                    extra={"meta": {"attempt": attempt, "attempts": attempts, "err": str(exc)}},
                    exc_info=True,
                )
                if retryable:
                    raise RuntimeError(
                        f"database: could not connect after {attempts} attempts ({exc.__class__.__name__})"
                    ) from exc
                raise
            sleep_for = backoff ** (attempt - 1) * random.uniform(0.9, 1.1)
            log.warning(
                "db.connect_retry",
                extra={"meta": {"attempt": attempt, "attempts": attempts, "err": str(exc), "wait": round(sleep_for, 2)}},
            )
            time.sleep(sleep_for)

    raise RuntimeError(f"database: could not connect after {attempts} attempts") from last_error


def _dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def _load(raw: Optional[str], default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except ValueError:
        log.warning("db.bad_json", extra={"meta": {"value": raw[:120]}})
        return default


def _ts(value: datetime) -> str:
    # fixed width so text comparison orders timestamps
    return value.isoformat(timespec="microseconds")


def _parse_ts(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return raw
    return datetime.fromisoformat(str(raw))


class SqlGenerationStore(GenerationStore):
    """:class:`GenerationStore` on top of a SQLAlchemy engine."""

    def __init__(self, engine: Engine, *, create_schema: bool = True) -> None:
        self.engine = engine
        self._lock = threading.Lock()
        if create_schema:
            self.ensure_schema()

    @classmethod
    def from_dsn(cls, dsn: str, **kwargs: Any) -> "SqlGenerationStore":
        return cls(connect_with_retry(dsn, **kwargs))

    def ensure_schema(self) -> None:
        with self.engine.begin() as conn:
            for ddl in (_PROJECTS_DDL, _TRACKS_DDL, _GENERATIONS_DDL, _CALLBACK_EVENTS_DDL, *_INDEXES_DDL):
                conn.execute(text(ddl))
        log.info("db.schema_ready", extra={"meta": {"dialect": self.engine.dialect.name}})

    def dispose(self) -> None:
        with contextlib.suppress(Exception):
            self.engine.dispose()

    # -- generations -----------------------------------------------------------
    @staticmethod
    def _generation_params(generation: Generation) -> Dict[str, Any]:
        return {
            "id": generation.id,
            "user_id": generation.user_id,
            "service": generation.service,
            "kind": generation.kind,
            "prompt": generation.prompt or "",
            "external_id": generation.external_id,
            "status": generation.status,
            "result_url": generation.result_url,
            "error_message": generation.error_message,
            "track_id": generation.track_id,
            "project_id": generation.project_id,
            "metadata": _dump(generation.metadata),
            "created_at": _ts(generation.created_at),
            "updated_at": _ts(generation.updated_at),
        }

    @staticmethod
    def _generation_from_row(row: Mapping[str, Any]) -> Generation:
        return Generation(
            id=row["id"],
            user_id=row["user_id"],
            service=row["service"],
            kind=row["kind"],
            prompt=row["prompt"] or "",
            external_id=row["external_id"],
            status=row["status"],
            result_url=row["result_url"],
            error_message=row["error_message"],
            track_id=row["track_id"],
            project_id=row["project_id"],
            metadata=_load(row["metadata"], {}),
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    def create_generation(self, generation: Generation) -> Generation:
        columns = ", ".join(_GENERATION_COLUMNS)
        values = ", ".join(f":{name}" for name in _GENERATION_COLUMNS)
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    text(f"INSERT INTO generations ({columns}) VALUES ({values})"),
                    self._generation_params(generation),
                )
        except IntegrityError as exc:
            raise InvalidRequest(f"generation already exists: {generation.id}") from exc
        return generation

    def _select_generations(self, where: str, params: Mapping[str, Any], suffix: str = "") -> List[Generation]:
        columns = ", ".join(_GENERATION_COLUMNS)
        sql = f"SELECT {columns} FROM generations"
        if where:
            sql += f" WHERE {where}"
        sql += suffix
        with self.engine.connect() as conn:
            rows = conn.execute(text(sql), dict(params)).mappings().all()
        return [self._generation_from_row(row) for row in rows]

    def get_generation(self, generation_id: str) -> Optional[Generation]:
        found = self._select_generations("id = :id", {"id": generation_id})
        return found[0] if found else None

    def find_by_external_id(self, service: str, external_id: str) -> Optional[Generation]:
        found = self._select_generations(
            "service = :service AND external_id = :external_id",
            {"service": service, "external_id": external_id},
            " ORDER BY created_at DESC",
        )
        return found[0] if found else None

    def save_generation(self, generation: Generation) -> None:
        assignments = ", ".join(f"{name} = :{name}" for name in _GENERATION_COLUMNS if name != "id")
        with self.engine.begin() as conn:
            result = conn.execute(
                text(f"UPDATE generations SET {assignments} WHERE id = :id"),
                self._generation_params(generation),
            )
        if result.rowcount == 0:
            raise KeyError(generation.id)

    def _status_filter(self, statuses: Iterable[str], params: Dict[str, Any]) -> str:
        names = []
        for index, status in enumerate(sorted(set(statuses))):
            key = f"status_{index}"
            params[key] = status
            names.append(f":{key}")
        return f"status IN ({', '.join(names)})" if names else "1 = 0"

    def list_generations(
        self,
        *,
        user_id: Optional[str] = None,
        statuses: Optional[Iterable[str]] = None,
    ) -> List[Generation]:
        clauses: List[str] = []
        params: Dict[str, Any] = {}
        if user_id is not None:
            clauses.append("user_id = :user_id")
            params["user_id"] = user_id
        if statuses is not None:
            clauses.append(self._status_filter(statuses, params))
        return self._select_generations(" AND ".join(clauses), params, " ORDER BY created_at DESC")

    def list_stuck(self, older_than: datetime, statuses: Iterable[str]) -> List[Generation]:
        params: Dict[str, Any] = {"cutoff": _ts(older_than)}
        where = f"{self._status_filter(statuses, params)} AND updated_at <= :cutoff"
        return self._select_generations(where, params, " ORDER BY updated_at")

    # -- projects and tracks ---------------------------------------------------
    def ensure_project(self, project_id: Optional[str], user_id: str, title: str) -> str:
        with self._lock, self.engine.begin() as conn:
            if project_id:
                existing = conn.execute(
                    text("SELECT id FROM projects WHERE id = :id"), {"id": project_id}
                ).scalar()
                if existing:
                    return str(existing)
            new_project = project_id or new_id()
            conn.execute(
                text(
                    "INSERT INTO projects (id, user_id, title, type, status, created_at) "
                    "VALUES (:id, :user_id, :title, 'single', 'draft', :created_at)"
                ),
                {"id": new_project, "user_id": user_id, "title": title or "Untitled", "created_at": _ts(utcnow())},
            )
        return new_project

    @staticmethod
    def _track_params(track: Track) -> Dict[str, Any]:
        return {
            "id": track.id,
            "project_id": track.project_id,
            "title": track.title,
            "track_number": int(track.track_number),
            "audio_url": track.audio_url,
            "cover_url": track.cover_url,
            "lyrics": track.lyrics,
            "duration": track.duration,
            "style_tags": _dump(list(track.style_tags)),
            "metadata": _dump(track.metadata),
            "created_at": _ts(track.created_at),
            "updated_at": _ts(track.updated_at),
        }

    @staticmethod
    def _track_from_row(row: Mapping[str, Any]) -> Track:
        return Track(
            id=row["id"],
            project_id=row["project_id"],
            title=row["title"],
            track_number=int(row["track_number"]),
            audio_url=row["audio_url"],
            cover_url=row["cover_url"],
            lyrics=row["lyrics"],
            duration=float(row["duration"]) if row["duration"] is not None else None,
            style_tags=_load(row["style_tags"], []),
            metadata=_load(row["metadata"], {}),
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    def create_track(self, track: Track) -> Track:
        columns = ", ".join(_TRACK_COLUMNS)
        values = ", ".join(f":{name}" for name in _TRACK_COLUMNS)
        try:
            with self.engine.begin() as conn:
                conn.execute(text(f"INSERT INTO tracks ({columns}) VALUES ({values})"), self._track_params(track))
        except IntegrityError as exc:
            raise DuplicateTrackNumber(track.project_id, track.track_number) from exc
        return track

    def _select_tracks(self, where: str, params: Mapping[str, Any], suffix: str = "") -> List[Track]:
        columns = ", ".join(_TRACK_COLUMNS)
        with self.engine.connect() as conn:
            rows = conn.execute(text(f"SELECT {columns} FROM tracks WHERE {where}{suffix}"), dict(params)).mappings().all()
        return [self._track_from_row(row) for row in rows]

    def get_track(self, track_id: str) -> Optional[Track]:
        found = self._select_tracks("id = :id", {"id": track_id})
        return found[0] if found else None

    def save_track(self, track: Track) -> None:
        track.updated_at = utcnow()
        assignments = ", ".join(f"{name} = :{name}" for name in _TRACK_COLUMNS if name != "id")
        with self.engine.begin() as conn:
            result = conn.execute(text(f"UPDATE tracks SET {assignments} WHERE id = :id"), self._track_params(track))
        if result.rowcount == 0:
            raise KeyError(track.id)

    def list_tracks(self, project_id: str) -> List[Track]:
        return self._select_tracks("project_id = :project_id", {"project_id": project_id}, " ORDER BY track_number")

    def next_track_number(self, project_id: str) -> int:
        with self.engine.connect() as conn:
            current = conn.execute(
                text("SELECT MAX(track_number) FROM tracks WHERE project_id = :project_id"),
                {"project_id": project_id},
            ).scalar()
        return int(current or 0) + 1

    # -- callback events -------------------------------------------------------
    def save_event(self, external_id: str, callback_type: str, payload: dict) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                text(
                    "INSERT INTO callback_events (external_id, callback_type, payload, received_at) "
                    "VALUES (:external_id, :callback_type, :payload, :received_at) "
                    "ON CONFLICT (external_id, callback_type) DO NOTHING"
                ),
                {
                    "external_id": external_id,
                    "callback_type": callback_type,
                    "payload": _dump(payload),
                    "received_at": _ts(utcnow()),
                },
            )
        return result.rowcount == 1

    def delete_event(self, external_id: str, callback_type: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text("DELETE FROM callback_events WHERE external_id = :external_id AND callback_type = :callback_type"),
                {"external_id": external_id, "callback_type": callback_type},
            )


def create_store(dsn: Optional[str]) -> GenerationStore:
    """Return a SQL store for ``dsn`` or an in-memory store when it is empty."""

    if not dsn:
        log.info("db.memory_store")
        return InMemoryGenerationStore()
    store = SqlGenerationStore.from_dsn(dsn)
    log.info("db.sql_store", extra={"meta": {"dsn": mask_dsn(normalize_dsn(dsn))}})
    return store


__all__ = [
    "SqlGenerationStore",
    "connect_with_retry",
    "create_store",
    "mask_dsn",
    "normalize_dsn",
]
