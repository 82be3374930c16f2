"""SQLite persistence for learner progress, submissions, certificates, and annotations."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .errors import ConcurrentUpdateError, StoreError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

STATUS_NOT_STARTED = "not_started"
STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"
STATUSES = (STATUS_NOT_STARTED, STATUS_IN_PROGRESS, STATUS_COMPLETED)


@dataclass(frozen=True)
class ModuleBookmark:
    """Bookmark on a module section or content item."""

    id: str
    user_id: str
    module_id: str
    section_id: str
    title: str
    created_at: str
    content_id: str | None = None
    note: str | None = None


@dataclass(frozen=True)
class ModuleNote:
    """Free-text learner note scoped to a module."""

    id: str
    user_id: str
    module_id: str
    content: str
    is_private: bool
    tags: tuple[str, ...]
    created_at: str
    updated_at: str
    section_id: str | None = None
    exercise_id: str | None = None


@dataclass(frozen=True)
class ModuleProgress:
    """Completion state for one learner in one module."""

    id: str
    user_id: str
    module_id: str
    status: str
    last_accessed_at: str
    started_at: str | None = None
    completed_at: str | None = None
    completed_sections: tuple[str, ...] = ()
    completed_exercises: tuple[str, ...] = ()
    time_spent: int = 0
    progress_percentage: float = 0.0
    version: int = 1
    bookmarks: tuple[ModuleBookmark, ...] = ()
    notes: tuple[ModuleNote, ...] = ()


@dataclass(frozen=True)
class ExerciseSubmission:
    """One scored exercise attempt. Never modified after creation."""

    id: str
    user_id: str
    exercise_id: str
    module_id: str
    section_id: str
    responses: dict[str, Any]
    is_complete: bool
    submitted_at: str
    time_spent: int
    score: int
    feedback: str


@dataclass(frozen=True)
class CertificateMetadata:
    """Completion snapshot stored on a certificate."""

    completion_time: int
    exercises_completed: int
    total_exercises: int
    score: int | None = None


@dataclass(frozen=True)
class ModuleCertificate:
    """Proof of module completion, at most one per learner and module."""

    id: str
    user_id: str
    module_id: str
    certificate_number: str
    issued_at: str
    download_url: str
    metadata: CertificateMetadata
    valid_until: str | None = None


@dataclass(frozen=True)
class ResourceDownload:
    """Telemetry row for one resource download."""

    user_id: str
    resource_id: str
    downloaded_at: str


class ProgressStore:
    """Database access layer for learner training state."""

    def __init__(self, db_path: Path | str) -> None:
        """Initialize database and schema."""
        if isinstance(db_path, Path):
            db_path.parent.mkdir(parents=True, exist_ok=True)
            target = str(db_path)
        else:
            target = db_path
        self._conn = sqlite3.connect(target, isolation_level=None, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._init_db()
        logger.debug("Progress store opened at %s", target)

    def _init_db(self) -> None:
        self._apply_migrations()

    def _apply_migrations(self) -> None:
        """Apply forward-only schema migrations to latest version."""
        current = int(self._conn.execute("PRAGMA user_version").fetchone()[0])
        if current > SCHEMA_VERSION:
            raise RuntimeError(f"Database schema version {current} is newer than supported {SCHEMA_VERSION}.")

        with self.transaction():
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT NOT NULL
                )
                """)

        for version in range(current + 1, SCHEMA_VERSION + 1):
            with self.transaction():
                if version == 1:
                    self._migrate_to_v1()
                self._conn.execute(f"PRAGMA user_version = {version}")
                self._conn.execute(
                    "INSERT OR REPLACE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                    (version, _now()),
                )
            logger.info("Applied progress schema migration v%d", version)

    def _migrate_to_v1(self) -> None:
        """Create one table per logical collection."""
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS module_progress (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                module_id TEXT NOT NULL,
                status TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT,
                last_accessed_at TEXT NOT NULL,
                time_spent INTEGER NOT NULL DEFAULT 0,
                progress_percentage REAL NOT NULL DEFAULT 0,
                version INTEGER NOT NULL DEFAULT 1,
                UNIQUE (user_id, module_id)
            )
            """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS section_completions (
                user_id TEXT NOT NULL,
                module_id TEXT NOT NULL,
                section_id TEXT NOT NULL,
                completed_at TEXT NOT NULL,
                PRIMARY KEY (user_id, module_id, section_id)
            )
            """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS exercise_completions (
                user_id TEXT NOT NULL,
                module_id TEXT NOT NULL,
                exercise_id TEXT NOT NULL,
                completed_at TEXT NOT NULL,
                PRIMARY KEY (user_id, module_id, exercise_id)
            )
            """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS exercise_submissions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                module_id TEXT NOT NULL,
                exercise_id TEXT NOT NULL,
                section_id TEXT NOT NULL,
                responses TEXT NOT NULL,
                is_complete INTEGER NOT NULL,
                submitted_at TEXT NOT NULL,
                time_spent INTEGER NOT NULL,
                score INTEGER NOT NULL,
                feedback TEXT NOT NULL
            )
            """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS certificates (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                module_id TEXT NOT NULL,
                certificate_number TEXT NOT NULL UNIQUE,
                issued_at TEXT NOT NULL,
                valid_until TEXT,
                download_url TEXT NOT NULL,
                metadata TEXT NOT NULL,
                UNIQUE (user_id, module_id)
            )
            """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS bookmarks (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                module_id TEXT NOT NULL,
                section_id TEXT NOT NULL,
                content_id TEXT,
                title TEXT NOT NULL,
                note TEXT,
                created_at TEXT NOT NULL
            )
            """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS notes (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                module_id TEXT NOT NULL,
                section_id TEXT,
                exercise_id TEXT,
                content TEXT NOT NULL,
                is_private INTEGER NOT NULL,
                tags TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS resource_downloads (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                resource_id TEXT NOT NULL,
                downloaded_at TEXT NOT NULL
            )
            """)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run a block as one write transaction; nested blocks join the outer one."""
        with self._lock:
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield
                finally:
                    self._tx_depth -= 1
                return

            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise StoreError(f"Could not begin transaction: {exc}") from exc
            self._tx_depth = 1
            try:
                yield
            except sqlite3.Error as exc:
                self._tx_depth = 0
                self._conn.execute("ROLLBACK")
                raise StoreError(f"Progress store write failed: {exc}") from exc
            except BaseException:
                self._tx_depth = 0
                self._conn.execute("ROLLBACK")
                raise
            self._tx_depth = 0
            try:
                self._conn.execute("COMMIT")
            except sqlite3.Error as exc:
                self._conn.execute("ROLLBACK")
                raise StoreError(f"Could not commit transaction: {exc}") from exc

    # Progress records

    def get_progress(self, user_id: str, module_id: str) -> ModuleProgress | None:
        """Get stored progress for a learner and module."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM module_progress WHERE user_id = ? AND module_id = ?",
                (user_id, module_id),
            ).fetchone()
            if row is None:
                return None
            return self._progress_from_row(row)

    def list_progress(self, user_id: str) -> list[ModuleProgress]:
        """Return all stored progress records for a learner."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM module_progress WHERE user_id = ? ORDER BY rowid",
                (user_id,),
            ).fetchall()
            return [self._progress_from_row(row) for row in rows]

    def insert_progress(self, progress: ModuleProgress) -> ModuleProgress:
        """Insert a new progress record with its completion sets."""
        with self.transaction():
            self._conn.execute(
                """
                INSERT INTO module_progress (
                    id,
                    user_id,
                    module_id,
                    status,
                    started_at,
                    completed_at,
                    last_accessed_at,
                    time_spent,
                    progress_percentage,
                    version
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    progress.id,
                    progress.user_id,
                    progress.module_id,
                    progress.status,
                    progress.started_at,
                    progress.completed_at,
                    progress.last_accessed_at,
                    progress.time_spent,
                    progress.progress_percentage,
                    progress.version,
                ),
            )
            self._write_completions(progress)
        return progress

    def update_progress(self, progress: ModuleProgress) -> ModuleProgress:
        """Write a progress record if its version is still current.

        Completion sets only grow: ids present in the record are added, none
        are removed. Returns the record with its new version.
        """
        with self.transaction():
            cursor = self._conn.execute(
                """
                UPDATE module_progress
                SET status = ?,
                    started_at = ?,
                    completed_at = ?,
                    last_accessed_at = ?,
                    time_spent = ?,
                    progress_percentage = ?,
                    version = version + 1
                WHERE id = ? AND version = ?
                """,
                (
                    progress.status,
                    progress.started_at,
                    progress.completed_at,
                    progress.last_accessed_at,
                    progress.time_spent,
                    progress.progress_percentage,
                    progress.id,
                    progress.version,
                ),
            )
            if cursor.rowcount == 0:
                raise ConcurrentUpdateError(progress.user_id, progress.module_id, progress.version)
            self._write_completions(progress)
        return replace(progress, version=progress.version + 1)

    def _write_completions(self, progress: ModuleProgress) -> None:
        self._conn.executemany(
            """
            INSERT OR IGNORE INTO section_completions (user_id, module_id, section_id, completed_at)
            VALUES (?, ?, ?, ?)
            """,
            [
                (progress.user_id, progress.module_id, section_id, progress.last_accessed_at)
                for section_id in progress.completed_sections
            ],
        )
        self._conn.executemany(
            """
            INSERT OR IGNORE INTO exercise_completions (user_id, module_id, exercise_id, completed_at)
            VALUES (?, ?, ?, ?)
            """,
            [
                (progress.user_id, progress.module_id, exercise_id, progress.last_accessed_at)
                for exercise_id in progress.completed_exercises
            ],
        )

    def _progress_from_row(self, row: sqlite3.Row) -> ModuleProgress:
        user_id = str(row["user_id"])
        module_id = str(row["module_id"])
        status = str(row["status"])
        if status not in STATUSES:
            raise StoreError(f"Progress {row['id']} has unknown status '{status}'.")
        sections = self._conn.execute(
            """
            SELECT section_id FROM section_completions
            WHERE user_id = ? AND module_id = ?
            ORDER BY completed_at, rowid
            """,
            (user_id, module_id),
        ).fetchall()
        exercises = self._conn.execute(
            """
            SELECT exercise_id FROM exercise_completions
            WHERE user_id = ? AND module_id = ?
            ORDER BY completed_at, rowid
            """,
            (user_id, module_id),
        ).fetchall()
        return ModuleProgress(
            id=str(row["id"]),
            user_id=user_id,
            module_id=module_id,
            status=status,
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            last_accessed_at=str(row["last_accessed_at"]),
            completed_sections=tuple(str(item["section_id"]) for item in sections),
            completed_exercises=tuple(str(item["exercise_id"]) for item in exercises),
            time_spent=int(row["time_spent"]),
            progress_percentage=float(row["progress_percentage"]),
            version=int(row["version"]),
        )

    # Exercise submissions

    def insert_submission(self, submission: ExerciseSubmission) -> None:
        """Append one submission."""
        with self.transaction():
            self._conn.execute(
                """
                INSERT INTO exercise_submissions (
                    id,
                    user_id,
                    module_id,
                    exercise_id,
                    section_id,
                    responses,
                    is_complete,
                    submitted_at,
                    time_spent,
                    score,
                    feedback
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    submission.id,
                    submission.user_id,
                    submission.module_id,
                    submission.exercise_id,
                    submission.section_id,
                    json.dumps(submission.responses, default=str),
                    int(submission.is_complete),
                    submission.submitted_at,
                    submission.time_spent,
                    submission.score,
                    submission.feedback,
                ),
            )

    def list_submissions(
        self, user_id: str, module_id: str | None = None, exercise_id: str | None = None
    ) -> list[ExerciseSubmission]:
        """Return submissions newest first; unreadable history reads as empty."""
        clauses = ["user_id = ?"]
        params: list[str] = [user_id]
        if module_id:
            clauses.append("module_id = ?")
            params.append(module_id)
        if exercise_id:
            clauses.append("exercise_id = ?")
            params.append(exercise_id)
        query = f"""
            SELECT * FROM exercise_submissions
            WHERE {" AND ".join(clauses)}
            ORDER BY submitted_at DESC, rowid DESC
            """
        try:
            with self._lock:
                rows = self._conn.execute(query, params).fetchall()
            return [
                ExerciseSubmission(
                    id=str(row["id"]),
                    user_id=str(row["user_id"]),
                    exercise_id=str(row["exercise_id"]),
                    module_id=str(row["module_id"]),
                    section_id=str(row["section_id"]),
                    responses=json.loads(row["responses"]),
                    is_complete=bool(row["is_complete"]),
                    submitted_at=str(row["submitted_at"]),
                    time_spent=int(row["time_spent"]),
                    score=int(row["score"]),
                    feedback=str(row["feedback"]),
                )
                for row in rows
            ]
        except (sqlite3.Error, ValueError):
            logger.exception("Could not read exercise submissions for user %s", user_id)
            return []

    # Certificates

    def get_certificate(self, user_id: str, module_id: str) -> ModuleCertificate | None:
        """Get the certificate issued for a learner and module."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM certificates WHERE user_id = ? AND module_id = ?",
                (user_id, module_id),
            ).fetchone()
        if row is None:
            return None
        return _certificate_from_row(row)

    def insert_certificate(self, certificate: ModuleCertificate) -> ModuleCertificate:
        """Store a certificate unless one exists for the pair; return the stored one."""
        with self.transaction():
            cursor = self._conn.execute(
                """
                INSERT OR IGNORE INTO certificates (
                    id,
                    user_id,
                    module_id,
                    certificate_number,
                    issued_at,
                    valid_until,
                    download_url,
                    metadata
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    certificate.id,
                    certificate.user_id,
                    certificate.module_id,
                    certificate.certificate_number,
                    certificate.issued_at,
                    certificate.valid_until,
                    certificate.download_url,
                    json.dumps(
                        {
                            "completion_time": certificate.metadata.completion_time,
                            "exercises_completed": certificate.metadata.exercises_completed,
                            "total_exercises": certificate.metadata.total_exercises,
                            "score": certificate.metadata.score,
                        }
                    ),
                ),
            )
            if cursor.rowcount == 0:
                logger.debug(
                    "Certificate already issued for user %s in module %s", certificate.user_id, certificate.module_id
                )
            stored = self.get_certificate(certificate.user_id, certificate.module_id)
        if stored is None:
            raise StoreError(f"Certificate for module '{certificate.module_id}' was not stored.")
        return stored

    def list_certificates(self, user_id: str) -> list[ModuleCertificate]:
        """Return certificates for a learner in issue order."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM certificates WHERE user_id = ? ORDER BY issued_at, rowid",
                (user_id,),
            ).fetchall()
        return [_certificate_from_row(row) for row in rows]

    # Bookmarks

    def insert_bookmark(self, bookmark: ModuleBookmark) -> None:
        with self.transaction():
            self._conn.execute(
                """
                INSERT INTO bookmarks (id, user_id, module_id, section_id, content_id, title, note, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    bookmark.id,
                    bookmark.user_id,
                    bookmark.module_id,
                    bookmark.section_id,
                    bookmark.content_id,
                    bookmark.title,
                    bookmark.note,
                    bookmark.created_at,
                ),
            )

    def delete_bookmark(self, bookmark_id: str) -> bool:
        with self.transaction():
            cursor = self._conn.execute("DELETE FROM bookmarks WHERE id = ?", (bookmark_id,))
        return cursor.rowcount > 0

    def list_bookmarks(self, user_id: str, module_id: str | None = None) -> list[ModuleBookmark]:
        """Return bookmarks newest first; unreadable rows read as an empty collection."""
        query = "SELECT * FROM bookmarks WHERE user_id = ?"
        params: list[str] = [user_id]
        if module_id:
            query += " AND module_id = ?"
            params.append(module_id)
        query += " ORDER BY created_at DESC, rowid DESC"
        try:
            with self._lock:
                rows = self._conn.execute(query, params).fetchall()
            return [
                ModuleBookmark(
                    id=str(row["id"]),
                    user_id=str(row["user_id"]),
                    module_id=str(row["module_id"]),
                    section_id=str(row["section_id"]),
                    content_id=row["content_id"],
                    title=str(row["title"]),
                    note=row["note"],
                    created_at=str(row["created_at"]),
                )
                for row in rows
            ]
        except sqlite3.Error:
            logger.exception("Could not read bookmarks for user %s", user_id)
            return []

    # Notes

    def insert_note(self, note: ModuleNote) -> None:
        with self.transaction():
            self._conn.execute(
                """
                INSERT INTO notes (
                    id,
                    user_id,
                    module_id,
                    section_id,
                    exercise_id,
                    content,
                    is_private,
                    tags,
                    created_at,
                    updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    note.id,
                    note.user_id,
                    note.module_id,
                    note.section_id,
                    note.exercise_id,
                    note.content,
                    int(note.is_private),
                    json.dumps(list(note.tags)),
                    note.created_at,
                    note.updated_at,
                ),
            )

    def get_note(self, note_id: str) -> ModuleNote | None:
        with self._lock:
            row = self._conn.execute("SELECT * FROM notes WHERE id = ?", (note_id,)).fetchone()
        if row is None:
            return None
        return _note_from_row(row)

    def update_note(self, note: ModuleNote) -> bool:
        with self.transaction():
            cursor = self._conn.execute(
                "UPDATE notes SET content = ?, tags = ?, updated_at = ? WHERE id = ?",
                (note.content, json.dumps(list(note.tags)), note.updated_at, note.id),
            )
        return cursor.rowcount > 0

    def delete_note(self, note_id: str) -> bool:
        with self.transaction():
            cursor = self._conn.execute("DELETE FROM notes WHERE id = ?", (note_id,))
        return cursor.rowcount > 0

    def list_notes(self, user_id: str, module_id: str | None = None) -> list[ModuleNote]:
        """Return notes newest first; unreadable rows read as an empty collection."""
        query = "SELECT * FROM notes WHERE user_id = ?"
        params: list[str] = [user_id]
        if module_id:
            query += " AND module_id = ?"
            params.append(module_id)
        query += " ORDER BY created_at DESC, rowid DESC"
        try:
            with self._lock:
                rows = self._conn.execute(query, params).fetchall()
            return [_note_from_row(row) for row in rows]
        except (sqlite3.Error, ValueError):
            logger.exception("Could not read notes for user %s", user_id)
            return []

    # Resource downloads

    def record_resource_download(self, user_id: str, resource_id: str) -> None:
        with self.transaction():
            self._conn.execute(
                "INSERT INTO resource_downloads (user_id, resource_id, downloaded_at) VALUES (?, ?, ?)",
                (user_id, resource_id, _now()),
            )

    def list_resource_downloads(self, user_id: str) -> list[ResourceDownload]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT user_id, resource_id, downloaded_at FROM resource_downloads WHERE user_id = ? ORDER BY id",
                (user_id,),
            ).fetchall()
        return [
            ResourceDownload(
                user_id=str(row["user_id"]),
                resource_id=str(row["resource_id"]),
                downloaded_at=str(row["downloaded_at"]),
            )
            for row in rows
        ]

    def close(self) -> None:
        """Close db connection."""
        self._conn.close()

    def __del__(self) -> None:  # pragma: no cover
        """Best-effort connection cleanup."""
        try:
            self.close()
        except Exception:
            pass


def _certificate_from_row(row: sqlite3.Row) -> ModuleCertificate:
    raw = json.loads(row["metadata"])
    score = raw.get("score")
    return ModuleCertificate(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        module_id=str(row["module_id"]),
        certificate_number=str(row["certificate_number"]),
        issued_at=str(row["issued_at"]),
        valid_until=row["valid_until"],
        download_url=str(row["download_url"]),
        metadata=CertificateMetadata(
            completion_time=int(raw.get("completion_time", 0)),
            exercises_completed=int(raw.get("exercises_completed", 0)),
            total_exercises=int(raw.get("total_exercises", 0)),
            score=int(score) if score is not None else None,
        ),
    )


def _note_from_row(row: sqlite3.Row) -> ModuleNote:
    tags = json.loads(row["tags"])
    if not isinstance(tags, list):
        raise ValueError(f"Note '{row['id']}' has malformed tags.")
    return ModuleNote(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        module_id=str(row["module_id"]),
        section_id=row["section_id"],
        exercise_id=row["exercise_id"],
        content=str(row["content"]),
        is_private=bool(row["is_private"]),
        tags=tuple(str(tag) for tag in tags),
        created_at=str(row["created_at"]),
        updated_at=str(row["updated_at"]),
    )


def _now() -> str:
    return datetime.now(UTC).isoformat()
