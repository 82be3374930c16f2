"""Application service for module progress, exercise scoring, certificates, and annotations."""

from __future__ import annotations

import logging
import math
import random
import string
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from .catalog import ModuleCatalog
from .errors import (
    CertificateNotAvailableError,
    ConcurrentUpdateError,
    NoteNotFoundError,
    StoreError,
    UnknownSectionError,
)
from .models import Module
from .progress import (
    STATUS_COMPLETED,
    STATUS_IN_PROGRESS,
    STATUS_NOT_STARTED,
    CertificateMetadata,
    ExerciseSubmission,
    ModuleBookmark,
    ModuleCertificate,
    ModuleNote,
    ModuleProgress,
    ProgressStore,
)
from .scoring import FEEDBACK_BANDS, Scorer, feedback_for_score, score_responses

logger = logging.getLogger(__name__)

CERTIFICATE_PREFIX = "WC"
_CERTIFICATE_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits

ProgressChange = Callable[[ModuleProgress, str], ModuleProgress | None]


@dataclass(frozen=True)
class ModuleState:
    """Module listing row for one learner."""

    module: Module
    unlocked: bool
    status: str
    progress_percentage: float


@dataclass(frozen=True)
class ModuleAnalytics:
    """Per-module exercise summary."""

    module_id: str
    module_title: str
    completed_exercises: int
    total_exercises: int
    average_score: int


@dataclass(frozen=True)
class ExerciseAnalytics:
    """Exercise activity summary across all modules."""

    total_submissions: int
    average_score: int
    total_time_spent: int
    completed_exercises: int
    total_exercises: int
    modules: tuple[ModuleAnalytics, ...]


class TrainingService:
    """Coordinates the module catalog with stored learner progress."""

    def __init__(
        self,
        db_path: Path | str,
        catalog: ModuleCatalog | None = None,
        *,
        scorers: Mapping[str, Scorer] | None = None,
        feedback_bands: Sequence[tuple[int, str]] = FEEDBACK_BANDS,
        max_update_attempts: int = 3,
    ) -> None:
        """Initialize service with database path and module catalog."""
        self.catalog = catalog if catalog is not None else ModuleCatalog.bundled()
        self.progress = ProgressStore(db_path)
        self._scorers = scorers
        self._feedback_bands = tuple(feedback_bands)
        self._max_update_attempts = max(1, max_update_attempts)

    # Catalog

    def get_modules(self) -> list[Module]:
        """Return modules in catalog order."""
        return self.catalog.get_modules()

    def get_module_by_id(self, module_id: str) -> Module | None:
        """Get module by id."""
        return self.catalog.get_module_by_id(module_id)

    def list_module_states(self, user_id: str) -> list[ModuleState]:
        """Return every module with the learner's status and unlock state."""
        by_module = {record.module_id: record for record in self.get_all_progress(user_id)}
        completed = {module_id for module_id, record in by_module.items() if record.status == STATUS_COMPLETED}
        states: list[ModuleState] = []
        for module in self.catalog.get_modules():
            record = by_module.get(module.id)
            status = record.status if record is not None else STATUS_NOT_STARTED
            prerequisites_met = all(dep in completed for dep in module.prerequisites)
            # Started modules stay open even if prerequisites change later.
            unlocked = prerequisites_met or status != STATUS_NOT_STARTED
            states.append(
                ModuleState(
                    module=module,
                    unlocked=unlocked,
                    status=status,
                    progress_percentage=record.progress_percentage if record is not None else 0.0,
                )
            )
        return states

    # Progress tracking

    def start_module(self, user_id: str, module_id: str) -> ModuleProgress:
        """Create or resume the learner's progress record for a module."""
        module = self.catalog.require_module(module_id)

        def touch(record: ModuleProgress, now: str) -> ModuleProgress:
            return replace(record, last_accessed_at=now)

        record = self._change_progress(user_id, module, touch)
        return self._with_percentage(record, module)

    def complete_section(self, user_id: str, module_id: str, section_id: str) -> ModuleProgress:
        """Mark one section complete and finish the module when every section is done."""
        module = self.catalog.require_module(module_id)
        if section_id not in module.section_ids():
            raise UnknownSectionError(module_id, section_id)

        def add_section(record: ModuleProgress, now: str) -> ModuleProgress | None:
            if section_id in record.completed_sections:
                return None
            sections = record.completed_sections + (section_id,)
            updated = replace(
                record,
                completed_sections=sections,
                last_accessed_at=now,
                progress_percentage=_percentage(module, sections),
            )
            return _complete_if_finished(updated, module, now)

        record = self._change_progress(user_id, module, add_section)
        return self._with_percentage(record, module)

    def complete_exercise(
        self, user_id: str, module_id: str, exercise_id: str, submission: ExerciseSubmission
    ) -> ModuleProgress:
        """Record an exercise as done and add the submission's time.

        Section completion is a separate signal; this never completes a section.
        """
        module = self.catalog.require_module(module_id)
        seconds = max(0, submission.time_spent)

        def add_exercise(record: ModuleProgress, now: str) -> ModuleProgress:
            exercises = record.completed_exercises
            if exercise_id not in exercises:
                exercises = exercises + (exercise_id,)
            return replace(
                record,
                completed_exercises=exercises,
                time_spent=record.time_spent + seconds,
                last_accessed_at=now,
            )

        record = self._change_progress(user_id, module, add_exercise)
        return self._with_percentage(record, module)

    def get_progress(self, user_id: str, module_id: str) -> ModuleProgress | None:
        """Return the learner's progress for one module, recomputed against the catalog."""
        record = self.progress.get_progress(user_id, module_id)
        if record is None:
            return None
        return self._present(record)

    def get_all_progress(self, user_id: str) -> list[ModuleProgress]:
        """Return all of the learner's progress records, recomputed against the catalog."""
        return [self._present(record) for record in self.progress.list_progress(user_id)]

    def is_exercise_completed(self, user_id: str, module_id: str, exercise_id: str) -> bool:
        record = self.progress.get_progress(user_id, module_id)
        return record is not None and exercise_id in record.completed_exercises

    def get_completed_modules_count(self, user_id: str) -> int:
        return sum(1 for record in self.get_all_progress(user_id) if record.status == STATUS_COMPLETED)

    def _present(self, record: ModuleProgress) -> ModuleProgress:
        """Recompute derived fields and attach the learner's annotations."""
        module = self.catalog.get_module_by_id(record.module_id)
        if module is None:
            logger.warning(
                "Progress %s references module %s which is not in the catalog", record.id, record.module_id
            )
        else:
            record = self._with_percentage(record, module)
            if _needs_completion(record, module):
                logger.warning(
                    "Healing progress %s: status %s, completed_at %s", record.id, record.status, record.completed_at
                )
                record = self._with_percentage(
                    self._change_progress(
                        record.user_id, module, lambda current, now: _complete_if_finished(current, module, now)
                    ),
                    module,
                )
        return replace(
            record,
            bookmarks=tuple(self.progress.list_bookmarks(record.user_id, record.module_id)),
            notes=tuple(self.progress.list_notes(record.user_id, record.module_id)),
        )

    def _with_percentage(self, record: ModuleProgress, module: Module) -> ModuleProgress:
        return replace(record, progress_percentage=_percentage(module, record.completed_sections))

    def _change_progress(self, user_id: str, module: Module, change: ProgressChange) -> ModuleProgress:
        """Apply one read-modify-write to a progress record inside a transaction.

        A missing record is created in progress first; a not-started record is
        moved to in progress. ``change`` returns None when nothing needs writing.
        """
        for attempt in range(1, self._max_update_attempts + 1):
            try:
                with self.progress.transaction():
                    now = _now()
                    record = self.progress.get_progress(user_id, module.id)
                    if record is None:
                        record = ModuleProgress(
                            id=_generate_id("progress"),
                            user_id=user_id,
                            module_id=module.id,
                            status=STATUS_IN_PROGRESS,
                            started_at=now,
                            last_accessed_at=now,
                        )
                        record = self.progress.insert_progress(record)
                        logger.info("User %s started module %s", user_id, module.id)
                    elif record.status == STATUS_NOT_STARTED:
                        record = replace(record, status=STATUS_IN_PROGRESS, started_at=now, last_accessed_at=now)
                        record = self.progress.update_progress(record)
                        logger.info("User %s started module %s", user_id, module.id)

                    updated = change(record, now)
                    if updated is None or updated == record:
                        return record
                    return self.progress.update_progress(updated)
            except ConcurrentUpdateError:
                if attempt >= self._max_update_attempts:
                    raise
                logger.warning(
                    "Progress for user %s in module %s changed during update; retrying (%d/%d)",
                    user_id,
                    module.id,
                    attempt,
                    self._max_update_attempts,
                )
        raise StoreError(f"Could not update progress for module '{module.id}'.")  # pragma: no cover

    # Exercises

    def submit_exercise(
        self,
        user_id: str,
        module_id: str,
        exercise_id: str,
        responses: Mapping[str, Any],
        section_id: str | None = None,
    ) -> ExerciseSubmission:
        """Score, store, and count one exercise submission."""
        module = self.catalog.require_module(module_id)
        exercise = self.catalog.find_exercise(module, exercise_id)
        if not section_id:
            section = self.catalog.find_section_for_exercise(module, exercise_id)
            section_id = section.id if section is not None else ""
        if exercise is None:
            logger.warning("Exercise %s is not part of module %s; scoring generically", exercise_id, module_id)

        score = score_responses(responses, exercise, self._scorers)
        submission = ExerciseSubmission(
            id=_generate_id("submission"),
            user_id=user_id,
            exercise_id=exercise_id,
            module_id=module_id,
            section_id=section_id,
            responses=dict(responses),
            is_complete=True,
            submitted_at=_now(),
            time_spent=_response_seconds(responses),
            score=score,
            feedback=feedback_for_score(score, self._feedback_bands),
        )
        with self.progress.transaction():
            self.progress.insert_submission(submission)
            self.complete_exercise(user_id, module_id, exercise_id, submission)
        logger.debug("User %s submitted %s in %s with score %d", user_id, exercise_id, module_id, score)
        return submission

    def get_exercise_submissions(
        self, user_id: str, module_id: str | None = None, exercise_id: str | None = None
    ) -> list[ExerciseSubmission]:
        """Return the learner's submissions, newest first."""
        return self.progress.list_submissions(user_id, module_id, exercise_id)

    def exercise_analytics(self, user_id: str) -> ExerciseAnalytics:
        """Summarize submissions and exercise coverage for a learner."""
        submissions = self.progress.list_submissions(user_id)
        module_rows: list[ModuleAnalytics] = []
        for module in self.catalog.get_modules():
            module_submissions = [item for item in submissions if item.module_id == module.id]
            exercise_ids = set(module.exercise_ids())
            completed = {item.exercise_id for item in module_submissions if item.exercise_id in exercise_ids}
            module_rows.append(
                ModuleAnalytics(
                    module_id=module.id,
                    module_title=module.title,
                    completed_exercises=len(completed),
                    total_exercises=module.total_exercises,
                    average_score=_average([item.score for item in module_submissions]) or 0,
                )
            )
        return ExerciseAnalytics(
            total_submissions=len(submissions),
            average_score=_average([item.score for item in submissions]) or 0,
            total_time_spent=sum(item.time_spent for item in submissions),
            completed_exercises=sum(row.completed_exercises for row in module_rows),
            total_exercises=sum(row.total_exercises for row in module_rows),
            modules=tuple(module_rows),
        )

    # Certificates

    def generate_certificate(self, user_id: str, module_id: str) -> ModuleCertificate:
        """Issue the completion certificate for a module, or return the one already issued."""
        module = self.catalog.get_module_by_id(module_id)
        record = self.get_progress(user_id, module_id) if module is not None else None
        if module is None or record is None or record.status != STATUS_COMPLETED:
            raise CertificateNotAvailableError(user_id, module_id)

        existing = self.progress.get_certificate(user_id, module_id)
        if existing is not None:
            return existing

        certificate = ModuleCertificate(
            id=_generate_id("cert"),
            user_id=user_id,
            module_id=module_id,
            certificate_number=_certificate_number(),
            issued_at=_now(),
            download_url=f"#certificate/{user_id}/{module_id}",
            metadata=CertificateMetadata(
                completion_time=record.time_spent,
                exercises_completed=len(set(record.completed_exercises) & set(module.exercise_ids())),
                total_exercises=module.total_exercises,
                score=self._latest_average_score(user_id, module),
            ),
        )
        stored = self.progress.insert_certificate(certificate)
        if stored.id == certificate.id:
            logger.info("Issued certificate %s to user %s for %s", stored.certificate_number, user_id, module_id)
        return stored

    def get_user_certificates(self, user_id: str) -> list[ModuleCertificate]:
        return self.progress.list_certificates(user_id)

    def _latest_average_score(self, user_id: str, module: Module) -> int | None:
        exercise_ids = set(module.exercise_ids())
        latest: dict[str, int] = {}
        for submission in self.progress.list_submissions(user_id, module.id):
            if submission.exercise_id not in exercise_ids:
                continue
            # Newest first, so the first score seen per exercise wins.
            latest.setdefault(submission.exercise_id, submission.score)
        return _average(list(latest.values()))

    # Bookmarks and notes

    def add_bookmark(
        self,
        user_id: str,
        module_id: str,
        section_id: str,
        title: str,
        content_id: str | None = None,
        note: str | None = None,
    ) -> ModuleBookmark:
        """Bookmark a section or one content item in it."""
        self.catalog.require_module(module_id)
        bookmark = ModuleBookmark(
            id=_generate_id("bookmark"),
            user_id=user_id,
            module_id=module_id,
            section_id=section_id,
            content_id=content_id,
            title=title.strip(),
            note=note,
            created_at=_now(),
        )
        self.progress.insert_bookmark(bookmark)
        return bookmark

    def remove_bookmark(self, bookmark_id: str) -> bool:
        return self.progress.delete_bookmark(bookmark_id)

    def get_user_bookmarks(self, user_id: str, module_id: str | None = None) -> list[ModuleBookmark]:
        return self.progress.list_bookmarks(user_id, module_id)

    def add_note(
        self,
        user_id: str,
        module_id: str,
        content: str,
        section_id: str | None = None,
        exercise_id: str | None = None,
        is_private: bool = True,
        tags: Sequence[str] = (),
    ) -> ModuleNote:
        """Attach a note to a module, optionally scoped to a section or exercise."""
        self.catalog.require_module(module_id)
        now = _now()
        note = ModuleNote(
            id=_generate_id("note"),
            user_id=user_id,
            module_id=module_id,
            section_id=section_id,
            exercise_id=exercise_id,
            content=content,
            is_private=is_private,
            tags=_clean_tags(tags),
            created_at=now,
            updated_at=now,
        )
        self.progress.insert_note(note)
        return note

    def update_note(self, note_id: str, content: str, tags: Sequence[str] | None = None) -> ModuleNote:
        """Replace a note's text (and tags when given)."""
        note = self.progress.get_note(note_id)
        if note is None:
            raise NoteNotFoundError(note_id)
        updated = replace(
            note,
            content=content,
            tags=_clean_tags(tags) if tags is not None else note.tags,
            updated_at=_now(),
        )
        if not self.progress.update_note(updated):
            raise NoteNotFoundError(note_id)
        return updated

    def delete_note(self, note_id: str) -> bool:
        return self.progress.delete_note(note_id)

    def get_user_notes(self, user_id: str, module_id: str | None = None) -> list[ModuleNote]:
        return self.progress.list_notes(user_id, module_id)

    def track_resource_download(self, user_id: str, resource_id: str) -> None:
        """Record a resource download; failures are logged and ignored."""
        try:
            self.progress.record_resource_download(user_id, resource_id)
        except StoreError:
            logger.exception("Could not track download of %s for user %s", resource_id, user_id)

    def close(self) -> None:
        """Close resources."""
        self.progress.close()

    def __del__(self) -> None:  # pragma: no cover
        """Best-effort cleanup for test/process teardown."""
        try:
            self.close()
        except Exception:
            pass


def _percentage(module: Module, completed_sections: Sequence[str]) -> float:
    """Share of the module's sections that are complete, capped at 100."""
    total = module.total_sections
    if total == 0:
        return 0.0
    done = len(set(completed_sections) & set(module.section_ids()))
    return min(100.0, done / total * 100)


def _all_sections_done(module: Module, completed_sections: Sequence[str]) -> bool:
    return module.total_sections > 0 and set(module.section_ids()).issubset(completed_sections)


def _needs_completion(record: ModuleProgress, module: Module) -> bool:
    if record.status == STATUS_COMPLETED:
        return record.completed_at is None
    return _all_sections_done(module, record.completed_sections)


def _complete_if_finished(record: ModuleProgress, module: Module, now: str) -> ModuleProgress:
    """Move a record to completed once every section is done; completed_at is set once."""
    if record.status == STATUS_COMPLETED:
        if record.completed_at is None:
            return replace(record, completed_at=now)
        return record
    if not _all_sections_done(module, record.completed_sections):
        return record
    logger.info("User %s completed module %s", record.user_id, record.module_id)
    return replace(
        record,
        status=STATUS_COMPLETED,
        completed_at=record.completed_at or now,
        progress_percentage=100.0,
    )


def _response_seconds(responses: Mapping[str, Any]) -> int:
    raw = responses.get("timeSpent", responses.get("time_spent", 0))
    seconds = _coerce_int(raw, default=0) or 0
    return max(0, seconds)


def _average(values: Sequence[int]) -> int | None:
    if not values:
        return None
    return int(math.floor(sum(values) / len(values) + 0.5))


def _clean_tags(tags: Sequence[str]) -> tuple[str, ...]:
    cleaned: list[str] = []
    for tag in tags:
        value = str(tag).strip()
        if value and value not in cleaned:
            cleaned.append(value)
    return tuple(cleaned)


def _generate_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex}"


def _certificate_number() -> str:
    suffix = "".join(random.choices(_CERTIFICATE_SUFFIX_ALPHABET, k=6))
    return f"{CERTIFICATE_PREFIX}-{int(time.time() * 1000)}-{suffix}"


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _coerce_int(value: object, default: int | None = None) -> int | None:
    """Coerce a loosely typed response value to int."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(float(value))
        except ValueError:
            return default
    return default
