from pathlib import Path
from typing import Any

import wellcoach.main as main
from wellcoach.catalog import ModuleCatalog
from wellcoach.errors import CertificateNotAvailableError
from wellcoach.progress import (
    STATUS_COMPLETED,
    STATUS_IN_PROGRESS,
    STATUS_NOT_STARTED,
    CertificateMetadata,
    ExerciseSubmission,
    ModuleCertificate,
    ModuleNote,
    ModuleProgress,
)
from wellcoach.service import ExerciseAnalytics, ModuleAnalytics, ModuleState

NOW = "2024-05-01T10:00:00+00:00"


class DummyService:
    def __init__(self) -> None:
        self.closed = False
        self.catalog = ModuleCatalog.bundled()
        self.statuses: dict[str, str] = {}
        self.sections: dict[str, list[str]] = {}
        self.submitted: list[tuple[str, str, dict[str, Any]]] = []
        self.certificates: list[ModuleCertificate] = []
        self.notes: list[ModuleNote] = []
        self.bookmarks: list[tuple[str, str, str]] = []

    def close(self) -> None:
        self.closed = True

    def get_modules(self) -> list[Any]:
        return self.catalog.get_modules()

    def get_module_by_id(self, module_id: str) -> Any:
        return self.catalog.get_module_by_id(module_id)

    def list_module_states(self, user_id: str) -> list[ModuleState]:
        states = []
        for module in self.catalog.get_modules():
            status = self.statuses.get(module.id, STATUS_NOT_STARTED)
            unlocked = module.number == 1 or status != STATUS_NOT_STARTED
            states.append(ModuleState(module=module, unlocked=unlocked, status=status, progress_percentage=0.0))
        return states

    def _record(self, user_id: str, module_id: str) -> ModuleProgress:
        return ModuleProgress(
            id=f"progress_{module_id}",
            user_id=user_id,
            module_id=module_id,
            status=self.statuses.get(module_id, STATUS_IN_PROGRESS),
            last_accessed_at=NOW,
            started_at=NOW,
            completed_sections=tuple(self.sections.get(module_id, [])),
            progress_percentage=100.0 * len(self.sections.get(module_id, [])) / 3,
        )

    def start_module(self, user_id: str, module_id: str) -> ModuleProgress:
        self.statuses.setdefault(module_id, STATUS_IN_PROGRESS)
        return self._record(user_id, module_id)

    def complete_section(self, user_id: str, module_id: str, section_id: str) -> ModuleProgress:
        done = self.sections.setdefault(module_id, [])
        if section_id not in done:
            done.append(section_id)
        if len(done) == 3:
            self.statuses[module_id] = STATUS_COMPLETED
        return self._record(user_id, module_id)

    def submit_exercise(
        self, user_id: str, module_id: str, exercise_id: str, responses: dict[str, Any], section_id: str | None = None
    ) -> ExerciseSubmission:
        self.submitted.append((module_id, exercise_id, responses))
        return ExerciseSubmission(
            id="submission_1",
            user_id=user_id,
            exercise_id=exercise_id,
            module_id=module_id,
            section_id=section_id or "",
            responses=responses,
            is_complete=True,
            submitted_at=NOW,
            time_spent=0,
            score=100,
            feedback="Excellent work!",
        )

    def get_user_certificates(self, user_id: str) -> list[ModuleCertificate]:
        return list(self.certificates)

    def generate_certificate(self, user_id: str, module_id: str) -> ModuleCertificate:
        if self.statuses.get(module_id) != STATUS_COMPLETED:
            raise CertificateNotAvailableError(user_id, module_id)
        certificate = ModuleCertificate(
            id="cert_1",
            user_id=user_id,
            module_id=module_id,
            certificate_number="WC-1714557600000-ABC123",
            issued_at=NOW,
            download_url=f"#certificate/{user_id}/{module_id}",
            metadata=CertificateMetadata(completion_time=0, exercises_completed=0, total_exercises=2),
        )
        self.certificates.append(certificate)
        return certificate

    def get_user_bookmarks(self, user_id: str) -> list[Any]:
        return []

    def add_bookmark(
        self, user_id: str, module_id: str, section_id: str, title: str, note: str | None = None
    ) -> None:
        self.bookmarks.append((module_id, section_id, title))

    def get_user_notes(self, user_id: str) -> list[ModuleNote]:
        return list(self.notes)

    def add_note(self, user_id: str, module_id: str, content: str, tags: list[str]) -> ModuleNote:
        note = ModuleNote(
            id=f"note_{len(self.notes) + 1}",
            user_id=user_id,
            module_id=module_id,
            content=content,
            is_private=True,
            tags=tuple(tag.strip() for tag in tags),
            created_at=NOW,
            updated_at=NOW,
        )
        self.notes.append(note)
        return note

    def delete_note(self, note_id: str) -> bool:
        before = len(self.notes)
        self.notes = [note for note in self.notes if note.id != note_id]
        return len(self.notes) < before

    def exercise_analytics(self, user_id: str) -> ExerciseAnalytics:
        return ExerciseAnalytics(
            total_submissions=2,
            average_score=75,
            total_time_spent=600,
            completed_exercises=2,
            total_exercises=23,
            modules=(ModuleAnalytics("module_1", "Intro", 2, 2, 75),),
        )


def _shell(monkeypatch: Any, service: DummyService, answers: list[str]) -> tuple[int, list[str]]:
    monkeypatch.setattr(main, "_service", lambda db_path=None: service)
    inputs = iter(answers)
    outputs: list[str] = []
    code = main.play_shell(input_fn=lambda _: next(inputs), print_fn=outputs.append)
    return code, outputs


def test_run_enters_play_shell_with_db_option(monkeypatch: Any) -> None:
    captured: dict[str, Any] = {}
    monkeypatch.setattr(main.logging, "basicConfig", lambda **kwargs: captured.update(logging=kwargs))
    monkeypatch.setattr(main, "play_shell", lambda **kwargs: captured.update(kwargs) or 0)
    assert main.run(["--db", "custom.db", "--log-level", "debug"]) == 0
    assert captured["db_path"] == Path("custom.db")
    assert captured["logging"]["level"] == main.logging.DEBUG


def test_run_reads_log_level_from_environment(monkeypatch: Any) -> None:
    captured: dict[str, Any] = {}
    monkeypatch.setenv(main.LOG_LEVEL_ENV_VAR, "info")
    monkeypatch.setattr(main.logging, "basicConfig", lambda **kwargs: captured.update(kwargs))
    monkeypatch.setattr(main, "play_shell", lambda **kwargs: 0)
    assert main.run([]) == 0
    assert captured["level"] == main.logging.INFO


def test_unknown_log_level_falls_back_to_warning(monkeypatch: Any) -> None:
    captured: dict[str, Any] = {}
    monkeypatch.delenv(main.LOG_LEVEL_ENV_VAR, raising=False)
    monkeypatch.setattr(main.logging, "basicConfig", lambda **kwargs: captured.update(kwargs))
    main._configure_logging("chatty")
    assert captured["level"] == main.logging.WARNING


def test_default_db_path_uses_environment(monkeypatch: Any) -> None:
    monkeypatch.setenv(main.DB_ENV_VAR, "/data/learners.db")
    assert main._default_db_path() == Path("/data/learners.db")
    monkeypatch.delenv(main.DB_ENV_VAR)
    assert main._default_db_path() == Path(".wellcoach") / "progress.db"


def test_play_shell_basic_flow(monkeypatch: Any) -> None:
    service = DummyService()
    code, outputs = _shell(monkeypatch, service, ["alice", "q"])
    assert code == 0
    assert service.closed is True
    assert any("Learner: alice" in line for line in outputs)


def test_play_shell_requires_learner_id(monkeypatch: Any) -> None:
    service = DummyService()
    code, outputs = _shell(monkeypatch, service, ["  ", "q"])
    assert code == 0
    assert any("Learner id is required." in line for line in outputs)
    assert service.closed is True


def test_play_shell_invalid_choice_then_quit(monkeypatch: Any) -> None:
    code, outputs = _shell(monkeypatch, DummyService(), ["alice", "9", "q"])
    assert code == 0
    assert any("Invalid choice." in line for line in outputs)


def test_play_shell_switch_learner(monkeypatch: Any) -> None:
    code, outputs = _shell(monkeypatch, DummyService(), ["alice", "b", "bob", "q"])
    assert code == 0
    assert any("Learner: bob" in line for line in outputs)


def test_play_shell_calls_menu_handlers(monkeypatch: Any) -> None:
    called = {"modules": 0, "continue": 0, "certificates": 0, "annotations": 0, "analytics": 0}
    monkeypatch.setattr(main, "_modules_flow", lambda *args: called.__setitem__("modules", 1))
    monkeypatch.setattr(main, "_continue_module_flow", lambda *args: called.__setitem__("continue", 1))
    monkeypatch.setattr(main, "_certificates_flow", lambda *args: called.__setitem__("certificates", 1))
    monkeypatch.setattr(main, "_annotations_flow", lambda *args: called.__setitem__("annotations", 1))
    monkeypatch.setattr(main, "_analytics_flow", lambda *args: called.__setitem__("analytics", 1))

    code, _ = _shell(monkeypatch, DummyService(), ["alice", "1", "2", "3", "4", "5", "q"])
    assert code == 0
    assert called == {"modules": 1, "continue": 1, "certificates": 1, "annotations": 1, "analytics": 1}


def test_quit_from_nested_menu_closes_service(monkeypatch: Any) -> None:
    service = DummyService()
    code, _ = _shell(monkeypatch, service, ["alice", "2", "q"])
    assert code == 0
    assert service.closed is True


def test_modules_flow_prints_status_table() -> None:
    service = DummyService()
    service.statuses["module_1"] = STATUS_IN_PROGRESS
    outputs: list[str] = []
    main._modules_flow(service, "alice", outputs.append)  # type: ignore[arg-type]
    assert any(line.startswith("#") and "Progress" in line for line in outputs)
    assert any("in_progress" in line and "unlocked" in line for line in outputs)
    assert any("locked" in line and "not_started" in line for line in outputs)


def test_continue_module_walks_sections_to_completion() -> None:
    service = DummyService()
    outputs: list[str] = []
    inputs = iter(["1", "My wheel is lopsided", "", "", ":s", ""])
    main._continue_module_flow(service, "alice", lambda _: next(inputs), outputs.append)  # type: ignore[arg-type]

    assert service.submitted == [("module_1", "exercise_1_1_1", {"response": "My wheel is lopsided"})]
    assert service.sections["module_1"] == ["section_1_1", "section_1_2", "section_1_3"]
    assert any("Skipped." in line for line in outputs)
    assert any("Module completed." in line for line in outputs)


def test_continue_module_leave_during_exercise() -> None:
    service = DummyService()
    outputs: list[str] = []
    inputs = iter(["1", ":back"])
    main._continue_module_flow(service, "alice", lambda _: next(inputs), outputs.append)  # type: ignore[arg-type]
    assert any("Leaving module. Progress saved." in line for line in outputs)
    assert service.submitted == []
    assert "module_1" not in service.sections


def test_continue_module_skips_completed_sections() -> None:
    service = DummyService()
    service.statuses["module_1"] = STATUS_IN_PROGRESS
    service.sections["module_1"] = ["section_1_1", "section_1_2"]
    outputs: list[str] = []
    inputs = iter(["1", "Rest more", ""])
    main._continue_module_flow(service, "alice", lambda _: next(inputs), outputs.append)  # type: ignore[arg-type]
    assert service.submitted == [("module_1", "exercise_1_3_1", {"response": "Rest more"})]
    assert any("Module completed." in line for line in outputs)


def test_continue_module_invalid_choice() -> None:
    outputs: list[str] = []
    main._continue_module_flow(DummyService(), "alice", lambda _: "x", outputs.append)  # type: ignore[arg-type]
    assert any("Invalid choice." in line for line in outputs)


def test_continue_module_nothing_available() -> None:
    service = DummyService()
    for module in service.get_modules():
        service.statuses[module.id] = STATUS_COMPLETED
    outputs: list[str] = []
    main._continue_module_flow(service, "alice", lambda _: "1", outputs.append)  # type: ignore[arg-type]
    assert outputs == ["No modules to continue."]


def test_certificates_flow_issues_for_completed_module() -> None:
    service = DummyService()
    service.statuses["module_1"] = STATUS_COMPLETED
    outputs: list[str] = []
    main._certificates_flow(service, "alice", lambda _: "1", outputs.append)  # type: ignore[arg-type]
    assert any("No certificates yet." in line for line in outputs)
    assert any("Issued certificate WC-1714557600000-ABC123" in line for line in outputs)

    outputs.clear()
    main._certificates_flow(service, "alice", lambda _: "1", outputs.append)  # type: ignore[arg-type]
    assert any("WC-1714557600000-ABC123" in line for line in outputs)
    assert not any("without a certificate" in line for line in outputs)


def test_annotations_flow_adds_lists_and_deletes_notes() -> None:
    service = DummyService()
    outputs: list[str] = []
    inputs = iter(["4", "1", "Focus on sleep", "sleep, rest", "3", "5", "note_1", "5", "note_1", "b"])
    main._annotations_flow(service, "alice", lambda _: next(inputs), outputs.append)  # type: ignore[arg-type]
    assert any("Note saved (note_1)." in line for line in outputs)
    assert any("Focus on sleep #sleep #rest" in line for line in outputs)
    assert any("Note deleted." in line for line in outputs)
    assert any("Note was not found." in line for line in outputs)
    assert service.notes == []


def test_annotations_flow_adds_bookmark_with_section_title() -> None:
    service = DummyService()
    outputs: list[str] = []
    inputs = iter(["2", "1", "2", "", "", "1", "b"])
    main._annotations_flow(service, "alice", lambda _: next(inputs), outputs.append)  # type: ignore[arg-type]
    section = service.catalog.require_module("module_1").sections[1]
    assert service.bookmarks == [("module_1", section.id, section.title)]
    assert any("Bookmark saved." in line for line in outputs)
    assert any("No bookmarks yet." in line for line in outputs)


def test_annotations_flow_quit() -> None:
    try:
        main._annotations_flow(DummyService(), "alice", lambda _: "q", lambda _: None)  # type: ignore[arg-type]
        raise AssertionError("Expected QuitApp.")
    except main.QuitApp:
        pass


def test_analytics_flow_prints_summary() -> None:
    outputs: list[str] = []
    main._analytics_flow(DummyService(), "alice", outputs.append)  # type: ignore[arg-type]
    assert "- Submissions: 2" in outputs
    assert "- Average score: 75" in outputs
    assert "- Time spent: 10 min" in outputs
    assert "- Exercises completed: 2/23" in outputs
    assert any(line.startswith("Intro") and "2/2" in line for line in outputs)
