"""CLI entrypoint for the wellness coaching training tracker."""

from __future__ import annotations

import argparse
import logging
import os
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from .errors import NotFoundError, TrainingError
from .models import Exercise, Module, Section
from .progress import STATUS_COMPLETED, ModuleProgress
from .service import TrainingService

InputFn = Callable[[str], str]
PrintFn = Callable[[str], None]
BACK_COMMANDS = {":back", ":b", "back"}
FLOW_EXIT_COMMANDS = {":quit", ":exit", ":q"}
SKIP_COMMANDS = {":skip", ":s"}
MENU_QUIT_COMMANDS = {"q"}
MENU_BACK_COMMANDS = {"b"}
DB_ENV_VAR = "WELLCOACH_DB"
LOG_LEVEL_ENV_VAR = "WELLCOACH_LOG_LEVEL"
DEFAULT_LOG_LEVEL = "WARNING"

logger = logging.getLogger(__name__)


class QuitApp(Exception):
    """Signal immediate app exit from nested menu flows."""


def _default_db_path() -> Path:
    configured = os.environ.get(DB_ENV_VAR, "").strip()
    if configured:
        return Path(configured)
    return Path(".wellcoach") / "progress.db"


def _service(db_path: Path | None = None) -> TrainingService:
    """Create app service backed by the configured database."""
    target = db_path if db_path is not None else _default_db_path()
    logger.debug("Using progress database %s", target)
    return TrainingService(db_path=target)


def _configure_logging(level_name: str | None) -> None:
    name = (level_name or os.environ.get(LOG_LEVEL_ENV_VAR) or DEFAULT_LOG_LEVEL).strip().upper()
    level = logging.getLevelName(name)
    if not isinstance(level, int):
        level = logging.WARNING
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def run(argv: list[str] | None = None) -> int:
    """Run the CLI application."""
    parser = argparse.ArgumentParser(prog="wellcoach", description="Wellness coaching training tracker")
    parser.add_argument("command", nargs="?", default="play", choices=["play"])
    parser.add_argument("--db", type=Path, default=None, help=f"progress database path (env: {DB_ENV_VAR})")
    parser.add_argument(
        "--log-level",
        default=None,
        help=f"logging level, e.g. DEBUG or INFO (env: {LOG_LEVEL_ENV_VAR}, default {DEFAULT_LOG_LEVEL})",
    )
    args = parser.parse_args(argv)
    _configure_logging(args.log_level)
    return play_shell(db_path=args.db)


def play_shell(input_fn: InputFn = input, print_fn: PrintFn = print, db_path: Path | None = None) -> int:
    """Run persistent menu-driven shell."""
    service = _service(db_path)
    try:
        user_id = _select_learner(input_fn, print_fn)
        if user_id is None:
            return 0
        try:
            while True:
                print_fn("\n=== Wellness Coach Training ===")
                print_fn(f"Learner: {user_id}")
                print_fn("1) Modules")
                print_fn("2) Continue a module")
                print_fn("3) Certificates")
                print_fn("4) Bookmarks & notes")
                print_fn("5) Analytics")
                print_fn("b) Switch learner")
                print_fn("q) Quit")
                choice = input_fn("Choose: ").strip().lower()

                if choice == "1":
                    _modules_flow(service, user_id, print_fn)
                elif choice == "2":
                    _continue_module_flow(service, user_id, input_fn, print_fn)
                elif choice == "3":
                    _certificates_flow(service, user_id, input_fn, print_fn)
                elif choice == "4":
                    _annotations_flow(service, user_id, input_fn, print_fn)
                elif choice == "5":
                    _analytics_flow(service, user_id, print_fn)
                elif choice in MENU_BACK_COMMANDS:
                    switched = _select_learner(input_fn, print_fn)
                    if switched is None:
                        return 0
                    user_id = switched
                elif choice in MENU_QUIT_COMMANDS:
                    return 0
                else:
                    print_fn("Invalid choice.")
        except QuitApp:
            return 0
    finally:
        service.close()


def _select_learner(input_fn: InputFn, print_fn: PrintFn) -> str | None:
    """Ask for the learner id; None means quit."""
    while True:
        print_fn("\n=== Learner ===")
        print_fn("Enter your learner id, or q to quit.")
        choice = input_fn("Learner id: ").strip()
        if choice.lower() in MENU_QUIT_COMMANDS:
            return None
        if choice:
            return choice
        print_fn("Learner id is required.")


def _modules_flow(service: TrainingService, user_id: str, print_fn: PrintFn) -> None:
    """Print every module with the learner's status."""
    print_fn("\n=== Modules ===")
    states = service.list_module_states(user_id)
    if not states:
        print_fn("No modules available.")
        return
    rows: list[tuple[str, str, str, str, str]] = []
    for state in states:
        rows.append(
            (
                str(state.module.number),
                state.module.title,
                "unlocked" if state.unlocked else "locked",
                state.status,
                f"{state.progress_percentage:.1f}%",
            )
        )

    number_width = max(len("#"), max(len(row[0]) for row in rows))
    title_width = max(len("Title"), max(len(row[1]) for row in rows))
    unlock_width = max(len("Unlock"), max(len(row[2]) for row in rows))
    status_width = max(len("Status"), max(len(row[3]) for row in rows))
    header = (
        f"{'#':>{number_width}} "
        f"{'Title':<{title_width}} "
        f"{'Unlock':<{unlock_width}} "
        f"{'Status':<{status_width}} "
        "Progress"
    )
    print_fn(header)
    print_fn("-" * len(header))
    for row in rows:
        print_fn(
            f"{row[0]:>{number_width}} "
            f"{row[1]:<{title_width}} "
            f"{row[2]:<{unlock_width}} "
            f"{row[3]:<{status_width}} "
            f"{row[4]}"
        )


def _choose_module(
    modules: list[Module], input_fn: InputFn, print_fn: PrintFn, prompt: str = "Choose module: "
) -> Module | None:
    """Numbered module picker; None means back or an invalid pick."""
    for idx, module in enumerate(modules, start=1):
        print_fn(f"{idx}) {module.title}")
    print_fn("b) Back")
    print_fn("q) Quit")
    choice = input_fn(prompt).strip().lower()
    if choice in MENU_BACK_COMMANDS:
        return None
    if choice in MENU_QUIT_COMMANDS:
        raise QuitApp()
    if not choice.isdigit():
        print_fn("Invalid choice.")
        return None
    index = int(choice) - 1
    if not (0 <= index < len(modules)):
        print_fn("Invalid choice.")
        return None
    return modules[index]


def _continue_module_flow(service: TrainingService, user_id: str, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Pick an unlocked, unfinished module and work through it."""
    states = [
        state for state in service.list_module_states(user_id) if state.unlocked and state.status != STATUS_COMPLETED
    ]
    if not states:
        print_fn("No modules to continue.")
        return
    print_fn("\n=== Continue a Module ===")
    module = _choose_module([state.module for state in states], input_fn, print_fn)
    if module is None:
        return
    record = service.start_module(user_id, module.id)
    _run_module(service, user_id, module, record, input_fn, print_fn)


def _run_module(
    service: TrainingService,
    user_id: str,
    module: Module,
    record: ModuleProgress,
    input_fn: InputFn,
    print_fn: PrintFn,
) -> None:
    """Walk the learner through each unfinished section."""
    print_fn(f"\nModule {module.number}: {module.title}")
    print_fn(module.description)
    print_fn("Type :b or :q to leave the module. Type :s to skip an exercise.")

    for section in module.sections:
        if section.id in record.completed_sections:
            continue
        if not _run_section(service, user_id, module, section, record, input_fn, print_fn):
            print_fn("Leaving module. Progress saved.")
            return
        record = service.complete_section(user_id, module.id, section.id)
        print_fn(f"Section complete. Module progress: {record.progress_percentage:.1f}%")

    if record.status == STATUS_COMPLETED:
        print_fn("Module completed. Your certificate is available from the Certificates menu.")
    else:
        print_fn("Module progress saved.")


def _run_section(
    service: TrainingService,
    user_id: str,
    module: Module,
    section: Section,
    record: ModuleProgress,
    input_fn: InputFn,
    print_fn: PrintFn,
) -> bool:
    """Show section content and exercises; False means the learner left."""
    print_fn(f"\nSection {section.number}: {section.title}")
    for item in section.content:
        print_fn(f"\n{item.title}")
        print_fn(item.content)

    for exercise in section.exercises:
        if exercise.id in record.completed_exercises:
            continue
        if not _run_exercise(service, user_id, module, exercise, input_fn, print_fn):
            return False

    answer = input_fn("\nPress Enter to mark this section complete: ").strip().lower()
    return answer not in BACK_COMMANDS and answer not in FLOW_EXIT_COMMANDS


def _run_exercise(
    service: TrainingService,
    user_id: str,
    module: Module,
    exercise: Exercise,
    input_fn: InputFn,
    print_fn: PrintFn,
) -> bool:
    """Collect a free-text response for one exercise and show its feedback."""
    print_fn(f"\nExercise: {exercise.title}")
    if exercise.instructions:
        print_fn(exercise.instructions)
    response = input_fn("Your response: ").strip()
    lowered = response.lower()
    if lowered in BACK_COMMANDS or lowered in FLOW_EXIT_COMMANDS:
        return False
    if lowered in SKIP_COMMANDS:
        print_fn("Skipped.")
        return True
    submission = service.submit_exercise(
        user_id, module.id, exercise.id, {"response": response}, section_id=exercise.section_id
    )
    print_fn(f"Score: {submission.score}")
    print_fn(submission.feedback)
    return True


def _certificates_flow(service: TrainingService, user_id: str, input_fn: InputFn, print_fn: PrintFn) -> None:
    """List certificates and issue new ones for completed modules."""
    print_fn("\n=== Certificates ===")
    certificates = service.get_user_certificates(user_id)
    if certificates:
        for certificate in certificates:
            module = service.get_module_by_id(certificate.module_id)
            title = module.title if module is not None else certificate.module_id
            print_fn(f"- {certificate.certificate_number}  {title}  issued {_format_local_time(certificate.issued_at)}")
    else:
        print_fn("No certificates yet.")

    issued = {certificate.module_id for certificate in certificates}
    eligible = [
        state.module
        for state in service.list_module_states(user_id)
        if state.status == STATUS_COMPLETED and state.module.id not in issued
    ]
    if not eligible:
        return
    print_fn("\nCompleted modules without a certificate:")
    module = _choose_module(eligible, input_fn, print_fn, prompt="Issue certificate for: ")
    if module is None:
        return
    try:
        certificate = service.generate_certificate(user_id, module.id)
    except NotFoundError as exc:
        print_fn(f"Could not issue certificate: {exc}")
        return
    print_fn(f"Issued certificate {certificate.certificate_number} for {module.title}.")


def _annotations_flow(service: TrainingService, user_id: str, input_fn: InputFn, print_fn: PrintFn) -> None:
    """Bookmark and note management menu."""
    while True:
        print_fn("\n=== Bookmarks & Notes ===")
        print_fn("1) List bookmarks")
        print_fn("2) Add bookmark")
        print_fn("3) List notes")
        print_fn("4) Add note")
        print_fn("5) Delete note")
        print_fn("b) Back")
        print_fn("q) Quit")
        choice = input_fn("Choose: ").strip().lower()
        if choice in MENU_BACK_COMMANDS:
            return
        if choice in MENU_QUIT_COMMANDS:
            raise QuitApp()
        try:
            if choice == "1":
                _list_bookmarks(service, user_id, print_fn)
            elif choice == "2":
                _add_bookmark_flow(service, user_id, input_fn, print_fn)
            elif choice == "3":
                _list_notes(service, user_id, print_fn)
            elif choice == "4":
                _add_note_flow(service, user_id, input_fn, print_fn)
            elif choice == "5":
                note_id = input_fn("Note id to delete: ").strip()
                print_fn("Note deleted." if service.delete_note(note_id) else "Note was not found.")
            else:
                print_fn("Invalid choice.")
        except TrainingError as exc:
            print_fn(f"Error: {exc}")


def _list_bookmarks(service: TrainingService, user_id: str, print_fn: PrintFn) -> None:
    bookmarks = service.get_user_bookmarks(user_id)
    if not bookmarks:
        print_fn("No bookmarks yet.")
        return
    for bookmark in bookmarks:
        line = f"- [{bookmark.module_id}/{bookmark.section_id}] {bookmark.title}"
        if bookmark.note:
            line += f" ({bookmark.note})"
        print_fn(line)


def _list_notes(service: TrainingService, user_id: str, print_fn: PrintFn) -> None:
    notes = service.get_user_notes(user_id)
    if not notes:
        print_fn("No notes yet.")
        return
    for note in notes:
        tags = f" #{' #'.join(note.tags)}" if note.tags else ""
        print_fn(f"- {note.id} [{note.module_id}] {note.content}{tags}")


def _pick_section(module: Module, input_fn: InputFn, print_fn: PrintFn) -> Section | None:
    for idx, section in enumerate(module.sections, start=1):
        print_fn(f"{idx}) {section.title}")
    choice = input_fn("Choose section: ").strip()
    if not choice.isdigit() or not (0 < int(choice) <= len(module.sections)):
        print_fn("Invalid choice.")
        return None
    return module.sections[int(choice) - 1]


def _add_bookmark_flow(service: TrainingService, user_id: str, input_fn: InputFn, print_fn: PrintFn) -> None:
    module = _choose_module(service.get_modules(), input_fn, print_fn)
    if module is None:
        return
    section = _pick_section(module, input_fn, print_fn)
    if section is None:
        return
    title = input_fn("Bookmark title (blank = section title): ").strip() or section.title
    note = input_fn("Note (optional): ").strip() or None
    service.add_bookmark(user_id, module.id, section.id, title, note=note)
    print_fn("Bookmark saved.")


def _add_note_flow(service: TrainingService, user_id: str, input_fn: InputFn, print_fn: PrintFn) -> None:
    module = _choose_module(service.get_modules(), input_fn, print_fn)
    if module is None:
        return
    content = input_fn("Note: ").strip()
    if not content:
        print_fn("Note text is required.")
        return
    tags = [tag for tag in input_fn("Tags (comma separated): ").split(",") if tag.strip()]
    note = service.add_note(user_id, module.id, content, tags=tags)
    print_fn(f"Note saved ({note.id}).")


def _analytics_flow(service: TrainingService, user_id: str, print_fn: PrintFn) -> None:
    """Print exercise analytics for the learner."""
    analytics = service.exercise_analytics(user_id)
    print_fn("\n=== Analytics ===")
    print_fn(f"- Submissions: {analytics.total_submissions}")
    print_fn(f"- Average score: {analytics.average_score}")
    print_fn(f"- Time spent: {analytics.total_time_spent // 60} min")
    print_fn(f"- Exercises completed: {analytics.completed_exercises}/{analytics.total_exercises}")
    if not analytics.modules:
        return

    title_width = max(len("Module"), max(len(row.module_title) for row in analytics.modules))
    header = f"{'Module':<{title_width}} {'Done':>9} {'Avg':>4}"
    print_fn("\nBy module:")
    print_fn(header)
    print_fn("-" * len(header))
    for row in analytics.modules:
        done = f"{row.completed_exercises}/{row.total_exercises}"
        print_fn(f"{row.module_title:<{title_width}} {done:>9} {row.average_score:>4}")


def _format_local_time(value: str) -> str:
    """Convert an ISO timestamp to local human-readable datetime."""
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return value
    return dt.astimezone().strftime("%Y-%m-%d %H:%M")


def main_entry() -> None:
    """Console script entrypoint."""
    raise SystemExit(run())


if __name__ == "__main__":  # pragma: no cover
    main_entry()
