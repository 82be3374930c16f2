"""Exception types raised by the training engine."""

from __future__ import annotations


class TrainingError(Exception):
    """Base class for training engine errors."""


class NotFoundError(TrainingError, KeyError):
    """A referenced module, section, note, or certificate precondition is missing."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep messages readable.
        return str(self.args[0]) if self.args else ""


class UnknownModuleError(NotFoundError):
    """Module id is not in the catalog."""

    def __init__(self, module_id: str) -> None:
        super().__init__(f"Module not found: {module_id}")
        self.module_id = module_id


class UnknownSectionError(NotFoundError):
    """Section id does not belong to the module."""

    def __init__(self, module_id: str, section_id: str) -> None:
        super().__init__(f"Section '{section_id}' not found in module '{module_id}'")
        self.module_id = module_id
        self.section_id = section_id


class NoteNotFoundError(NotFoundError):
    """Note id is unknown."""

    def __init__(self, note_id: str) -> None:
        super().__init__(f"Note not found: {note_id}")
        self.note_id = note_id


class CertificateNotAvailableError(NotFoundError):
    """Certificate requested for a missing or unfinished module."""

    def __init__(self, user_id: str, module_id: str) -> None:
        super().__init__("Module not completed or not found")
        self.user_id = user_id
        self.module_id = module_id


class StoreError(TrainingError):
    """Persistence failure that callers should surface and may retry."""


class ConcurrentUpdateError(StoreError):
    """Progress record changed since it was read."""

    def __init__(self, user_id: str, module_id: str, expected_version: int) -> None:
        super().__init__(
            f"Progress for user '{user_id}' in module '{module_id}' changed (expected version {expected_version})."
        )
        self.user_id = user_id
        self.module_id = module_id
        self.expected_version = expected_version
