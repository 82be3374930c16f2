"""Read-only lookup over the loaded training modules."""

from __future__ import annotations

from collections.abc import Mapping

from .content_loader import load_modules
from .errors import UnknownModuleError
from .models import Exercise, Module, Section


class ModuleCatalog:
    """Immutable module catalog keyed by module id."""

    def __init__(self, modules: Mapping[str, Module]) -> None:
        self._modules = dict(modules)

    @classmethod
    def bundled(cls) -> ModuleCatalog:
        """Catalog backed by the modules shipped with the package."""
        return cls(load_modules())

    def __contains__(self, module_id: object) -> bool:
        return module_id in self._modules

    def __len__(self) -> int:
        return len(self._modules)

    def get_modules(self) -> list[Module]:
        """Return modules ordered by module number."""
        return sorted(self._modules.values(), key=lambda item: (item.number, item.id))

    def get_module_by_id(self, module_id: str) -> Module | None:
        """Get module by id, or None when it is not in the catalog."""
        return self._modules.get(module_id)

    def require_module(self, module_id: str) -> Module:
        """Get module by id or raise UnknownModuleError."""
        module = self._modules.get(module_id)
        if module is None:
            raise UnknownModuleError(module_id)
        return module

    def find_section_for_exercise(self, module: Module, exercise_id: str) -> Section | None:
        for section in module.sections:
            if any(exercise.id == exercise_id for exercise in section.exercises):
                return section
        return None

    def find_exercise(self, module: Module, exercise_id: str) -> Exercise | None:
        for section in module.sections:
            for exercise in section.exercises:
                if exercise.id == exercise_id:
                    return exercise
        return None

    def total_sections(self, module_id: str) -> int:
        return self.require_module(module_id).total_sections

    def total_exercises(self, module_id: str) -> int:
        return self.require_module(module_id).total_exercises
