"""Load declarative training modules from bundled JSON resources."""

from __future__ import annotations

import json
from importlib import resources
from pathlib import Path
from typing import Any

from .models import CONTENT_TYPES, EXERCISE_TYPES, ContentItem, Exercise, Module, Resource, Section

CONTENT_PACKAGE = "wellcoach.content.modules"


def _content_from_dict(raw: dict[str, Any]) -> ContentItem:
    """Build one content item from raw JSON content."""
    content_type = str(raw.get("type", "text"))
    if content_type not in CONTENT_TYPES:
        raise ValueError(f"Content '{raw.get('id', '<unknown>')}' has unknown type '{content_type}'.")
    metadata = raw.get("metadata") or {}
    return ContentItem(
        id=str(raw["id"]),
        type=content_type,
        title=str(raw.get("title", "")),
        content=str(raw.get("content", "")),
        order=int(raw.get("order", 0)),
        metadata=dict(metadata),
    )


def _exercise_from_dict(section_id: str, raw: dict[str, Any]) -> Exercise:
    """Build an exercise from raw JSON content."""
    exercise_type = str(raw.get("type", ""))
    if exercise_type not in EXERCISE_TYPES:
        raise ValueError(f"Exercise '{raw.get('id', '<unknown>')}' has unknown type '{exercise_type}'.")
    return Exercise(
        id=str(raw["id"]),
        section_id=section_id,
        type=exercise_type,
        title=str(raw["title"]),
        instructions=str(raw.get("instructions", "")),
        estimated_duration=int(raw.get("estimated_duration", 0)),
        is_required=bool(raw.get("is_required", False)),
        config=dict(raw.get("config") or {}),
        order=int(raw.get("order", 0)),
    )


def _section_from_dict(module_id: str, raw: dict[str, Any]) -> Section:
    """Build a section from raw JSON content."""
    section_id = str(raw["id"])
    content = [_content_from_dict(item) for item in raw.get("content", [])]
    content.sort(key=lambda item: item.order)
    exercises = [_exercise_from_dict(section_id, item) for item in raw.get("exercises", [])]
    exercises.sort(key=lambda item: item.order)
    return Section(
        id=section_id,
        module_id=module_id,
        number=int(raw.get("number", 0)),
        title=str(raw["title"]),
        content=content,
        exercises=exercises,
        estimated_duration=int(raw.get("estimated_duration", 0)),
        is_required=bool(raw.get("is_required", True)),
    )


def _resource_from_dict(module_id: str, raw: dict[str, Any]) -> Resource:
    """Build a resource from raw JSON content."""
    file_size = raw.get("file_size")
    duration = raw.get("duration")
    return Resource(
        id=str(raw["id"]),
        module_id=module_id,
        title=str(raw["title"]),
        description=str(raw.get("description", "")),
        type=str(raw.get("type", "link")),
        url=str(raw.get("url", "")),
        downloadable=bool(raw.get("downloadable", False)),
        file_size=int(file_size) if file_size is not None else None,
        duration=int(duration) if duration is not None else None,
    )


def _module_from_dict(raw: dict[str, Any]) -> Module:
    """Build a module from raw JSON content."""
    module_id = str(raw["id"])
    sections = [_section_from_dict(module_id, section) for section in raw.get("sections", [])]
    sections.sort(key=lambda item: item.number)
    return Module(
        id=module_id,
        number=int(raw.get("number", 0)),
        title=str(raw["title"]),
        description=str(raw.get("description", "")),
        estimated_duration=int(raw.get("estimated_duration", 0)),
        is_required=bool(raw.get("is_required", False)),
        prerequisites=[str(item) for item in raw.get("prerequisites", [])],
        sections=sections,
        resources=[_resource_from_dict(module_id, item) for item in raw.get("resources", [])],
        content_version=int(raw.get("content_version", 1)),
    )


def load_modules() -> dict[str, Module]:
    """Load bundled modules."""
    modules: dict[str, Module] = {}
    for entry in sorted(resources.files(CONTENT_PACKAGE).iterdir(), key=lambda item: item.name):
        if entry.name.endswith(".json"):
            raw = json.loads(entry.read_text(encoding="utf-8-sig"))
            _add_module(modules, _module_from_dict(raw))
    _validate_module_dependencies(modules)
    _validate_unique_item_ids(modules)
    return modules


def load_modules_from_dir(path: Path) -> dict[str, Module]:
    """Load modules from directory for tests/tools."""
    modules: dict[str, Module] = {}
    for file_path in sorted(path.glob("*.json")):
        raw = json.loads(file_path.read_text(encoding="utf-8-sig"))
        _add_module(modules, _module_from_dict(raw))
    _validate_module_dependencies(modules)
    _validate_unique_item_ids(modules)
    return modules


def _add_module(modules: dict[str, Module], module: Module) -> None:
    if module.id in modules:
        raise ValueError(f"Duplicate module id: {module.id}")
    modules[module.id] = module


def _validate_module_dependencies(modules: dict[str, Module]) -> None:
    """Validate prerequisites exist and dependency graph has no cycles."""
    for module in modules.values():
        for prerequisite in module.prerequisites:
            if prerequisite not in modules:
                raise ValueError(f"Module '{module.id}' has unknown prerequisite '{prerequisite}'.")

    visiting: set[str] = set()
    visited: set[str] = set()

    def visit(module_id: str, path: list[str]) -> None:
        if module_id in visited:
            return
        if module_id in visiting:
            cycle_start = path.index(module_id)
            cycle_path = path[cycle_start:] + [module_id]
            raise ValueError(f"Circular module dependency detected: {' -> '.join(cycle_path)}")

        visiting.add(module_id)
        path.append(module_id)
        for prerequisite in modules[module_id].prerequisites:
            visit(prerequisite, path)
        path.pop()
        visiting.remove(module_id)
        visited.add(module_id)

    for module_id in modules:
        visit(module_id, [])


def _validate_unique_item_ids(modules: dict[str, Module]) -> None:
    """Validate that section and exercise IDs are globally unique across all modules."""
    seen_sections: dict[str, str] = {}
    seen_exercises: dict[str, str] = {}
    for module in modules.values():
        for section in module.sections:
            previous = seen_sections.get(section.id)
            if previous is not None:
                raise ValueError(f"Duplicate section id: {section.id} (in {previous} and {module.id})")
            seen_sections[section.id] = module.id
            for exercise in section.exercises:
                previous = seen_exercises.get(exercise.id)
                if previous is not None:
                    raise ValueError(f"Duplicate exercise id: {exercise.id} (in {previous} and {module.id})")
                seen_exercises[exercise.id] = module.id
