"""Core catalog models for wellness training modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

EXERCISE_TYPES = frozenset(
    {
        "reflection_journal",
        "wellness_wheel",
        "reflection",
        "movement_tracker",
        "movement_challenge",
        "sleep_audit",
        "mindful_eating_timer",
        "meal_planning",
        "mood_tracking",
        "mindset_reframing",
        "resilience_mapping",
        "guided_meditation",
        "breathing_exercise",
        "stress_inventory",
        "habit_loop_analyzer",
        "habit_tracker",
        "if_then_planning",
        "weekly_reflection",
        "self_coaching_checklist",
        "progress_celebration",
        "wellness_vision_builder",
        "smart_goal_setting",
        "wellness_plan_generator",
        "quiz_assessment",
    }
)

CONTENT_TYPES = frozenset({"text", "video", "audio", "image", "interactive"})


@dataclass(frozen=True)
class ContentItem:
    """One piece of section reading material."""

    id: str
    type: str
    title: str
    content: str
    order: int
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Exercise:
    """Interactive activity inside a section."""

    id: str
    section_id: str
    type: str
    title: str
    instructions: str
    estimated_duration: int
    is_required: bool
    config: dict[str, Any]
    order: int


@dataclass(frozen=True)
class Section:
    """Ordered sub-unit of a module."""

    id: str
    module_id: str
    number: int
    title: str
    content: list[ContentItem]
    exercises: list[Exercise]
    estimated_duration: int
    is_required: bool


@dataclass(frozen=True)
class Resource:
    """Downloadable or linked module resource."""

    id: str
    module_id: str
    title: str
    description: str
    type: str
    url: str
    downloadable: bool
    file_size: int | None = None
    duration: int | None = None


@dataclass(frozen=True)
class Module:
    """Top-level training module."""

    id: str
    number: int
    title: str
    description: str
    estimated_duration: int
    is_required: bool
    prerequisites: list[str]
    sections: list[Section]
    resources: list[Resource]
    content_version: int = 1

    @property
    def total_sections(self) -> int:
        return len(self.sections)

    @property
    def total_exercises(self) -> int:
        return sum(len(section.exercises) for section in self.sections)

    def section_ids(self) -> list[str]:
        return [section.id for section in self.sections]

    def exercise_ids(self) -> list[str]:
        return [exercise.id for section in self.sections for exercise in section.exercises]
