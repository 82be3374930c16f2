from wellcoach.catalog import ModuleCatalog
from wellcoach.errors import NotFoundError, UnknownModuleError


def test_bundled_catalog_orders_modules_by_number() -> None:
    catalog = ModuleCatalog.bundled()
    assert len(catalog) == 8
    assert [module.number for module in catalog.get_modules()] == list(range(1, 9))
    assert "module_1" in catalog
    assert "module_99" not in catalog


def test_get_module_by_id_returns_none_when_missing() -> None:
    catalog = ModuleCatalog.bundled()
    assert catalog.get_module_by_id("module_3") is not None
    assert catalog.get_module_by_id("module_99") is None


def test_require_module_raises_unknown_module() -> None:
    catalog = ModuleCatalog.bundled()
    try:
        catalog.require_module("module_99")
        raise AssertionError("Expected UnknownModuleError.")
    except UnknownModuleError as exc:
        assert isinstance(exc, NotFoundError)
        assert isinstance(exc, KeyError)
        assert exc.module_id == "module_99"
        assert str(exc) == "Module not found: module_99"


def test_find_section_and_exercise() -> None:
    catalog = ModuleCatalog.bundled()
    module = catalog.require_module("module_1")
    section = catalog.find_section_for_exercise(module, "exercise_1_3_1")
    assert section is not None
    assert section.id == "section_1_3"
    exercise = catalog.find_exercise(module, "exercise_1_1_1")
    assert exercise is not None
    assert exercise.type == "wellness_wheel"
    assert catalog.find_section_for_exercise(module, "exercise_2_1_1") is None
    assert catalog.find_exercise(module, "missing") is None


def test_totals_come_from_catalog() -> None:
    catalog = ModuleCatalog.bundled()
    assert catalog.total_sections("module_1") == 3
    assert catalog.total_exercises("module_1") == 2
    assert catalog.total_exercises("module_2") == 3
