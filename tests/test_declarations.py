"""Unit tests for declarations and the host-side class base."""

import pytest

from outboard import Core
from outboard import DeclarationError
from outboard import constant
from outboard import define_class
from outboard import dependency
from outboard import function
from outboard import script
from outboard.declarations import ClassRegistry
from outboard.declarations import Constant
from outboard.declarations import Dependency
from outboard.declarations import Function
from outboard.declarations import SourceGenerator
from outboard.declarations import SourceText
from outboard.declarations import as_code
from outboard.declarations import function_target
from outboard.declarations import validate_name


def _forbid_supervisor() -> None:
    """Fail the test if anything tries to reach the companion.

    :raises AssertionError: Always.
    """
    raise AssertionError("declaration touched the companion supervisor")


@pytest.fixture
def no_companion(monkeypatch: pytest.MonkeyPatch) -> None:
    """Make any supervisor access fail loudly.

    :param monkeypatch: Pytest monkeypatch fixture.
    """
    monkeypatch.setattr("outboard.core.get_supervisor", _forbid_supervisor)


def test_validate_name_rejects_non_identifiers() -> None:
    """Verify names must be usable Python identifiers."""
    assert validate_name("ok_name", "Function") == "ok_name"
    for bad_name in ("1abc", "with space", "class", ""):
        with pytest.raises(DeclarationError):
            validate_name(bad_name, "Function")


def test_validate_name_rejects_reserved_prefix() -> None:
    """Verify the runtime helper prefix cannot be declared."""
    with pytest.raises(DeclarationError, match="reserved prefix"):
        validate_name("__outboard_methods__", "Constant")


@pytest.mark.parametrize("operation", ["__define__", "__evaluate__", "__discard__"])
def test_function_rejects_operation_names(operation: str) -> None:
    """Verify functions cannot shadow wire operations."""
    with pytest.raises(DeclarationError, match="internal operation"):
        Function(operation, SourceText("lambda: 1"))


def test_function_rejects_invalid_timeouts() -> None:
    """Verify per-function timeouts must be positive numbers."""
    with pytest.raises(DeclarationError):
        Function("slow", SourceText("lambda: 1"), timeout=0)
    with pytest.raises(DeclarationError):
        Function("slow", SourceText("lambda: 1"), timeout=True)
    declared: Function = Function("slow", SourceText("lambda: 1"), timeout=2.5)
    assert declared.timeout == 2.5


def test_as_code_wraps_text_and_generators() -> None:
    """Verify code is tagged as literal text or as a deferred generator."""
    literal = as_code("  lambda: 1  ")
    assert isinstance(literal, SourceText) is True
    assert literal.resolve() == "lambda: 1"

    deferred = as_code(lambda: "lambda: 2")
    assert isinstance(deferred, SourceGenerator) is True
    assert deferred.resolve() == "lambda: 2"

    with pytest.raises(DeclarationError, match="empty"):
        as_code("   \n")
    with pytest.raises(DeclarationError):
        as_code(42)


def test_generator_must_return_text() -> None:
    """Verify a generator returning a non-string fails at resolution."""
    deferred: SourceGenerator = SourceGenerator(lambda: 42)
    with pytest.raises(DeclarationError, match="expected str"):
        deferred.resolve()


def test_function_target_detects_expression_and_def() -> None:
    """Verify function code is either an expression or ends in a def."""
    assert function_target("lambda x: x + 1") is None
    assert function_target("def helper():\n    return 1\n\nasync def run():\n    return helper()") == "run"
    with pytest.raises(DeclarationError, match="end with a function definition"):
        function_target("x = 1")
    with pytest.raises(DeclarationError, match="invalid syntax"):
        function_target("def broken(:\n    pass")


def test_def_form_must_bind_the_declared_name() -> None:
    """Verify a trailing def may not introduce a name other than the function's."""
    helper_source: SourceText = SourceText("def helper():\n    return 1")
    with pytest.raises(DeclarationError, match="def foo"):
        Function("foo", helper_source)
    assert Function("helper", helper_source).name == "helper"

    with pytest.raises(DeclarationError, match="def foo"):

        class Shadowing(Core):
            helper = constant(1)
            foo = function(
                """
                def helper():
                    return 2
                """
            )


def test_constant_must_be_json() -> None:
    """Verify constants are restricted to JSON values."""
    assert Constant("LIMITS", {"b": 2, "a": [1, None]}).to_json() == '{"a": [1, null], "b": 2}'
    with pytest.raises(DeclarationError, match="JSON-serializable"):
        Constant("BAD", object())
    with pytest.raises(DeclarationError):
        Constant("NAN", float("nan"))


def test_dependency_validation() -> None:
    """Verify dependency kinds and package names are checked."""
    assert Dependency("path", "os.path").kind == "eager"
    with pytest.raises(DeclarationError, match="kind"):
        Dependency("path", "os.path", "sometimes")
    with pytest.raises(DeclarationError, match="package"):
        Dependency("path", " ")


def test_registry_override_keeps_position_and_parent() -> None:
    """Verify re-registering a function replaces it in place on a new snapshot."""
    parent: ClassRegistry = (
        ClassRegistry()
        .with_function(Function("foo", SourceText("lambda: 'a'")))
        .with_function(Function("bar", SourceText("lambda: 'b'")))
    )
    child: ClassRegistry = parent.with_function(Function("foo", SourceText("lambda: 'c'")))

    assert child.function_names == ("foo", "bar")
    assert child.function("foo").code.resolve() == "lambda: 'c'"
    assert parent.function("foo").code.resolve() == "lambda: 'a'"
    assert child.function("missing") is None


def test_subclass_registry_copies_parent(no_companion: None) -> None:
    """Verify subclasses extend a copy of their parent's declarations."""

    class Base(Core):
        LIMIT = constant(3)
        foo = function("lambda: 'base'")

    class Child(Base):
        path = dependency("os.path")
        foo = function("lambda: 'child'")
        bar = function("lambda: foo() + str(LIMIT)")

    assert Base.registry().function_names == ("foo",)
    assert Child.registry().function_names == ("foo", "bar")
    assert Child.registry().function("foo").code.resolve() == "lambda: 'child'"
    assert Base.registry().function("foo").code.resolve() == "lambda: 'base'"
    assert [declared.name for declared in Child.registry().constants] == ["LIMIT"]
    assert Child.registry().dependencies == (Dependency("path", "os.path"),)
    assert Child.LIMIT == 3


def test_reserved_function_names_fail_before_spawn(no_companion: None) -> None:
    """Verify reserved names raise at class creation, never reaching the companion."""
    with pytest.raises(DeclarationError):

        class WireName(Core):
            __evaluate__ = function("lambda: 1")

    with pytest.raises(DeclarationError, match="reserved by outboard.Core"):

        class ApiName(Core):
            evaluate = function("lambda code: code")


def test_empty_function_code_is_rejected(no_companion: None) -> None:
    """Verify function code is required."""
    with pytest.raises(DeclarationError):

        class Empty(Core):
            test = function("")

    with pytest.raises(DeclarationError, match="required"):
        function()


def test_declaration_site_is_recorded(no_companion: None) -> None:
    """Verify functions remember where in host code they were declared."""

    class Located(Core):
        here = function("lambda: 1")

    location: str | None = Located.registry().function("here").source_location
    assert location is not None
    assert location.startswith(f"{__file__}:") is True


def test_local_classes_get_distinct_identities(no_companion: None) -> None:
    """Verify class identities are unique even for same-named local classes."""

    def build() -> type:
        class Twin(Core):
            value = function("lambda: 1")

        return Twin

    first: type = build()
    second: type = build()
    assert first.clsid != second.clsid
    assert "@" in first.clsid


def test_core_cannot_be_instantiated() -> None:
    """Verify only subclasses of Core are usable."""
    with pytest.raises(TypeError):
        Core()


def test_define_class_composes_base_and_overrides(no_companion: None) -> None:
    """Verify classes can be composed from a base plus overrides."""
    base: type = define_class("Composed", functions={"foo": "lambda: 'superclass'"})
    leaf: type = define_class(
        "ComposedLeaf",
        base,
        constants={"SUFFIX": "!"},
        functions={"foo": "lambda: 'leaf' + SUFFIX"},
        scripts=["READY = True"],
        timeouts={"foo": 3.0},
    )

    assert issubclass(leaf, base) is True
    assert leaf.registry().function("foo").timeout == 3.0
    assert leaf.registry().function("foo").code.resolve() == "lambda: 'leaf' + SUFFIX"
    assert base.registry().function("foo").code.resolve() == "lambda: 'superclass'"
    assert len(leaf.registry().scripts) == 1


def test_script_marker_is_collected(no_companion: None) -> None:
    """Verify scripts are collected in class-body order."""

    class Scripted(Core):
        first = script("a = 1")
        second = script(lambda: "b = a + 1")

    resolved: list[str] = [declared.code.resolve() for declared in Scripted.registry().scripts]
    assert resolved == ["a = 1", "b = a + 1"]


def test_generators_are_not_called_at_registration(no_companion: None) -> None:
    """Verify deferred code runs only when the class program is generated."""
    calls: list[int] = []

    def generate() -> str:
        calls.append(1)
        return f"lambda: {len(calls)}"

    class Deferred(Core):
        value = function(generate)

    assert calls == []
    program: str = Deferred.generate_class_code()
    assert calls == [1]
    assert "lambda: 1" in program
