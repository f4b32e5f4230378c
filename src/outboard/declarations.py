"""Declarations that make up one remote class, and the registry holding them."""

import ast
import dataclasses
import json
import keyword
import textwrap
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal

from outboard.errors import DeclarationError

RESERVED_PREFIX: str = "__outboard"
DEFINE_OPERATION: str = "__define__"
EVALUATE_OPERATION: str = "__evaluate__"
DISCARD_OPERATION: str = "__discard__"
OPERATION_NAMES: frozenset[str] = frozenset({DEFINE_OPERATION, EVALUATE_OPERATION, DISCARD_OPERATION})
DependencyKind = Literal["eager", "lazy"]


@dataclass(frozen=True)
class SourceText:
    """Code given as literal source text."""

    text: str

    def resolve(self) -> str:
        """Return the source text.

        :returns: Dedented source.
        """
        return textwrap.dedent(self.text).strip()


@dataclass(frozen=True)
class SourceGenerator:
    """Code produced by a callable when the class code is generated."""

    factory: Callable[[], str]

    def resolve(self) -> str:
        """Call the factory and return its source text.

        :returns: Dedented source.
        :raises DeclarationError: If the factory does not return a string.
        """
        produced: object = self.factory()
        if isinstance(produced, str) is False:
            raise DeclarationError(
                f"Code generator {self.factory!r} returned {type(produced).__name__}, expected str"
            )
        return textwrap.dedent(produced).strip()


Code = SourceText | SourceGenerator


def as_code(code: object) -> Code:
    """Wrap raw code in its tagged variant.

    :param code: Source string, zero-argument callable returning source, or a ``Code`` value.
    :returns: Tagged code value.
    :raises DeclarationError: If ``code`` is neither text nor callable, or is empty text.
    """
    if isinstance(code, (SourceText, SourceGenerator)) is True:
        return code
    if isinstance(code, str) is True:
        wrapped: SourceText = SourceText(code)
        if len(wrapped.resolve()) == 0:
            raise DeclarationError("Code must not be empty")
        return wrapped
    if callable(code) is True:
        return SourceGenerator(code)
    raise DeclarationError(f"Code must be a string or a callable, got {type(code).__name__}")


def validate_name(name: object, kind: str) -> str:
    """Check that ``name`` can be bound in the generated program.

    :param name: Candidate name.
    :param kind: Declaration kind used in error messages.
    :returns: The validated name.
    :raises DeclarationError: If the name is not a usable identifier.
    """
    if isinstance(name, str) is False:
        raise DeclarationError(f"{kind} name must be a string, got {type(name).__name__}")
    if name.isidentifier() is False or keyword.iskeyword(name) is True:
        raise DeclarationError(f"{kind} name {name!r} is not a valid identifier")
    if name.startswith(RESERVED_PREFIX) is True:
        raise DeclarationError(f"{kind} name {name!r} uses the reserved prefix {RESERVED_PREFIX!r}")
    return name


def function_target(source: str) -> str | None:
    """Work out how function source binds its callable.

    :param source: Dedented function source.
    :returns: ``None`` for an expression, or the name of the trailing ``def``.
    :raises DeclarationError: If the source is neither form.
    """
    try:
        ast.parse(source, mode="eval")
        return None
    except SyntaxError:
        pass

    try:
        module: ast.Module = ast.parse(source, mode="exec")
    except SyntaxError as exc:
        raise DeclarationError(
            f"Function code has invalid syntax at line {exc.lineno}: {exc.msg}"
        ) from exc

    if len(module.body) == 0:
        raise DeclarationError("Function code must not be empty")
    last: ast.stmt = module.body[-1]
    if isinstance(last, (ast.FunctionDef, ast.AsyncFunctionDef)) is False:
        raise DeclarationError("Function code must be an expression or end with a function definition")
    return last.name


def check_function_source(name: str, source: str) -> str | None:
    """Check that function source binds only the declared name.

    :param name: Declared function name.
    :param source: Dedented function source.
    :returns: ``None`` for an expression, or ``name`` for the ``def`` form.
    :raises DeclarationError: If the source is invalid or its trailing ``def`` has another name.
    """
    target: str | None = function_target(source)
    if target is not None and target != name:
        raise DeclarationError(f"Function {name!r} must define 'def {name}(...)', not {target!r}")
    return target


@dataclass(frozen=True)
class Dependency:
    """Binds ``name`` to the module imported from ``package``."""

    name: str
    package: str
    kind: DependencyKind = "eager"

    def __post_init__(self) -> None:
        """Validate the dependency."""
        validate_name(self.name, "Dependency")
        if isinstance(self.package, str) is False or len(self.package.strip()) == 0:
            raise DeclarationError(f"Dependency {self.name!r} needs a package name")
        if self.kind not in ("eager", "lazy"):
            raise DeclarationError(f"Dependency kind must be 'eager' or 'lazy', got {self.kind!r}")


@dataclass(frozen=True)
class Constant:
    """A JSON-serializable value bound to ``name``."""

    name: str
    value: object

    def __post_init__(self) -> None:
        """Validate the constant."""
        validate_name(self.name, "Constant")
        try:
            json.dumps(self.value, allow_nan=False)
        except (TypeError, ValueError) as exc:
            raise DeclarationError(f"Constant {self.name!r} is not JSON-serializable: {exc}") from exc

    def to_json(self) -> str:
        """Encode the value for the generated program.

        :returns: JSON text.
        """
        return json.dumps(self.value, allow_nan=False, sort_keys=True)


@dataclass(frozen=True)
class Script:
    """Statements run once in the class namespace after every function is bound."""

    code: Code


@dataclass(frozen=True)
class Function:
    """A named callable exposed as a remote method."""

    name: str
    code: Code
    source_location: str | None = None
    timeout: float | None = None

    def __post_init__(self) -> None:
        """Validate the function."""
        validate_name(self.name, "Function")
        if self.name in OPERATION_NAMES:
            raise DeclarationError(f"Function name {self.name!r} is reserved for an internal operation")
        if self.timeout is not None:
            if isinstance(self.timeout, bool) is True or isinstance(self.timeout, (int, float)) is False:
                raise DeclarationError(f"Timeout for {self.name!r} must be a number")
            if self.timeout <= 0:
                raise DeclarationError(f"Timeout for {self.name!r} must be positive")
        if isinstance(self.code, SourceText) is True:
            check_function_source(self.name, self.code.resolve())


@dataclass(frozen=True)
class ClassRegistry:
    """Immutable snapshot of every declaration attached to one remote class.

    Registration returns a new snapshot, so a subclass that starts from its
    parent's snapshot can add or override entries without touching the parent.
    """

    dependencies: tuple[Dependency, ...] = ()
    constants: tuple[Constant, ...] = ()
    scripts: tuple[Script, ...] = ()
    functions: tuple[Function, ...] = ()

    def function(self, name: str) -> Function | None:
        """Look up one function by name.

        :param name: Function name.
        :returns: The declaration or ``None``.
        """
        for declared in self.functions:
            if declared.name == name:
                return declared
        return None

    @property
    def function_names(self) -> tuple[str, ...]:
        """Return declared function names in declaration order.

        :returns: Function names.
        """
        return tuple(declared.name for declared in self.functions)

    def with_dependency(self, dependency: Dependency) -> "ClassRegistry":
        """Return a snapshot with ``dependency`` appended.

        :param dependency: Dependency declaration.
        :returns: New registry.
        """
        return dataclasses.replace(self, dependencies=self.dependencies + (dependency,))

    def with_constant(self, constant: Constant) -> "ClassRegistry":
        """Return a snapshot with ``constant`` appended.

        :param constant: Constant declaration.
        :returns: New registry.
        """
        return dataclasses.replace(self, constants=self.constants + (constant,))

    def with_script(self, script: Script) -> "ClassRegistry":
        """Return a snapshot with ``script`` appended.

        :param script: Script declaration.
        :returns: New registry.
        """
        return dataclasses.replace(self, scripts=self.scripts + (script,))

    def with_function(self, function: Function) -> "ClassRegistry":
        """Return a snapshot with ``function`` added.

        A function whose name is already declared replaces the earlier entry
        in place, keeping its position in program order.

        :param function: Function declaration.
        :returns: New registry.
        """
        replaced: bool = False
        functions: list[Function] = []
        for declared in self.functions:
            if declared.name == function.name:
                functions.append(function)
                replaced = True
            else:
                functions.append(declared)
        if replaced is False:
            functions.append(function)
        return dataclasses.replace(self, functions=tuple(functions))
