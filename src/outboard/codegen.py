"""Render declarations into the programs the companion process runs."""

from outboard.declarations import ClassRegistry
from outboard.declarations import Constant
from outboard.declarations import Dependency
from outboard.declarations import Function
from outboard.declarations import Script
from outboard.declarations import check_function_source

METHODS_NAME: str = "__outboard_methods__"
REQUIRE_HELPER: str = "__outboard_require__"
LOAD_HELPER: str = "__outboard_load__"
METHOD_HELPER: str = "__outboard_method__"

_BOOTSTRAP_CODE: str = """\
import signal
import sys

if len(sys.argv) < 2 or not sys.argv[1]:
    sys.stderr.write("Socket path is required\\n")
    sys.exit(1)

from outboard import companion

sys.exit(companion.run(sys.argv[1], stop_signals=(signal.SIGINT, signal.SIGTERM)))
"""


def generate_bootstrap_code() -> str:
    """Return the program that starts the companion dispatcher.

    The program is passed to ``python -c`` with the socket path as its only
    positional argument.

    :returns: Python source text.
    """
    return _BOOTSTRAP_CODE


def _render_dependency(dependency: Dependency) -> str:
    return f"{dependency.name} = {REQUIRE_HELPER}({dependency.package!r}, {dependency.kind!r})\n"


def _render_constant(constant: Constant) -> str:
    return f"{constant.name} = {LOAD_HELPER}({constant.to_json()!r})\n"


def _render_function(function: Function) -> str:
    """Bind one function under its declared name.

    :param function: Function declaration.
    :returns: Source fragment.
    """
    source: str = function.code.resolve()
    target: str | None = check_function_source(function.name, source)
    if target is None:
        return f"{function.name} = {METHOD_HELPER}((\n{source}\n), {function.name!r})\n"
    return f"{source}\n{function.name} = {METHOD_HELPER}({target}, {function.name!r})\n"


def _render_script(script: Script) -> str:
    return f"{script.code.resolve()}\n"


def _render_method_table(registry: ClassRegistry) -> str:
    entries: str = ", ".join(f"{name!r}: {name}" for name in registry.function_names)
    return f"{METHODS_NAME} = {{{entries}}}\n"


def generate_class_code(registry: ClassRegistry, clsid: str) -> str:
    """Render one class-definition program.

    Sections follow declaration order: dependencies, constants, functions,
    the method table, then scripts, so later sections can use earlier names.

    :param registry: Declarations snapshot.
    :param clsid: Class identity, recorded in the program header.
    :returns: Python source text.
    """
    parts: list[str] = [f"# outboard class {clsid}\n"]
    parts.extend(_render_dependency(dependency) for dependency in registry.dependencies)
    parts.extend(_render_constant(constant) for constant in registry.constants)
    parts.extend(_render_function(function) for function in registry.functions)
    parts.append(_render_method_table(registry))
    parts.extend(_render_script(script) for script in registry.scripts)
    return "".join(parts)
