"""User-facing API entrypoints for outboard."""

from collections.abc import Mapping
from collections.abc import Sequence

from outboard.config import OutboardSettings
from outboard.config import configure as _configure_settings
from outboard.core import Core
from outboard.core import RemoteConstant
from outboard.core import RemoteDependency
from outboard.core import RemoteFunction
from outboard.core import RemoteScript
from outboard.core import caller_location
from outboard.declarations import as_code
from outboard.supervisor import shutdown_companion as _shutdown_supervised_companion


def configure(**changes: object) -> OutboardSettings:
    """Change process-wide settings.

    Changes made after the companion has started only affect later calls,
    never the running process.

    :param changes: Field values of :class:`outboard.config.OutboardSettings`.
    :returns: The validated settings now in effect.
    """
    return _configure_settings(**changes)


def define_class(
    name: str,
    base: type[Core] = Core,
    *,
    dependencies: Mapping[str, str] | None = None,
    constants: Mapping[str, object] | None = None,
    functions: Mapping[str, object] | None = None,
    scripts: Sequence[object] = (),
    timeouts: Mapping[str, float] | None = None,
    module: str | None = None,
) -> type[Core]:
    """Build a remote class from a base plus a list of additions and overrides.

    :param name: Class name.
    :param base: Class whose declarations are inherited.
    :param dependencies: ``name -> package`` eager dependencies.
    :param constants: ``name -> value`` constants.
    :param functions: ``name -> code`` functions; existing names are overridden.
    :param scripts: Script sources, run in order.
    :param timeouts: ``name -> seconds`` per-function timeouts.
    :param module: ``__module__`` of the new class; defaults to ``outboard.api``.
    :returns: New subclass of ``base``.
    """
    location: str | None = caller_location()
    if timeouts is None:
        timeouts = {}
    namespace: dict[str, object] = {"__module__": module or __name__, "__qualname__": name}
    for attr_name, package in (dependencies or {}).items():
        namespace[attr_name] = RemoteDependency(package, "eager")
    for attr_name, value in (constants or {}).items():
        namespace[attr_name] = RemoteConstant(value)
    for attr_name, code in (functions or {}).items():
        namespace[attr_name] = RemoteFunction(code, timeouts.get(attr_name), location)
    for index, code in enumerate(scripts):
        namespace[f"_script_{index}"] = RemoteScript(as_code(code))
    return type(name, (base,), namespace)


def shutdown_companion() -> bool:
    """Terminate the companion process and remove its scratch directory.

    No new companion can be started afterwards in this process.

    :returns: ``True`` when a running companion was stopped.
    """
    return _shutdown_supervised_companion()
