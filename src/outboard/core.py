"""Host-side base class whose declared functions run in the companion process."""

import contextlib
import itertools
import json
import sys
import textwrap
import threading
import uuid
import weakref
from collections.abc import Callable
from collections.abc import Iterator
from typing import ClassVar

from outboard.codegen import generate_class_code
from outboard.config import get_settings
from outboard.declarations import ClassRegistry
from outboard.declarations import Constant
from outboard.declarations import Dependency
from outboard.declarations import DependencyKind
from outboard.declarations import DISCARD_OPERATION
from outboard.declarations import EVALUATE_OPERATION
from outboard.declarations import Function
from outboard.declarations import Script
from outboard.declarations import as_code
from outboard.declarations import validate_name
from outboard.errors import DeclarationError
from outboard.errors import OutboardError
from outboard.errors import ProtocolError
from outboard.supervisor import CompanionSupervisor
from outboard.supervisor import get_supervisor

_CLSID_LOCK: threading.Lock = threading.Lock()
_ASSIGNED_CLSIDS: set[str] = set()
_CLSID_SEQUENCE: itertools.count = itertools.count(1)
_INSTANCE_LOCK: threading.RLock = threading.RLock()


def caller_location(depth: int = 2) -> str | None:
    """Return ``file:line`` of the code that made a declaration.

    :param depth: Stack depth of the declaring frame relative to this function.
    :returns: Location string, or ``None`` when frames are unavailable.
    """
    try:
        frame = sys._getframe(depth)
    except ValueError:
        return None
    return f"{frame.f_code.co_filename}:{frame.f_lineno}"


class _RemoteMethod:
    """Callable bound to one instance and one declared function."""

    _owner: "Core"
    _name: str

    def __init__(self, owner: "Core", name: str) -> None:
        """Bind a declared function.

        :param owner: Host-side instance.
        :param name: Function name.
        """
        self._owner = owner
        self._name = name

    def __call__(self, *args: object) -> object:
        """Invoke the function remotely.

        :param args: JSON-serializable positional arguments.
        :returns: Decoded remote result.
        """
        return self._owner.call(self._name, *args)

    def __repr__(self) -> str:
        return f"<remote method {type(self._owner).__name__}.{self._name}>"


class _Declared:
    """Class-body marker that becomes a declaration once it knows its name."""

    name: str | None = None

    def __set_name__(self, owner: type, name: str) -> None:
        self.name = name


class RemoteFunction(_Declared):
    """Class-body marker for a remote function."""

    def __init__(self, code: object, timeout: float | None, source_location: str | None) -> None:
        """Capture the function before its name is known.

        :param code: Source text or a zero-argument callable returning it.
        :param timeout: Per-call timeout in seconds, or ``None`` for the default.
        :param source_location: ``file:line`` of the declaration.
        """
        self.code = as_code(code)
        self.timeout = timeout
        self.source_location = source_location

    def declaration(self) -> Function:
        """Build the function declaration.

        :returns: Function declaration.
        """
        return Function(self.name, self.code, self.source_location, self.timeout)

    def __get__(self, instance: "Core | None", owner: type) -> object:
        """Bind the function to an instance, or to the shared instance for class functions.

        :param instance: Host-side instance, or ``None`` for class access.
        :param owner: Owning class.
        :returns: Bound remote method, or this marker.
        """
        if instance is not None:
            return _RemoteMethod(instance, self.name)
        if self.name in getattr(owner, "_class_functions", ()):
            return _RemoteMethod(owner.instance(), self.name)
        return self


class RemoteConstant(_Declared):
    """Class-body marker for a constant; reads back as its value."""

    def __init__(self, value: object) -> None:
        self.value = value

    def declaration(self) -> Constant:
        return Constant(self.name, self.value)

    def __get__(self, instance: object, owner: type) -> object:
        return self.value


class RemoteDependency(_Declared):
    """Class-body marker for a dependency."""

    def __init__(self, package: str | None, kind: DependencyKind) -> None:
        self.package = package
        self.kind = kind

    def declaration(self) -> Dependency:
        package: str | None = self.package
        if package is None:
            package = self.name
        return Dependency(self.name, package, self.kind)


class RemoteScript(_Declared):
    """Class-body marker for a script; the attribute name is ignored."""

    def __init__(self, code: object) -> None:
        self.code = as_code(code)

    def declaration(self) -> Script:
        return Script(self.code)


def function(code: object = None, *, timeout: float | None = None) -> RemoteFunction:
    """Declare a remote function in a class body.

    ``code`` is a Python expression evaluating to a callable, usually a
    ``lambda``, or a block ending in a ``def``/``async def``. A zero-argument
    callable returning such text defers generation to first instantiation.

    :param code: Function source or source factory.
    :param timeout: Per-call timeout in seconds; ``None`` uses the configured default.
    :returns: Class-body marker.
    :raises DeclarationError: If the code is missing or invalid.
    """
    if code is None:
        raise DeclarationError("Function code is required")
    return RemoteFunction(code, timeout, caller_location())


def constant(value: object) -> RemoteConstant:
    """Declare a JSON-serializable constant in a class body.

    :param value: Constant value.
    :returns: Class-body marker.
    """
    return RemoteConstant(value)


def dependency(package: str | None = None, *, kind: DependencyKind = "eager") -> RemoteDependency:
    """Declare a module dependency in a class body.

    :param package: Module to import; defaults to the attribute name.
    :param kind: ``"eager"`` or ``"lazy"``.
    :returns: Class-body marker.
    """
    return RemoteDependency(package, kind)


def script(code: object) -> RemoteScript:
    """Declare a script in a class body.

    :param code: Statements, or a zero-argument callable returning them.
    :returns: Class-body marker.
    """
    return RemoteScript(code)


def _class_identity(cls: type) -> str:
    """Assign a wire identity to ``cls``.

    Classes defined at module level use their dotted path. Local classes, and
    classes reusing a path already assigned in this process, get a numbered
    identity, since the companion keeps every definition for its lifetime.

    :param cls: Remote class.
    :returns: clsid.
    """
    candidate: str = f"{cls.__module__}.{cls.__qualname__}"
    with _CLSID_LOCK:
        if "<locals>" in cls.__qualname__ or candidate in _ASSIGNED_CLSIDS:
            candidate = f"{candidate}@{next(_CLSID_SEQUENCE)}"
        _ASSIGNED_CLSIDS.add(candidate)
    return candidate


def _discard_remote_context(clsid: str, context_id: str) -> None:
    """Finalize an instance by discarding its evaluation context.

    :param clsid: Class identity.
    :param context_id: Caller-instance identity.
    """
    supervisor: CompanionSupervisor = get_supervisor()
    if supervisor.is_defined(clsid) is False:
        return
    try:
        supervisor.call(clsid, context_id, DISCARD_OPERATION, "[]", get_settings().call_timeout)
    except OutboardError:
        return


class Core:
    """Base class for remote classes.

    Subclasses declare their remote code in the class body::

        class Greeter(Core):
            greeting = constant("Hello")
            say_hi = function("lambda name: f'{greeting} {name}!'")

        Greeter().say_hi("outboard")

    The first instantiation spawns the companion process if needed and
    defines the class there; later instances reuse both.
    """

    clsid: ClassVar[str] = "outboard.core.Core"
    _registry: ClassVar[ClassRegistry] = ClassRegistry()
    _class_functions: ClassVar[frozenset[str]] = frozenset()
    _shared_instance: ClassVar["Core | None"] = None

    _context_id: str
    _context_finalizer: weakref.finalize | None

    def __init_subclass__(cls, **kwargs: object) -> None:
        """Copy the parent's declarations and add the ones in this class body."""
        super().__init_subclass__(**kwargs)
        cls.clsid = _class_identity(cls)
        cls._shared_instance = None
        registry: ClassRegistry = cls._registry
        for attr_name, value in list(cls.__dict__.items()):
            if isinstance(value, RemoteFunction) is True:
                _check_function_name(attr_name)
                registry = registry.with_function(value.declaration())
            elif isinstance(value, RemoteConstant) is True:
                registry = registry.with_constant(value.declaration())
            elif isinstance(value, RemoteDependency) is True:
                registry = registry.with_dependency(value.declaration())
            elif isinstance(value, RemoteScript) is True:
                registry = registry.with_script(value.declaration())
        cls._registry = registry

    def __init__(self) -> None:
        """Make sure the companion runs and this class is defined in it.

        :raises TypeError: If called on ``Core`` itself.
        """
        cls: type[Core] = type(self)
        if cls is Core:
            raise TypeError("Cannot instantiate outboard.Core, declare a subclass instead")
        get_supervisor().ensure_defined(cls.clsid, cls.generate_class_code)
        self._context_id = uuid.uuid4().hex
        self._context_finalizer = None

    @classmethod
    def registry(cls) -> ClassRegistry:
        """Return this class's declarations snapshot.

        :returns: Registry.
        """
        return cls._registry

    @classmethod
    def generate_class_code(cls) -> str:
        """Render this class's definition program.

        :returns: Python source text.
        """
        return generate_class_code(cls._registry, cls.clsid)

    @classmethod
    def instance(cls) -> "Core":
        """Return the lazily created instance shared by class-level calls.

        :returns: Shared instance.
        """
        with _INSTANCE_LOCK:
            shared: Core | None = cls.__dict__.get("_shared_instance")
            if shared is None:
                shared = cls()
                cls._shared_instance = shared
            return shared

    @classmethod
    def _declare(cls, update: Callable[[ClassRegistry], ClassRegistry]) -> None:
        """Apply one registration to this class.

        :param update: Registry transformation.
        :raises DeclarationError: If the class is already defined in the companion.
        """
        if cls is Core:
            raise DeclarationError("Declare on a subclass of outboard.Core, not on Core itself")
        if get_supervisor().is_defined(cls.clsid) is True:
            raise DeclarationError(f"Class {cls.clsid} is already defined remotely; declare before first use")
        cls._registry = update(cls._registry)

    @classmethod
    def add_function(
        cls,
        name: str,
        code: object,
        timeout: float | None = None,
        source_location: str | None = None,
    ) -> None:
        """Register a remote function and expose it as a method.

        :param name: Method name.
        :param code: Function source or source factory.
        :param timeout: Per-call timeout in seconds.
        :param source_location: ``file:line`` of the declaration; defaults to the caller.
        """
        _check_function_name(name)
        if source_location is None:
            source_location = caller_location()
        marker: RemoteFunction = RemoteFunction(code, timeout, source_location)
        marker.name = name
        declared: Function = marker.declaration()
        cls._declare(lambda registry: registry.with_function(declared))
        setattr(cls, name, marker)

    @classmethod
    def add_constant(cls, name: str, value: object) -> None:
        """Register a constant.

        :param name: Constant name.
        :param value: JSON-serializable value.
        """
        declared: Constant = Constant(name, value)
        cls._declare(lambda registry: registry.with_constant(declared))

    @classmethod
    def add_dependency(cls, name: str, package: str | None = None, kind: DependencyKind = "eager") -> None:
        """Register a dependency.

        :param name: Name the module is bound to.
        :param package: Module to import; defaults to ``name``.
        :param kind: ``"eager"`` or ``"lazy"``.
        """
        if package is None:
            package = name
        declared: Dependency = Dependency(name, package, kind)
        cls._declare(lambda registry: registry.with_dependency(declared))

    @classmethod
    def require(cls, *packages: str, **aliases: str) -> None:
        """Register several eager dependencies at once.

        :param packages: Modules bound under their own names.
        :param aliases: ``name=package`` pairs.
        """
        for package in packages:
            cls.add_dependency(package, package)
        for name, package in aliases.items():
            cls.add_dependency(name, package)

    @classmethod
    def add_script(cls, code: object) -> None:
        """Register a script.

        :param code: Statements, or a zero-argument callable returning them.
        """
        declared: Script = Script(as_code(code))
        cls._declare(lambda registry: registry.with_script(declared))

    @classmethod
    def class_function(cls, *names: str) -> None:
        """Expose declared functions on the class, routed through :meth:`instance`.

        :param names: Declared function names.
        :raises DeclarationError: If a name is not a declared function.
        """
        for name in names:
            if cls._registry.function(name) is None:
                raise DeclarationError(f"{name!r} is not a declared function of {cls.__name__}")
        cls._class_functions = cls._class_functions | frozenset(names)

    def call(self, name: str, *args: object) -> object:
        """Invoke a declared function by name.

        :param name: Function name.
        :param args: JSON-serializable positional arguments.
        :returns: Decoded remote result.
        :raises AttributeError: If no function with that name is declared.
        :raises ProtocolError: If the class is not defined in the companion.
        """
        cls: type[Core] = type(self)
        declared: Function | None = cls._registry.function(name)
        if declared is None:
            raise AttributeError(f"undefined function {name!r} for {cls.__name__}")
        supervisor: CompanionSupervisor = get_supervisor()
        if supervisor.is_defined(cls.clsid) is False:
            raise ProtocolError(f"Class {cls.clsid} not defined")
        timeout: float | None = declared.timeout
        if timeout is None:
            timeout = get_settings().call_timeout
        body: str = json.dumps(list(args))
        return supervisor.call(cls.clsid, self._context_id, name, body, timeout, declared)

    @property
    def context_id(self) -> str:
        """Return the identity of this instance's evaluation context.

        :returns: Context identifier.
        """
        return self._context_id

    def evaluate(self, code: str, timeout: float | None = None) -> object:
        """Run code in this instance's persistent evaluation context.

        The context is created on first use and sees the class's
        dependencies, constants and functions. Bindings made here stay in
        this instance's context until :meth:`discard_context`.

        :param code: Python statements; the value of a trailing expression is returned.
        :param timeout: Seconds the evaluation may take.
        :returns: Decoded result.
        """
        cls: type[Core] = type(self)
        if self._context_finalizer is None:
            finalizer: weakref.finalize = weakref.finalize(self, _discard_remote_context, cls.clsid, self._context_id)
            finalizer.atexit = False
            self._context_finalizer = finalizer
        if timeout is None:
            timeout = get_settings().call_timeout
        body: str = json.dumps(textwrap.dedent(code), ensure_ascii=False)
        return get_supervisor().call(cls.clsid, self._context_id, EVALUATE_OPERATION, body, timeout)

    def discard_context(self) -> None:
        """Discard this instance's evaluation context; the next evaluate starts empty."""
        finalizer: weakref.finalize | None = self._context_finalizer
        self._context_finalizer = None
        if finalizer is not None:
            finalizer.detach()
        get_supervisor().call(
            type(self).clsid,
            self._context_id,
            DISCARD_OPERATION,
            "[]",
            get_settings().call_timeout,
        )

    @contextlib.contextmanager
    def evaluation_context(self) -> Iterator["Core"]:
        """Scope an evaluation context, discarding it on every exit path.

        :yields: This instance.
        """
        try:
            yield self
        finally:
            self.discard_context()


def _check_function_name(name: str) -> None:
    """Reject function names that would shadow the host-side API.

    :param name: Function name.
    :raises DeclarationError: If the name is invalid or reserved.
    """
    validate_name(name, "Function")
    if hasattr(Core, name) is True:
        raise DeclarationError(f"Function name {name!r} is reserved by outboard.Core")
