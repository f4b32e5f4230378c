"""Companion-process dispatcher for outboard.

The companion runs one ``asyncio`` event loop serving a Unix socket. Every
connection carries one JSON request envelope and receives one JSON reply
envelope. Handlers that only await do not block each other; synchronous user
code blocks the loop for its duration.
"""

import ast
import asyncio
import contextlib
import importlib
import importlib.util
import inspect
import itertools
import json
import linecache
import logging
import os
import stat
import sys
import time
import traceback
import types
from collections.abc import Callable
from collections.abc import Iterable
from dataclasses import dataclass
from urllib.parse import unquote

from outboard.codegen import LOAD_HELPER
from outboard.codegen import METHOD_HELPER
from outboard.codegen import METHODS_NAME
from outboard.codegen import REQUIRE_HELPER
from outboard.config import DEBUG_ENV_VAR
from outboard.declarations import DEFINE_OPERATION
from outboard.declarations import DISCARD_OPERATION
from outboard.declarations import EVALUATE_OPERATION

IMPORT_HELPER: str = "__outboard_import__"
LOG_HELPER: str = "__outboard_log__"
DEPENDENCY_ATTR: str = "__outboard_dependency__"
CONTENT_TYPE: str = "application/json"
SOURCE_SCHEME: str = "outboard://"
NO_CONTEXT: str = "-"
_COMPILE_FLAGS: int = ast.PyCF_ALLOW_TOP_LEVEL_AWAIT

logger: logging.Logger = logging.getLogger("outboard.companion")


class BadRequest(Exception):
    """Raised when a request body cannot be decoded."""


def _mark_dependency(exc: BaseException, package: str) -> None:
    """Tag an import failure with the package that failed.

    :param exc: Import failure.
    :param package: Declared package name.
    """
    setattr(exc, DEPENDENCY_ATTR, package)


def _lazy_import(package: str) -> types.ModuleType:
    """Import ``package`` with its module body deferred to first attribute access.

    :param package: Dotted module name.
    :returns: Lazily-loading module.
    :raises ModuleNotFoundError: If the package cannot be found.
    """
    existing: types.ModuleType | None = sys.modules.get(package)
    if existing is not None:
        return existing

    spec = importlib.util.find_spec(package)
    if spec is None or spec.loader is None:
        raise ModuleNotFoundError(f"No module named {package!r}", name=package)
    loader = importlib.util.LazyLoader(spec.loader)
    spec.loader = loader
    module: types.ModuleType = importlib.util.module_from_spec(spec)
    sys.modules[package] = module
    loader.exec_module(module)
    return module


def require(package: str, kind: str = "eager") -> types.ModuleType:
    """Load one declared dependency.

    :param package: Dotted module name.
    :param kind: ``"eager"`` or ``"lazy"``.
    :returns: Imported module.
    :raises ImportError: Tagged with the package name when loading fails.
    """
    try:
        if kind == "lazy":
            return _lazy_import(package)
        return importlib.import_module(package)
    except ImportError as exc:
        _mark_dependency(exc, package)
        raise


async def import_async(package: str) -> types.ModuleType:
    """Import ``package`` off the event loop thread.

    :param package: Dotted module name.
    :returns: Imported module.
    :raises ImportError: Tagged with the package name when loading fails.
    """
    try:
        return await asyncio.to_thread(importlib.import_module, package)
    except ImportError as exc:
        _mark_dependency(exc, package)
        raise


def load_constant(text: str) -> object:
    return json.loads(text)


def name_method(method: object, name: str) -> object:
    """Give a lambda its declared name so tracebacks show it.

    :param method: Callable bound by the class program.
    :param name: Declared function name.
    :returns: The same callable.
    """
    if isinstance(method, types.FunctionType) is True and method.__name__ == "<lambda>":
        method.__code__ = method.__code__.replace(co_name=name, co_qualname=name)
        method.__name__ = name
        method.__qualname__ = name
    return method


def _runtime_helpers() -> dict[str, object]:
    return {
        REQUIRE_HELPER: require,
        IMPORT_HELPER: import_async,
        LOAD_HELPER: load_constant,
        METHOD_HELPER: name_method,
        LOG_HELPER: logger.debug,
    }


def _register_source(filename: str, source: str) -> None:
    """Make generated source visible to tracebacks.

    :param filename: Synthetic file name used when compiling.
    :param source: Program text.
    """
    linecache.cache[filename] = (len(source), None, source.splitlines(True), filename)


async def _settle(value: object) -> object:
    """Await ``value`` when it is awaitable.

    :param value: Result of user code.
    :returns: Final value.
    """
    if inspect.isawaitable(value) is True:
        return await value
    return value


def _format_stack(exc: BaseException) -> str:
    """Format a traceback without the dispatcher's own leading frames.

    :param exc: Raised exception.
    :returns: Traceback text.
    """
    tb: types.TracebackType | None = exc.__traceback__
    while tb is not None and tb.tb_frame.f_code.co_filename == __file__:
        tb = tb.tb_next
    return "".join(traceback.format_exception(type(exc), exc, tb, chain=False))


def _find_dependency(exc: BaseException) -> str | None:
    """Find the dependency marker on ``exc`` or on an exception it chains to.

    :param exc: Raised exception.
    :returns: Package name or ``None``.
    """
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        package: object = getattr(current, DEPENDENCY_ATTR, None)
        if isinstance(package, str) is True:
            return package
        current = current.__cause__ or current.__context__
    return None


def render_error(exc: BaseException) -> dict[str, object]:
    """Describe an exception for the host-side error translator.

    :param exc: Raised exception.
    :returns: ``{"error": {...}}`` payload.
    """
    info: dict[str, object] = {
        "name": type(exc).__name__,
        "message": str(exc),
        "stack": _format_stack(exc),
    }
    if isinstance(exc, SyntaxError) is True:
        info["message"] = exc.msg
        location: dict[str, object] = {}
        if exc.lineno is not None:
            location["line"] = exc.lineno
        if exc.offset is not None:
            location["column"] = exc.offset
        if len(location) > 0:
            info["loc"] = location
    package: str | None = _find_dependency(exc)
    if package is not None:
        info["dependency"] = package
    return {"error": info}


def _error_body(name: str, message: str) -> str:
    return json.dumps({"error": {"name": name, "message": message}})


def _encode_result(value: object) -> str:
    """Encode a result; ``None`` becomes an empty body.

    :param value: Result value.
    :returns: JSON text or ``""``.
    """
    if value is None:
        return ""
    return json.dumps(value)


def _parse_path(path: str) -> tuple[str, str, str] | None:
    """Split ``/<clsid>/<context>/<operation>``.

    :param path: Request target.
    :returns: Unquoted segments, or ``None`` when the path does not route.
    """
    segments: list[str] = path[1:].split("/")
    if len(segments) != 3:
        return None
    if any(len(segment) == 0 for segment in segments) is True:
        return None
    clsid, context_id, operation = (unquote(segment) for segment in segments)
    return clsid, context_id, operation


def _decode_body(body: object, expected: type, description: str) -> object:
    """Decode one JSON request body.

    :param body: Raw body text.
    :param expected: Required top-level JSON type.
    :param description: Shape description for error messages.
    :returns: Decoded value.
    :raises BadRequest: If the body is not JSON of the expected shape.
    """
    if isinstance(body, str) is False:
        raise BadRequest("Body must be JSON text")
    try:
        decoded: object = json.loads(body)
    except json.JSONDecodeError as exc:
        raise BadRequest(f"Malformed JSON: {exc.msg}") from exc
    if isinstance(decoded, expected) is False:
        raise BadRequest(f"Body must be {description}")
    return decoded


@dataclass
class RemoteClass:
    """One defined class: the namespace its program ran in, plus its method table."""

    clsid: str
    namespace: dict[str, object]
    methods: dict[str, Callable[..., object]]

    def new_context(self) -> dict[str, object]:
        """Create an evaluation context seeded with the class bindings.

        Rebinding a name in the context stays local to it; mutating a shared
        object is visible to the class and every other context.

        :returns: Fresh context globals.
        """
        return dict(self.namespace)


class CompanionServer:
    """Resolve requests to define, invoke, evaluate and discard operations."""

    classes: dict[str, RemoteClass]
    contexts: dict[tuple[str, str], dict[str, object]]

    def __init__(self) -> None:
        """Initialize an empty dispatcher."""
        self.classes = {}
        self.contexts = {}
        self._chunk_ids = itertools.count(1)
        self._stopped: asyncio.Event | None = None
        self._closing = False

    async def define_class(self, clsid: str, source: str) -> str:
        """Run a class-definition program and cache its result.

        :param clsid: Class identity.
        :param source: Program text.
        :returns: ``clsid``.
        :raises TypeError: If the program does not produce a method table.
        """
        filename: str = f"{SOURCE_SCHEME}{clsid}"
        _register_source(filename, source)
        module: types.ModuleType = types.ModuleType(clsid)
        namespace: dict[str, object] = module.__dict__
        namespace.update(_runtime_helpers())
        code_obj: types.CodeType = compile(source, filename, "exec", flags=_COMPILE_FLAGS, dont_inherit=True)
        await _settle(eval(code_obj, namespace))

        methods: object = namespace.get(METHODS_NAME)
        if isinstance(methods, dict) is False:
            raise TypeError(f"Class program for {clsid} did not define {METHODS_NAME}")
        self.classes[clsid] = RemoteClass(clsid, namespace, dict(methods))
        return clsid

    async def invoke(self, klass: RemoteClass, name: str, args: list[object]) -> object:
        """Call one method and await its result.

        :param klass: Defined class.
        :param name: Method name.
        :param args: Positional arguments.
        :returns: Method result.
        """
        return await _settle(klass.methods[name](*args))

    async def evaluate(self, klass: RemoteClass, context_id: str, source: str) -> object:
        """Run source in a persistent context and return its trailing expression.

        :param klass: Defined class.
        :param context_id: Caller-instance identity.
        :param source: Source text; top-level ``await`` is allowed.
        :returns: Value of the trailing expression, or ``None``.
        """
        key: tuple[str, str] = (klass.clsid, context_id)
        context: dict[str, object] | None = self.contexts.get(key)
        if context is None:
            context = klass.new_context()
            self.contexts[key] = context
            logger.debug("Created context %s for %s", context_id, klass.clsid)

        filename: str = f"{SOURCE_SCHEME}{klass.clsid}/{context_id}/{next(self._chunk_ids)}"
        _register_source(filename, source)
        tree: ast.Module = compile(
            source,
            filename,
            "exec",
            flags=ast.PyCF_ONLY_AST | _COMPILE_FLAGS,
            dont_inherit=True,
        )
        trailing: ast.Expression | None = None
        if len(tree.body) > 0 and isinstance(tree.body[-1], ast.Expr) is True:
            trailing = ast.Expression(tree.body.pop().value)

        body_code: types.CodeType = compile(tree, filename, "exec", flags=_COMPILE_FLAGS, dont_inherit=True)
        await _settle(eval(body_code, context))
        if trailing is None:
            return None
        expression_code: types.CodeType = compile(
            trailing, filename, "eval", flags=_COMPILE_FLAGS, dont_inherit=True
        )
        return await _settle(eval(expression_code, context))

    def discard(self, clsid: str, context_id: str) -> bool:
        """Forget one evaluation context; absent contexts are ignored.

        :param clsid: Class identity.
        :param context_id: Caller-instance identity.
        :returns: ``True``.
        """
        removed: object = self.contexts.pop((clsid, context_id), None)
        if removed is not None:
            logger.debug("Discarded context %s for %s", context_id, clsid)
        return True

    async def dispatch(self, method: object, path: object, body: object) -> tuple[int, str]:
        """Route one request and produce its status and body.

        :param method: Request method; only ``POST`` is accepted.
        :param path: Request target.
        :param body: JSON body text.
        :returns: ``(status, body)``.
        """
        if method != "POST" or isinstance(path, str) is False or path.startswith("/") is False:
            return 405, _error_body("MethodNotAllowed", "Method Not Allowed")

        route: tuple[str, str, str] | None = _parse_path(path)
        if route is None:
            return 404, _error_body("NotFound", f"No route for {path}")
        clsid, context_id, operation = route

        if operation == DISCARD_OPERATION:
            return 200, _encode_result(self.discard(clsid, context_id))

        klass: RemoteClass | None = self.classes.get(clsid)
        if klass is None and operation != DEFINE_OPERATION:
            return 404, _error_body("NotFound", f"Class {clsid} not defined")
        is_method: bool = operation not in (DEFINE_OPERATION, EVALUATE_OPERATION)
        if klass is not None and is_method is True and operation not in klass.methods:
            return 404, _error_body("NotFound", f"Method {clsid}#{operation} not found")

        try:
            if is_method is True:
                payload: object = _decode_body(body, list, "a JSON array of arguments")
            else:
                payload = _decode_body(body, str, "a JSON string of source code")
        except BadRequest as exc:
            return 400, _error_body("BadRequest", str(exc))

        try:
            if operation == DEFINE_OPERATION:
                result: object = await self.define_class(clsid, payload)
            elif operation == EVALUATE_OPERATION:
                result = await self.evaluate(klass, context_id, payload)
            else:
                result = await self.invoke(klass, operation, payload)
            return 200, _encode_result(result)
        except Exception as exc:
            rendered: str = json.dumps(render_error(exc))
            logger.debug("Error 500 %s", rendered)
            return 500, rendered

    async def handle_raw(self, raw: bytes) -> dict[str, object]:
        """Decode one request envelope and build its reply envelope.

        :param raw: Bytes read from the connection.
        :returns: Reply envelope.
        """
        started: float = time.perf_counter()
        try:
            envelope: object = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            envelope = None
        if isinstance(envelope, dict) is False:
            status: int = 400
            body: str = _error_body("BadRequest", "Malformed request envelope")
        else:
            logger.debug("%s %s", envelope.get("method"), envelope.get("path"))
            status, body = await self.dispatch(envelope.get("method"), envelope.get("path"), envelope.get("body"))

        elapsed_ms: float = (time.perf_counter() - started) * 1000.0
        logger.debug("Completed %d in %.2fms", status, elapsed_ms)
        return {"status": status, "content_type": CONTENT_TYPE, "body": body}

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Serve one connection: read to EOF, reply, close.

        :param reader: Connection reader.
        :param writer: Connection writer.
        """
        try:
            raw: bytes = await reader.read()
            if len(raw) == 0:
                return
            reply: dict[str, object] = await self.handle_raw(raw)
            writer.write(json.dumps(reply).encode("utf-8"))
            await writer.drain()
        except (ConnectionError, OSError) as exc:
            logger.debug("Connection dropped before reply: %s", exc)
        finally:
            writer.close()
            with contextlib.suppress(ConnectionError, OSError):
                await writer.wait_closed()

    def close(self) -> None:
        """Stop accepting connections and let the serve loop finish."""
        logger.debug("Shutting down")
        if self._closing is True:
            return
        self._closing = True
        if self._stopped is not None:
            self._stopped.set()

    async def serve(self, socket_path: str, stop_signals: Iterable[int] = ()) -> None:
        """Listen on ``socket_path`` until :meth:`close` is called.

        :param socket_path: Unix socket path.
        :param stop_signals: Signals that trigger a graceful shutdown.
        """
        self._stopped = asyncio.Event()
        if self._closing is True:
            self._stopped.set()
        loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
        for signal_number in stop_signals:
            loop.add_signal_handler(signal_number, self.close)

        server: asyncio.AbstractServer = await asyncio.start_unix_server(self._handle_connection, path=socket_path)
        os.chmod(socket_path, stat.S_IRUSR | stat.S_IWUSR)
        logger.debug("Server ready, listening on %s", socket_path)
        try:
            await self._stopped.wait()
        finally:
            server.close()
            await server.wait_closed()


def _configure_logging(debug: bool) -> None:
    level: int = logging.WARNING
    if debug is True:
        level = logging.DEBUG
    logging.basicConfig(stream=sys.stderr, level=level, format="[outboard] %(message)s")


def run(socket_path: str, stop_signals: Iterable[int] = (), debug: bool | None = None) -> int:
    """Run the companion dispatcher until it is asked to stop.

    :param socket_path: Unix socket path to listen on.
    :param stop_signals: Signals that trigger a graceful shutdown.
    :param debug: Verbose logging; defaults to the ``OUTBOARD_DEBUG`` environment flag.
    :returns: Process exit status.
    """
    if debug is None:
        debug = len(os.environ.get(DEBUG_ENV_VAR, "")) > 0
    _configure_logging(debug)
    logger.debug("Starting up...")
    server: CompanionServer = CompanionServer()
    asyncio.run(server.serve(socket_path, tuple(stop_signals)))
    return 0
