"""Lifecycle of the single companion process shared by every remote class."""

import atexit
import enum
import json
import logging
import os
import shutil
import signal
import subprocess
import tempfile
import threading
import time
from collections.abc import Callable
from pathlib import Path

from outboard.codegen import generate_bootstrap_code
from outboard.config import DEBUG_ENV_VAR
from outboard.config import OutboardSettings
from outboard.config import get_settings
from outboard.declarations import DEFINE_OPERATION
from outboard.declarations import Function
from outboard.errors import ProtocolError
from outboard.errors import RemoteExecutionError
from outboard.errors import SpawnTimeoutError
from outboard.errors import TransportFailureError
from outboard.transport import CompanionResponse
from outboard.transport import TransportClient
from outboard.transport import probe
from outboard.translate import translate_failure

SOCKET_NAME: str = "outboard.sock"
POLL_INTERVAL: float = 0.2
SHUTDOWN_GRACE: float = 5.0

logger: logging.Logger = logging.getLogger(__name__)


class SupervisorState(enum.Enum):
    """Companion lifecycle states."""

    NOT_STARTED = "not_started"
    SPAWNING = "spawning"
    READY = "ready"
    TERMINATED = "terminated"


def _package_search_root() -> Path:
    """Return the directory the companion needs on its path to import outboard.

    :returns: Parent directory of the ``outboard`` package.
    """
    return Path(__file__).resolve().parent.parent


def build_environment(settings: OutboardSettings) -> dict[str, str]:
    """Build the companion's environment.

    :param settings: Active settings.
    :returns: Environment mapping.
    """
    env: dict[str, str] = dict(os.environ)
    env.update(settings.env)

    search_path: list[str] = []
    if settings.modules_root is not None:
        search_path.append(str(Path(settings.modules_root).resolve()))
    search_path.append(str(_package_search_root()))
    inherited: str = env.get("PYTHONPATH", "")
    if len(inherited) > 0:
        search_path.append(inherited)
    env["PYTHONPATH"] = os.pathsep.join(search_path)

    if settings.debug is True:
        env[DEBUG_ENV_VAR] = "1"
    else:
        env.pop(DEBUG_ENV_VAR, None)
    return env


def _terminate(process: subprocess.Popen[bytes], scratch_dir: Path) -> None:
    """Stop the companion and remove its scratch directory.

    :param process: Companion process handle.
    :param scratch_dir: Scratch directory holding the socket.
    """
    if process.poll() is None:
        try:
            process.send_signal(signal.SIGTERM)
            process.wait(timeout=SHUTDOWN_GRACE)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
        except ProcessLookupError:
            pass
    shutil.rmtree(scratch_dir, ignore_errors=True)


class CompanionSupervisor:
    """Spawn the companion once, wait for its socket, and define classes on it."""

    _lock: threading.RLock
    _state: SupervisorState
    _process: subprocess.Popen[bytes] | None
    _scratch_dir: Path | None
    _transport: TransportClient | None
    _broken: TransportFailureError | None
    _defined: set[str]
    _failed: dict[str, RemoteExecutionError]

    def __init__(self) -> None:
        """Initialize a supervisor with no companion."""
        self._lock = threading.RLock()
        self._state = SupervisorState.NOT_STARTED
        self._process = None
        self._scratch_dir = None
        self._transport = None
        self._broken = None
        self._defined = set()
        self._failed = {}

    @property
    def state(self) -> SupervisorState:
        """Return the current lifecycle state.

        :returns: Lifecycle state.
        """
        with self._lock:
            return self._state

    @property
    def pid(self) -> int | None:
        """Return the companion pid.

        :returns: Process id or ``None`` before spawning.
        """
        process: subprocess.Popen[bytes] | None = self._process
        if process is None:
            return None
        return process.pid

    @property
    def scratch_dir(self) -> Path | None:
        """Return the scratch directory.

        :returns: Directory path or ``None`` before spawning.
        """
        return self._scratch_dir

    @property
    def socket_path(self) -> Path | None:
        """Return the companion socket path.

        :returns: Socket path or ``None`` before spawning.
        """
        if self._scratch_dir is None:
            return None
        return self._scratch_dir / SOCKET_NAME

    def is_defined(self, clsid: str) -> bool:
        """Report whether a class has been defined in the companion.

        :param clsid: Class identity.
        :returns: ``True`` once the definition succeeded.
        """
        with self._lock:
            return clsid in self._defined

    def ensure_spawned(self) -> None:
        """Launch the companion if no process has been started yet.

        :raises TransportFailureError: If the companion was already shut down.
        """
        with self._lock:
            if self._process is not None:
                return
            if self._state is SupervisorState.TERMINATED:
                raise TransportFailureError("Companion process has been shut down")

            settings: OutboardSettings = get_settings()
            self._state = SupervisorState.SPAWNING
            scratch_dir: Path = Path(tempfile.mkdtemp(prefix="outboard"))
            socket_path: Path = scratch_dir / SOCKET_NAME
            command: list[str] = [settings.executable, "-c", generate_bootstrap_code(), str(socket_path)]
            try:
                process: subprocess.Popen[bytes] = subprocess.Popen(  # noqa: S603
                    command,
                    env=build_environment(settings),
                    stdin=subprocess.DEVNULL,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
            except OSError as exc:
                shutil.rmtree(scratch_dir, ignore_errors=True)
                self._state = SupervisorState.NOT_STARTED
                raise SpawnTimeoutError(f"Could not start {settings.executable}: {exc}") from exc

            self._scratch_dir = scratch_dir
            self._process = process
            self._transport = TransportClient(socket_path)
            atexit.register(self.shutdown)
            logger.debug("Spawned companion pid=%d socket=%s", process.pid, socket_path)

    def wait_ready(self, timeout: float | None = None) -> None:
        """Poll until the companion socket accepts a connection.

        :param timeout: Seconds to wait; defaults to the configured spawn timeout.
        :raises SpawnTimeoutError: If the socket never accepts, or the companion exits.
        """
        with self._lock:
            if self._state is SupervisorState.READY:
                return
            process: subprocess.Popen[bytes] | None = self._process
            socket_path: Path | None = self.socket_path
            if process is None or socket_path is None:
                raise SpawnTimeoutError("Companion process has not been spawned")

            if timeout is None:
                timeout = get_settings().spawn_timeout
            deadline: float = time.monotonic() + timeout
            while True:
                if socket_path.exists() is True and probe(socket_path) is True:
                    self._state = SupervisorState.READY
                    logger.debug("Companion ready on %s", socket_path)
                    return
                exit_code: int | None = process.poll()
                if exit_code is not None:
                    raise SpawnTimeoutError(f"Companion process exited with status {exit_code} before listening")
                if time.monotonic() > deadline:
                    raise SpawnTimeoutError(f"socket {socket_path} not ready after {timeout:g}s")
                time.sleep(POLL_INTERVAL)

    def ensure_ready(self) -> TransportClient:
        """Spawn the companion if needed and wait for it.

        :returns: Transport bound to the companion socket.
        :raises TransportFailureError: If the companion was marked broken.
        """
        with self._lock:
            if self._broken is not None:
                raise TransportFailureError(str(self._broken))
            self.ensure_spawned()
            self.wait_ready()
            transport: TransportClient | None = self._transport
            if transport is None:
                raise TransportFailureError("Companion transport is not available")
            return transport

    def transport(self) -> TransportClient:
        """Return the transport of a ready companion.

        :returns: Transport.
        :raises TransportFailureError: If the companion is broken or not ready.
        """
        if self._broken is not None:
            raise TransportFailureError(str(self._broken))
        transport: TransportClient | None = self._transport
        if transport is None or self._state is not SupervisorState.READY:
            raise TransportFailureError("Companion process is not ready")
        return transport

    def mark_broken(self, error: TransportFailureError) -> None:
        """Record that the companion can no longer be used in this process.

        :param error: Failure that broke the companion.
        """
        with self._lock:
            if self._broken is None:
                self._broken = error
                logger.error("Companion marked unusable: %s", error)

    def ensure_defined(self, clsid: str, program_factory: Callable[[], str]) -> None:
        """Define a class in the companion once.

        A definition the companion rejects is remembered; later attempts raise the
        same error. Timeouts and host-side failures are not remembered.

        :param clsid: Class identity.
        :param program_factory: Callable returning the class-definition program.
        :raises OutboardError: If the definition fails.
        """
        with self._lock:
            transport: TransportClient = self.ensure_ready()
            if clsid in self._defined:
                return
            failed: RemoteExecutionError | None = self._failed.get(clsid)
            if failed is not None:
                raise failed

            try:
                program: str = program_factory()
                response: CompanionResponse = transport.send(
                    clsid,
                    None,
                    DEFINE_OPERATION,
                    json.dumps(program, ensure_ascii=False),
                    get_settings().call_timeout,
                )
                if response.ok is False:
                    raise translate_failure(response, None, get_settings().logger)
                if response.payload() != clsid:
                    raise ProtocolError(f"Companion acknowledged the wrong class for {clsid}")
            except TransportFailureError as exc:
                self.mark_broken(exc)
                raise
            except RemoteExecutionError as exc:
                self._failed[clsid] = exc
                raise

            self._defined.add(clsid)
            logger.debug("Defined class %s", clsid)

    def call(
        self,
        clsid: str,
        context_id: str | None,
        operation: str,
        body: str,
        timeout: float,
        function: Function | None = None,
    ) -> object:
        """Send one request to a ready companion and decode its reply.

        :param clsid: Class identity.
        :param context_id: Caller-instance identity, or ``None``.
        :param operation: Operation or method name.
        :param body: JSON body text.
        :param timeout: Seconds the call may take.
        :param function: Declaration being invoked, for error attribution.
        :returns: Decoded result.
        :raises OutboardError: For transport, timeout, protocol and remote failures.
        """
        transport: TransportClient = self.transport()
        try:
            response: CompanionResponse = transport.send(clsid, context_id, operation, body, timeout)
        except TransportFailureError as exc:
            self.mark_broken(exc)
            raise
        if response.ok is True:
            return response.payload()
        raise translate_failure(response, function, get_settings().logger)

    def shutdown(self) -> None:
        """Terminate the companion and remove its scratch directory. Idempotent."""
        with self._lock:
            process: subprocess.Popen[bytes] | None = self._process
            scratch_dir: Path | None = self._scratch_dir
            self._process = None
            self._transport = None
            self._state = SupervisorState.TERMINATED
            self._defined.clear()
            self._failed.clear()

        if process is not None and scratch_dir is not None:
            logger.debug("Shutting down companion pid=%d", process.pid)
            _terminate(process, scratch_dir)


_SUPERVISOR_LOCK: threading.Lock = threading.Lock()
_SUPERVISOR: CompanionSupervisor | None = None


def get_supervisor() -> CompanionSupervisor:
    """Return the process-wide supervisor, creating it on first use.

    :returns: Supervisor singleton.
    """
    global _SUPERVISOR
    with _SUPERVISOR_LOCK:
        if _SUPERVISOR is None:
            _SUPERVISOR = CompanionSupervisor()
        return _SUPERVISOR


def shutdown_companion() -> bool:
    """Shut the companion down if one was started.

    After shutdown no further companion can be spawned in this process.

    :returns: ``True`` when a running companion was stopped.
    """
    with _SUPERVISOR_LOCK:
        supervisor: CompanionSupervisor | None = _SUPERVISOR
    if supervisor is None:
        return False
    was_running: bool = supervisor.pid is not None
    supervisor.shutdown()
    return was_running
