"""Custom error types for outboard."""


class OutboardError(Exception):
    """Base class for all outboard errors."""


class DeclarationError(OutboardError, ValueError):
    """Raised when a remote-class declaration is invalid."""


class SpawnTimeoutError(OutboardError, TimeoutError):
    """Raised when the companion process never becomes reachable."""


class TransportFailureError(OutboardError):
    """Raised when an established companion connection breaks."""


class CallTimeoutError(OutboardError, TimeoutError):
    """Raised when one remote call exceeds its timeout."""


class ProtocolError(OutboardError):
    """Raised for unexpected statuses or message shapes from the companion."""


class RemoteExecutionError(OutboardError):
    """Raised when code running in the companion process raises."""

    remote_type_name: str
    remote_message: str
    backtrace: list[str]
    attributes: dict[str, object]

    def __init__(
        self,
        message: str,
        remote_type_name: str = "Exception",
        remote_message: str = "",
        backtrace: list[str] | None = None,
        attributes: dict[str, object] | None = None,
    ) -> None:
        """Initialize a remote exception wrapper.

        :param message: Human-readable host-side message.
        :param remote_type_name: Original remote exception type name.
        :param remote_message: Original remote exception message.
        :param backtrace: Reconstructed ``source:line:in call`` frames, outermost first.
        :param attributes: Raw error attributes reported by the companion.
        """
        self.remote_type_name = remote_type_name
        self.remote_message = remote_message
        if backtrace is None:
            self.backtrace = []
        else:
            self.backtrace = list(backtrace)
        if attributes is None:
            self.attributes = {}
        else:
            self.attributes = dict(attributes)
        super().__init__(message)
        if len(self.backtrace) > 0:
            self.add_note("Remote backtrace:\n" + "\n".join(f"  {frame}" for frame in self.backtrace))


class DependencyLoadError(RemoteExecutionError):
    """Raised when a declared external package cannot be loaded remotely."""

    @property
    def dependency(self) -> str | None:
        """Return the package name that failed to load.

        :returns: Package name or ``None`` when the companion did not report one.
        """
        package: object = self.attributes.get("dependency")
        if isinstance(package, str) is True:
            return package
        return None
