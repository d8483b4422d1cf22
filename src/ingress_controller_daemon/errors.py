"""
Error Taxonomy for the Ingress Controller Daemon

Components raise these exceptions and never terminate the process on their
own. The launch routine is the single place that turns a failure into a
logged stage label and a process exit status.

Fatal-at-startup:
    ConfigError, ManagerError, RegistrationError, SubsystemError
Fatal-at-runtime:
    LeaderElectionLost, ShutdownTimeout, ConnectionLost, or any error raised
    by a runnable
"""


class DaemonError(Exception):
    """Base class for all daemon errors."""


class ConfigError(DaemonError):
    """Static configuration could not be loaded or failed validation."""

    def __init__(self, errors):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class ManagerError(DaemonError):
    """The manager could not be constructed (client, scheme or listeners)."""


class RegistrationError(DaemonError):
    """A probe or runnable could not be registered with the manager."""


class SubsystemError(DaemonError):
    """A subsystem failed to register itself with the manager."""


class LeaderElectionLost(DaemonError):
    """This replica stopped leading while the run loop was active."""


class ShutdownTimeout(DaemonError):
    """Runnables did not stop within the graceful shutdown period."""


class BootstrapError(DaemonError):
    """
    Failure of a named bootstrap stage.

    Attributes:
        stage (str): Stage label logged on termination, e.g.
            "unable to parse static config".
        cause (BaseException): The underlying error.
    """

    def __init__(self, stage: str, cause: BaseException):
        self.stage = stage
        self.cause = cause
        super().__init__(f"{stage}: {cause}")


class ConnectionLost(DaemonError):
    """The control plane stayed unreachable after every connection retry."""
