"""Error taxonomy shared by every migration phase.

Each error carries the phase it was raised in so the CLI can print a
diagnostic of the form ``[phase] message`` before exiting.
"""


class MigrationError(Exception):
    """Base class for fatal migration errors."""

    phase = "migration"

    def __init__(self, message: str, phase: str | None = None):
        super().__init__(message)
        if phase:
            self.phase = phase


class AuthError(MigrationError):
    """Session could not be established or failed its liveness check."""

    phase = "login"


class ConfigError(MigrationError):
    """Mapping or credentials input is missing required values."""

    phase = "config"


class ResourceTimeoutError(MigrationError, TimeoutError):
    """A custom resource never reached the wanted condition in time."""


class ResourceFailedError(MigrationError):
    """A custom resource reported a failure condition."""


class ProvisioningError(MigrationError):
    """Destination volume could not be created."""

    phase = "provision"


class LaunchError(MigrationError):
    """Ephemeral workload could not be created or failed to start."""

    phase = "launch"


class ReadinessTimeoutError(LaunchError, TimeoutError):
    """Ephemeral workload did not become Ready in time."""


class TransferError(MigrationError):
    """Copying data between workloads failed."""

    phase = "transfer"


class ExecError(TransferError):
    """Command executed inside a workload returned a non-zero exit code."""

    def __init__(self, message: str, returncode: int | None = None,
                 stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
