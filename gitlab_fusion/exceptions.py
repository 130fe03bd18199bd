"""Custom exceptions for gitlab-fusion."""


class FusionError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ConfigurationError(FusionError):
    """Raised when settings or environment values are invalid."""


class ToolError(FusionError):
    """Base class for failures of the ``vmrun`` control tool."""

    def __init__(self, message: str, exit_code: int = 2, stdout: str = "", stderr: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class ToolSpawnError(ToolError):
    """``vmrun`` could not be started at all (missing or not executable)."""


class ToolExecutionError(ToolError):
    """``vmrun`` ran but exited nonzero or was killed by a signal."""


class SecureShellError(FusionError):
    """Base class for SSH session and channel failures."""


class SSHConnectionError(SecureShellError):
    pass


class AuthenticationError(SecureShellError):
    pass


class KeyImportError(SecureShellError):
    pass


class ChannelError(SecureShellError):
    """A channel could not be opened or could not issue its exec request."""


class ProtocolReadError(SecureShellError):
    pass


class ReadinessExhausted(FusionError):
    """The guest never accepted an SSH command within the retry budget."""

    def __init__(self, host: str, attempts: int) -> None:
        super().__init__(f"SSH on {host} did not become ready after {attempts} attempts")
        self.host = host
        self.attempts = attempts


class BuildFailure(FusionError):
    """The job script ran and exited nonzero."""

    def __init__(self, message: str, exit_code: int) -> None:
        super().__init__(message)
        self.exit_code = exit_code
