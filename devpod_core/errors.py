from __future__ import annotations


class DevpodError(RuntimeError):
    """Base error; message is suitable for printing to the user as-is."""


class ConfigurationError(DevpodError):
    """Raised when a client cannot be built from the given provider/workspace state."""


class OptionsError(DevpodError):
    """Raised for malformed or invalid provider option values."""


class StatusError(DevpodError):
    """Raised when a provider reports a status that cannot be parsed."""


class TunnelError(DevpodError):
    """Raised when the agent tunnel stream violates the framing protocol."""


class CommandError(DevpodError):
    """Raised when a provider command exits non-zero or cannot be started."""

    def __init__(
        self,
        message: str,
        *,
        command: str = "",
        exit_code: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ):
        super().__init__(message)
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr

    @classmethod
    def from_exit(
        cls, command: str, exit_code: int, *, stdout: str = "", stderr: str = ""
    ) -> "CommandError":
        details = (stderr or "").strip() or (stdout or "").strip()
        if details:
            message = f"Error: Command failed (exit {exit_code}): {command}\n{details}"
        else:
            message = f"Error: Command failed (exit {exit_code}): {command}"
        return cls(message, command=command, exit_code=exit_code, stdout=stdout, stderr=stderr)


class DownloadError(DevpodError):
    """Raised when a provider binary cannot be fetched.

    ``permanent`` errors are never retried.
    """

    def __init__(self, message: str, *, permanent: bool = False):
        super().__init__(message)
        self.permanent = permanent


class HTTPStatusError(DownloadError):
    def __init__(self, status_code: int, url: str, body: str = ""):
        self.status_code = status_code
        self.url = url
        self.body = body
        if body:
            message = (
                f"received status code {status_code} when trying to download {url}: {body}"
            )
        else:
            message = f"received status code {status_code} when trying to download {url}"
        # 408 and 429 are client errors worth retrying
        permanent = 400 <= status_code < 500 and status_code not in (408, 429)
        super().__init__(message, permanent=permanent)


class ChecksumError(DownloadError):
    def __init__(self, message: str):
        super().__init__(message, permanent=True)


class CancelledError(DevpodError):
    """Raised when an operation observes a cancelled token."""


class DeadlineExceeded(CancelledError):
    """Raised when an operation observes an expired token deadline."""


class InjectTimeoutError(DeadlineExceeded):
    """Raised when the agent could not be injected within the configured timeout."""
