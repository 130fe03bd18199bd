"""SSH sessions and command channels on top of paramiko."""

from __future__ import annotations

import logging
import socket
from pathlib import Path
from typing import Callable, Optional

try:
    import paramiko  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("paramiko is required but not installed") from exc

from gitlab_fusion.constants import (
    CHANNEL_BUFFER_SIZE,
    CHANNEL_READ_TIMEOUT,
    DEFAULT_SSH_PORT,
    SSH_CONNECT_TIMEOUT,
)
from gitlab_fusion.exceptions import (
    AuthenticationError,
    ChannelError,
    KeyImportError,
    ProtocolReadError,
    SSHConnectionError,
)
from gitlab_fusion.utils import log

OutputSink = Callable[[bytes], None]

_KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)

_logging_attached = False


class _ForwardingHandler(logging.Handler):
    """Send paramiko's records through :func:`log`."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = self.format(record)
        except Exception:  # pragma: no cover
            self.handleError(record)
            return
        if record.levelno >= logging.ERROR:
            level = "ERROR"
        elif record.levelno >= logging.WARNING:
            level = "WARN"
        else:
            level = "DEBUG"
        log(level, f"ssh: {message}")


def attach_logging() -> bool:
    """Route paramiko diagnostics into our log once per process.

    Returns True only for the call that attached the handler.
    """
    global _logging_attached
    if _logging_attached:
        return False
    logger = logging.getLogger("paramiko")
    logger.addHandler(_ForwardingHandler())
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    _logging_attached = True
    return True


def load_private_key(path: Path) -> "paramiko.PKey":
    """Load an unencrypted private key of any supported type."""
    path = Path(path)
    if not path.is_file():
        raise KeyImportError(f"Could not import private key at {path}: file does not exist")
    if path.stat().st_size == 0:
        raise KeyImportError(f"Could not import private key at {path}: file is empty")
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key_file(str(path))
        except (paramiko.SSHException, ValueError):
            continue
    raise KeyImportError(f"Could not import private key at {path}: unrecognised key format")


class KeyAuthentication:
    """Public key authentication with an identity file."""

    def __init__(self, identity_file: Path) -> None:
        self.identity_file = Path(identity_file)

    def __repr__(self) -> str:
        return f"KeyAuthentication({str(self.identity_file)!r})"

    def authenticate(self, transport: "paramiko.Transport", username: str) -> None:
        key = load_private_key(self.identity_file)
        log("DEBUG", f"Loaded {key.get_name()} identity from {self.identity_file}")
        try:
            transport.auth_publickey(username, key)
        except paramiko.SSHException as exc:
            raise AuthenticationError(f"Could not authenticate with identity {self.identity_file}: {exc}") from exc


class PasswordAuthentication:
    def __init__(self, password: str) -> None:
        self.password = password

    def __repr__(self) -> str:
        return "PasswordAuthentication('********')"

    def authenticate(self, transport: "paramiko.Transport", username: str) -> None:
        try:
            transport.auth_password(username, self.password)
        except paramiko.SSHException as exc:
            raise AuthenticationError(f"Could not authenticate {username} with a password: {exc}") from exc


class Channel:
    """A single-use session channel that runs exactly one command."""

    STDOUT = "stdout"
    STDERR = "stderr"

    def __init__(self, channel: "paramiko.Channel", read_timeout: float = CHANNEL_READ_TIMEOUT,
                 buffer_size: int = CHANNEL_BUFFER_SIZE) -> None:
        self._channel = channel
        self._buffer_size = buffer_size
        self._used = False
        self._channel.settimeout(read_timeout)

    def __enter__(self) -> "Channel":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._channel.close()

    @property
    def is_open(self) -> bool:
        return not self._channel.closed

    @property
    def is_eof(self) -> bool:
        return bool(self._channel.eof_received)

    def _read(self, stream: str) -> Optional[bytes]:
        reader = self._channel.recv if stream == self.STDOUT else self._channel.recv_stderr
        try:
            data = reader(self._buffer_size)
        except socket.timeout:
            return None
        except (paramiko.SSHException, OSError) as exc:
            raise ProtocolReadError(f"Reading from {stream} failed: {exc}") from exc
        return data or None

    def _drain(self, ready: Callable[[], bool], stream: str, sink: Optional[OutputSink]) -> None:
        while ready():
            data = self._read(stream)
            if data is None:
                return
            if sink is not None:
                sink(data)

    def execute(self, command: str, on_stdout: Optional[OutputSink] = None,
                on_stderr: Optional[OutputSink] = None) -> int:
        """Run ``command`` without a shell session and return its exit status.

        Output is polled from both streams with a short timeout each and
        handed to the sinks as it arrives. A nonzero exit status is returned,
        never raised.
        """
        if self._used:
            raise ChannelError("A channel can only execute one command")
        self._used = True
        try:
            self._channel.exec_command(command)
        except (paramiko.SSHException, OSError) as exc:
            raise ChannelError(f"The channel could not execute the command: {command}") from exc

        while self.is_open and not self.is_eof:
            data = self._read(self.STDOUT)
            if data is not None and on_stdout is not None:
                on_stdout(data)
            data = self._read(self.STDERR)
            if data is not None and on_stderr is not None:
                on_stderr(data)

        self._drain(self._channel.recv_ready, self.STDOUT, on_stdout)
        self._drain(self._channel.recv_stderr_ready, self.STDERR, on_stderr)
        return self._channel.recv_exit_status()


class Session:
    """An SSH transport to a single host.

    The session owns its socket and transport; :meth:`close` (or leaving a
    ``with`` block) disconnects both.
    """

    def __init__(self, transport: "paramiko.Transport", host: str, port: int, username: str) -> None:
        self._transport = transport
        self.host = host
        self.port = port
        self.username = username

    @classmethod
    def connect(cls, host: str, username: str, port: int = DEFAULT_SSH_PORT,
                timeout: float = SSH_CONNECT_TIMEOUT) -> "Session":
        attach_logging()
        log("DEBUG", f"Connecting to {username}@{host}:{port}")
        try:
            sock = socket.create_connection((host, port), timeout=timeout)
        except OSError as exc:
            raise SSHConnectionError(f"Unable to connect to {host}:{port}: {exc}") from exc

        transport = None
        try:
            transport = paramiko.Transport(sock)
            transport.start_client(timeout=timeout)
        except (paramiko.SSHException, OSError, EOFError) as exc:
            if transport is not None:
                transport.close()
            sock.close()
            raise SSHConnectionError(f"SSH handshake with {host}:{port} failed: {exc}") from exc

        server_key = transport.get_remote_server_key()
        log("DEBUG", f"{host} offered a {server_key.get_name()} host key")
        return cls(transport, host, port, username)

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None

    @property
    def is_authenticated(self) -> bool:
        return self._transport is not None and self._transport.is_authenticated()

    def _require_transport(self) -> "paramiko.Transport":
        if self._transport is None:
            raise SSHConnectionError(f"Session to {self.host} is closed")
        return self._transport

    def authenticate(self, strategy) -> None:
        """Authenticate with a :class:`KeyAuthentication` or :class:`PasswordAuthentication`."""
        transport = self._require_transport()
        strategy.authenticate(transport, self.username)
        if not self.is_authenticated:
            raise AuthenticationError(f"{self.host} requires further authentication for {self.username}")

    def open_channel(self) -> Channel:
        transport = self._require_transport()
        try:
            channel = transport.open_session(timeout=SSH_CONNECT_TIMEOUT)
        except (paramiko.SSHException, OSError) as exc:
            raise ChannelError(f"The channel to {self.host} could not open a session: {exc}") from exc
        return Channel(channel)
