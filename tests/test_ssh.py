"""Tests for gitlab_fusion.ssh module."""

from __future__ import annotations

import logging
import socket
from unittest.mock import MagicMock, patch

import paramiko
import pytest

from gitlab_fusion import ssh
from gitlab_fusion.constants import CHANNEL_BUFFER_SIZE, CHANNEL_READ_TIMEOUT
from gitlab_fusion.exceptions import (
    AuthenticationError,
    ChannelError,
    KeyImportError,
    ProtocolReadError,
    SSHConnectionError,
)
from gitlab_fusion.ssh import (
    Channel,
    KeyAuthentication,
    PasswordAuthentication,
    Session,
    attach_logging,
    load_private_key,
)


class FakeParamikoChannel:
    """Scripted stand-in for ``paramiko.Channel``.

    Each stream is a list of bytes or exceptions consumed one per read; an
    empty stream times out until the remote side signals EOF, which happens
    once both scripts are exhausted.
    """

    def __init__(self, stdout=(), stderr=(), exit_status=0, exec_error=None):
        self.stdout = list(stdout)
        self.stderr = list(stderr)
        self.exit_status = exit_status
        self.exec_error = exec_error
        self.commands = []
        self.read_sizes = []
        self.timeout = None
        self.closed = False

    @property
    def eof_received(self):
        return not self.stdout and not self.stderr

    def settimeout(self, timeout):
        self.timeout = timeout

    def exec_command(self, command):
        if self.exec_error is not None:
            raise self.exec_error
        self.commands.append(command)

    def _next(self, items, size):
        self.read_sizes.append(size)
        if not items:
            if self.eof_received:
                return b""
            raise socket.timeout()
        item = items.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    def recv(self, size):
        return self._next(self.stdout, size)

    def recv_stderr(self, size):
        return self._next(self.stderr, size)

    def recv_ready(self):
        return bool(self.stdout)

    def recv_stderr_ready(self):
        return bool(self.stderr)

    def recv_exit_status(self):
        return self.exit_status

    def close(self):
        self.closed = True


def _run(fake, command="true"):
    out, err = [], []
    code = Channel(fake).execute(command, on_stdout=out.append, on_stderr=err.append)
    return code, b"".join(out), b"".join(err)


class TestChannelExecute:
    def test_hello_exit_zero(self):
        fake = FakeParamikoChannel(stdout=[b"hello"], exit_status=0)
        code, out, err = _run(fake, "echo -n hello")
        assert code == 0
        assert out == b"hello"
        assert err == b""
        assert fake.commands == ["echo -n hello"]

    def test_nonzero_exit_is_returned(self):
        fake = FakeParamikoChannel(stdout=[b"some output"], stderr=[b"oops"], exit_status=3)
        code, out, err = _run(fake, "exit 3")
        assert code == 3

    def test_stderr_goes_to_stderr_sink(self):
        fake = FakeParamikoChannel(stdout=[b"out-1", b"out-2"], stderr=[b"err-1"])
        _, out, err = _run(fake)
        assert out == b"out-1out-2"
        assert err == b"err-1"

    def test_timeouts_keep_polling(self):
        fake = FakeParamikoChannel(stdout=[socket.timeout(), socket.timeout(), b"late"], stderr=[socket.timeout()])
        code, out, _ = _run(fake)
        assert code == 0
        assert out == b"late"

    def test_reads_are_bounded(self):
        fake = FakeParamikoChannel(stdout=[b"x"])
        _run(fake)
        assert fake.timeout == CHANNEL_READ_TIMEOUT
        assert set(fake.read_sizes) == {CHANNEL_BUFFER_SIZE}

    def test_exec_request_failure_is_fatal(self):
        fake = FakeParamikoChannel(exec_error=paramiko.SSHException("Channel closed."))
        with pytest.raises(ChannelError, match="could not execute the command"):
            _run(fake, "make")

    def test_protocol_read_error(self):
        fake = FakeParamikoChannel(stdout=[paramiko.SSHException("bad packet")])
        with pytest.raises(ProtocolReadError, match="stdout"):
            _run(fake)

    def test_buffered_output_after_eof_is_drained(self):
        fake = FakeParamikoChannel(stdout=[b"tail"])
        fake.closed = True
        _, out, _ = _run(fake)
        assert out == b"tail"

    def test_channel_is_single_use(self):
        channel = Channel(FakeParamikoChannel())
        channel.execute("true")
        with pytest.raises(ChannelError, match="one command"):
            channel.execute("true")

    def test_context_manager_closes(self):
        fake = FakeParamikoChannel()
        with Channel(fake) as channel:
            channel.execute("true")
        assert fake.closed is True


def _write_rsa_key(path):
    paramiko.RSAKey.generate(2048).write_private_key_file(str(path))
    return path


class TestPrivateKey:
    def test_missing_file(self, tmp_path):
        with pytest.raises(KeyImportError, match="does not exist"):
            load_private_key(tmp_path / "id_ed25519")

    def test_empty_file(self, tmp_path):
        path = tmp_path / "id_ed25519"
        path.write_text("")
        with pytest.raises(KeyImportError, match="empty"):
            load_private_key(path)

    def test_unrecognised_format(self, tmp_path):
        path = tmp_path / "id_ed25519"
        path.write_text("this is not a key\n")
        with pytest.raises(KeyImportError, match="unrecognised"):
            load_private_key(path)

    def test_rsa_key_loads(self, tmp_path):
        key = load_private_key(_write_rsa_key(tmp_path / "id_rsa"))
        assert key.get_name() == "ssh-rsa"


class TestAuthenticationStrategies:
    def test_key_authentication(self, tmp_path):
        path = _write_rsa_key(tmp_path / "id_rsa")
        transport = MagicMock()
        KeyAuthentication(path).authenticate(transport, "buildbot")
        username, key = transport.auth_publickey.call_args[0]
        assert username == "buildbot"
        assert key.get_name() == "ssh-rsa"

    def test_key_rejected(self, tmp_path):
        path = _write_rsa_key(tmp_path / "id_rsa")
        transport = MagicMock()
        transport.auth_publickey.side_effect = paramiko.AuthenticationException("Authentication failed.")
        with pytest.raises(AuthenticationError, match="identity"):
            KeyAuthentication(path).authenticate(transport, "buildbot")

    def test_key_import_failure_skips_auth(self, tmp_path):
        transport = MagicMock()
        with pytest.raises(KeyImportError):
            KeyAuthentication(tmp_path / "missing").authenticate(transport, "buildbot")
        transport.auth_publickey.assert_not_called()

    def test_password_authentication(self):
        transport = MagicMock()
        PasswordAuthentication("hunter2").authenticate(transport, "buildbot")
        transport.auth_password.assert_called_once_with("buildbot", "hunter2")

    def test_password_rejected(self):
        transport = MagicMock()
        transport.auth_password.side_effect = paramiko.AuthenticationException("Authentication failed.")
        with pytest.raises(AuthenticationError):
            PasswordAuthentication("wrong").authenticate(transport, "buildbot")

    def test_password_repr_is_masked(self):
        assert "hunter2" not in repr(PasswordAuthentication("hunter2"))


class TestSession:
    def test_connect_refused(self):
        with (
            patch("gitlab_fusion.ssh.attach_logging"),
            patch("gitlab_fusion.ssh.socket.create_connection", side_effect=ConnectionRefusedError("refused")),
        ):
            with pytest.raises(SSHConnectionError, match="Unable to connect"):
                Session.connect("192.168.64.10", username="buildbot")

    def test_handshake_failure_releases_resources(self):
        sock = MagicMock()
        transport = MagicMock()
        transport.start_client.side_effect = paramiko.SSHException("Error reading SSH protocol banner")
        with (
            patch("gitlab_fusion.ssh.attach_logging"),
            patch("gitlab_fusion.ssh.socket.create_connection", return_value=sock),
            patch("gitlab_fusion.ssh.paramiko.Transport", return_value=transport),
        ):
            with pytest.raises(SSHConnectionError, match="handshake"):
                Session.connect("192.168.64.10", username="buildbot")
        transport.close.assert_called_once()
        sock.close.assert_called_once()

    def test_connect_success(self):
        transport = MagicMock()
        with (
            patch("gitlab_fusion.ssh.attach_logging") as mock_attach,
            patch("gitlab_fusion.ssh.socket.create_connection", return_value=MagicMock()) as mock_conn,
            patch("gitlab_fusion.ssh.paramiko.Transport", return_value=transport),
        ):
            session = Session.connect("192.168.64.10", username="buildbot", port=2222)
        mock_attach.assert_called_once()
        assert mock_conn.call_args[0][0] == ("192.168.64.10", 2222)
        transport.start_client.assert_called_once()
        assert session.host == "192.168.64.10"
        assert session.username == "buildbot"

    def test_authenticate_uses_strategy(self):
        transport = MagicMock()
        transport.is_authenticated.return_value = True
        strategy = MagicMock()
        session = Session(transport, "h", 22, "buildbot")
        session.authenticate(strategy)
        strategy.authenticate.assert_called_once_with(transport, "buildbot")
        assert session.is_authenticated is True

    def test_partial_authentication_is_rejected(self):
        transport = MagicMock()
        transport.is_authenticated.return_value = False
        with pytest.raises(AuthenticationError, match="further authentication"):
            Session(transport, "h", 22, "buildbot").authenticate(MagicMock())

    def test_open_channel(self):
        transport = MagicMock()
        raw = FakeParamikoChannel()
        transport.open_session.return_value = raw
        channel = Session(transport, "h", 22, "buildbot").open_channel()
        assert isinstance(channel, Channel)
        assert raw.timeout == CHANNEL_READ_TIMEOUT

    def test_open_channel_failure(self):
        transport = MagicMock()
        transport.open_session.side_effect = paramiko.SSHException("Administratively prohibited")
        with pytest.raises(ChannelError, match="could not open a session"):
            Session(transport, "h", 22, "buildbot").open_channel()

    def test_close_is_idempotent(self):
        transport = MagicMock()
        session = Session(transport, "h", 22, "buildbot")
        with session:
            pass
        session.close()
        transport.close.assert_called_once()
        with pytest.raises(SSHConnectionError, match="closed"):
            session.open_channel()


class TestAttachLogging:
    def test_attaches_once(self, monkeypatch):
        logger = logging.getLogger("paramiko")
        monkeypatch.setattr(ssh, "_logging_attached", False)
        monkeypatch.setattr(logger, "handlers", list(logger.handlers))
        monkeypatch.setattr(logger, "propagate", logger.propagate)
        monkeypatch.setattr(logger, "level", logger.level)

        assert attach_logging() is True
        assert attach_logging() is False
        forwarding = [h for h in logger.handlers if isinstance(h, ssh._ForwardingHandler)]
        assert len(forwarding) == 1

    def test_records_are_forwarded(self, monkeypatch):
        handler = ssh._ForwardingHandler()
        with patch("gitlab_fusion.ssh.log") as mock_log:
            record = logging.LogRecord("paramiko.transport", logging.WARNING, __file__, 1, "bad banner", None, None)
            handler.emit(record)
        mock_log.assert_called_once_with("WARN", "ssh: bad banner")
