# tests/conftest.py
import os
import socket
import threading
from unittest.mock import MagicMock

import msgpack
import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa

import projupdate_client as pc

LOGIN_REPLIES = ["challenge-7f3a", "ACK: welcome", "ACK: "]
INIT_REPLIES = ["ACK: ", "ACK: "]


class FakeChannel:
    """Scripted stand-in for SecureChannel.

    Replies are handed out in order by read_line; every written line is
    recorded in ``written``.
    """

    def __init__(self, replies=(), raw=b""):
        self.replies = list(replies)
        self.written = []
        self.raw = raw
        self.raw_requests = []
        self.closed = False

    def write_line(self, line):
        self.written.append(line)

    def read_line(self):
        if not self.replies:
            raise pc.ChannelError("no scripted reply left")
        return self.replies.pop(0)

    def read_raw(self, n):
        self.raw_requests.append(n)
        return self.raw[:n]

    def is_closed(self):
        return self.closed

    def close(self):
        self.closed = True


def make_socket(connected=True):
    sock = MagicMock(spec=socket.socket)
    if not connected:
        sock.getpeername.side_effect = OSError("not connected")
    return sock


def make_connection(channel, sock=None):
    return pc.ServerConnection(
        sock if sock is not None else make_socket(),
        channel_factory=lambda s, key, server_key: channel,
        platform_supplier=lambda: "linux-x64",
    )


def active_connection(replies=(), raw=b"", platform=None):
    """Return (connection, channel) with login and initialize already done."""
    channel = FakeChannel(LOGIN_REPLIES + INIT_REPLIES + list(replies), raw=raw)
    conn = make_connection(channel)
    conn.start_session("client-a", "pem", "proj", platform)
    del channel.written[:]
    return conn, channel


@pytest.fixture(autouse=True)
def no_server_key_env(monkeypatch):
    monkeypatch.delenv("PROJUPDATE_SERVER_KEY", raising=False)


# ================================================================
# REAL-KEY FIXTURES
# ================================================================
def _private_pem(key):
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )


def _public_pem(key):
    return key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )


@pytest.fixture(scope="session")
def client_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def server_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def client_pem(client_key):
    return _private_pem(client_key)


@pytest.fixture(scope="session")
def server_public_pem(server_key):
    return _public_pem(server_key)


@pytest.fixture
def socket_pair():
    client, server = socket.socketpair()
    client.settimeout(10)
    server.settimeout(10)
    yield client, server
    client.close()
    server.close()


def server_handshake(sock, server_key):
    """Server side of the channel setup; returns (SecureChannel, client hello)."""
    nonce = os.urandom(32)
    server_der = server_key.public_key().public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    pc._write_message(sock, pc._MSG_SERVER_HELLO, {"server_pub": server_der, "nonce": nonce})

    msg_type, payload = pc._read_message(sock)
    assert msg_type == pc._MSG_CLIENT_HELLO
    hello = msgpack.unpackb(payload, raw=False)

    client_pub = serialization.load_der_public_key(hello["client_pub"])
    client_pub.verify(hello["signature"], nonce + hello["session_key"], pc._PSS, hashes.SHA256())
    session_key = server_key.decrypt(hello["session_key"], pc._OAEP)
    return pc.SecureChannel(sock, session_key), hello


class ServerThread:
    """Runs a scripted server function against one end of a socket pair."""

    def __init__(self, target, *args):
        self.error = None
        self.result = None
        self._thread = threading.Thread(target=self._run, args=(target, args), daemon=True)

    def _run(self, target, args):
        try:
            self.result = target(*args)
        except BaseException as exc:  # surfaced by join()
            self.error = exc

    def start(self):
        self._thread.start()
        return self

    def join(self):
        self._thread.join(timeout=10)
        assert not self._thread.is_alive(), "server thread hung"
        if self.error is not None:
            raise self.error
        return self.result
