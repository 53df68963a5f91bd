"""
Project Updater - Python Client SDK

A Python client for the project update server.  It locates a reachable
updater, authenticates over an RSA/AES-256-GCM secured channel, and then
negotiates one operation: a version check, a binary download, an
interactive developer console, or a catalog listing.

Requirements:
    pip install msgpack cryptography

Protocol overview:
    Frame format: [4 bytes uint32 BE total_length][1 byte msg_type][N bytes payload]
    where total_length = 1 + len(payload).

    Channel setup:
        1. Read SERVER_HELLO (server public key + nonce)
        2. Optionally pin the server key against a configured PEM
        3. Send CLIENT_HELLO with an RSA-OAEP wrapped session key, signed
           with the client key
        4. All subsequent frames are AES-256-GCM encrypted

    Line protocol (over the secured channel):
        Every request line is answered by one response line.  A response
        starting with "ACK: " is an acknowledgment followed by its payload;
        anything else is a rejection (NAK).

        login:   client name -> challenge echo -> ACK, client version -> ACK
        session: project name -> ACK, platform -> ACK
        catalog: "listAll" -> ACK, project list line

Usage:
    from projupdate_client import Mode, ServerConnection, raw_negotiate

    with ServerConnection() as conn:
        conn.start_session("my-client", client_pem, "my-project")
        result = raw_negotiate(conn, Mode.UPDATE, version="1.2.0")
        if result.data_type is DataType.BYTES:
            install(result.get_bytes())
"""

from __future__ import annotations

import hashlib
import hmac as _hmac
import logging
import os
import platform as _platform
import re
import socket
import struct
import subprocess
import sys
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence, Union

import msgpack
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

__all__ = [
    "SemVer",
    "Comparison",
    "NegotiationResult",
    "DataType",
    "Mode",
    "ConnectionState",
    "SecureChannel",
    "ServerConnection",
    "raw_negotiate",
    "safe_negotiate",
    "list_projects",
    "find_server",
    "try_find_server",
    "can_ping",
    "platform_identifier",
    "read_key_file",
    "sha256_digest",
    "ProjUpdateError",
    "DiscoveryError",
    "AuthenticationError",
    "OperationError",
    "DiscrepancyError",
    "InvalidStateError",
    "ConfigurationError",
    "ChannelError",
    "ProtocolError",
]

logger = logging.getLogger("projupdate_client")

PromptCallback = Callable[[str], str]
LogCallback = Callable[[str], None]

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

UPDATER_PORT = 1248
KNOWN_UPDATERS = ("eidolon", "updater.numra.net", "elfib")

DEV_PLATFORM = "dev"
ACK_PREFIX = "ACK: "

_CMD_LIST_ALL = "listAll"
_CMD_VERSION = "version"
_CMD_SHA256SUM = "sha256sum"
_CMD_LEN = "len"
_CMD_BINARY = "binary"
_CMD_DISCONNECT = "disconnect"

# Transfer commands make no sense from an interactive console.
_CONSOLE_REFUSED = frozenset({_CMD_SHA256SUM, _CMD_LEN, "truelen", _CMD_BINARY})

_VERSION_PATTERN = re.compile(r"[0-9]+\.[0-9]+\.[0-9]+")

_MAX_MESSAGE_SIZE = 1 << 20  # 1 MiB

# Message types
_MSG_SERVER_HELLO = 0x01
_MSG_CLIENT_HELLO = 0x02
_MSG_LINE = 0x10
_MSG_RAW = 0x11

_SESSION_KEY_SIZE = 32
_AES_GCM_NONCE_SIZE = 12
_SHA256_SIZE = 32

_PING_TIMEOUT = 2.0  # seconds

_OAEP = padding.OAEP(
    mgf=padding.MGF1(algorithm=hashes.SHA256()),
    algorithm=hashes.SHA256(),
    label=None,
)
_PSS = padding.PSS(
    mgf=padding.MGF1(hashes.SHA256()),
    salt_length=padding.PSS.MAX_LENGTH,
)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ProjUpdateError(Exception):
    """Base exception for all update client errors."""


class DiscoveryError(ProjUpdateError):
    """Raised when no reachable update server can be found or connected to."""


class AuthenticationError(ProjUpdateError):
    """Raised when the server rejects the client, its version, project or platform."""


class OperationError(ProjUpdateError):
    """Raised when the server rejects (NAKs) an in-session command."""


class DiscrepancyError(ProjUpdateError):
    """Raised when a received payload fails integrity verification.

    Unlike :class:`OperationError` this means every command was accepted,
    but the bytes that arrived do not match the digest the server declared.
    """


class InvalidStateError(ProjUpdateError):
    """Raised when an operation is invoked in the wrong connection state."""


class ConfigurationError(ProjUpdateError):
    """Raised when a required callback was not supplied."""


class ChannelError(ProjUpdateError):
    """Raised on socket I/O failure or premature EOF."""


class ProtocolError(ProjUpdateError):
    """Raised on wire-protocol violations (unexpected message types, bad frames)."""


# ---------------------------------------------------------------------------
# Semantic versions
# ---------------------------------------------------------------------------


class Comparison(Enum):
    """Outcome of comparing the local version against the server's."""

    AHEAD = "ahead"
    CURRENT = "current"
    BEHIND = "behind"


@dataclass(frozen=True)
class SemVer:
    """Immutable ``MAJOR.MINOR.PATCH`` version."""

    major: int
    minor: int
    patch: int

    def __post_init__(self) -> None:
        if min(self.major, self.minor, self.patch) < 0:
            raise ValueError(f"version components must be non-negative: {self}")

    @classmethod
    def parse(cls, version_str: str) -> "SemVer":
        """Parse ``"1.2.3"`` (an optional leading ``v`` is accepted)."""
        match = re.fullmatch(r"v?(\d+)\.(\d+)\.(\d+)", version_str.strip())
        if not match:
            raise ValueError(f"invalid version format: {version_str!r}")
        return cls(int(match.group(1)), int(match.group(2)), int(match.group(3)))

    def compare_to(self, other: "SemVer") -> Comparison:
        mine = (self.major, self.minor, self.patch)
        theirs = (other.major, other.minor, other.patch)
        if mine > theirs:
            return Comparison.AHEAD
        if mine < theirs:
            return Comparison.BEHIND
        return Comparison.CURRENT

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


CLIENT_VERSION = SemVer(1, 0, 0)


# ---------------------------------------------------------------------------
# Negotiation results
# ---------------------------------------------------------------------------


class Mode(Enum):
    """The sub-protocol a negotiation runs."""

    UPDATE = "update"
    DOWNLOAD = "download"
    CONSOLE = "console"
    LIST_PROJECTS = "list_projects"


class DataType(Enum):
    """Kind of payload attached to a data result."""

    BYTES = "bytes"
    STRING = "string"


class _ResultKind(Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    DATA = "data"


@dataclass(frozen=True)
class NegotiationResult:
    """Outcome of a negotiation.

    A result is a plain success, a failure, or data.  Data results carry
    exactly one payload, either ``bytes`` or ``str``.  Failure results
    produced by :func:`safe_negotiate` keep the exception in :attr:`error`
    for callers that want diagnostics; :meth:`was_successful` still
    reduces the outcome to a boolean.

    Attributes:
        payload: The attached binary or text payload, if any.
        error: The exception that caused a failure, if known.
    """

    _kind: _ResultKind
    payload: Union[bytes, str, None] = None
    error: Optional[BaseException] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if self._kind is _ResultKind.DATA:
            if not isinstance(self.payload, (bytes, str)):
                raise ValueError("data results carry exactly one bytes or str payload")
        elif self.payload is not None:
            raise ValueError(f"{self._kind.value} results carry no payload")

    @classmethod
    def success(cls) -> "NegotiationResult":
        return cls(_ResultKind.SUCCESS)

    @classmethod
    def failure(cls, error: Optional[BaseException] = None) -> "NegotiationResult":
        return cls(_ResultKind.FAILURE, error=error)

    @classmethod
    def data(cls, payload: Union[bytes, bytearray, str]) -> "NegotiationResult":
        if isinstance(payload, bytearray):
            payload = bytes(payload)
        return cls(_ResultKind.DATA, payload)

    def was_successful(self) -> bool:
        """True for success and data results, False for failures."""
        return self._kind is not _ResultKind.FAILURE

    @property
    def data_type(self) -> Optional[DataType]:
        """The attached payload type, or None when there is no payload."""
        if self._kind is not _ResultKind.DATA:
            return None
        return DataType.BYTES if isinstance(self.payload, bytes) else DataType.STRING

    def get_bytes(self) -> bytes:
        if not isinstance(self.payload, bytes):
            raise InvalidStateError("no attached bytes")
        return self.payload

    def get_string(self) -> str:
        if not isinstance(self.payload, str):
            raise InvalidStateError("no attached string")
        return self.payload


# ---------------------------------------------------------------------------
# Local environment helpers
# ---------------------------------------------------------------------------

_OS_NAMES = {"linux": "linux", "windows": "win", "darwin": "osx"}
_ARCH_NAMES = {
    "x86_64": "x64",
    "amd64": "x64",
    "i386": "x86",
    "i686": "x86",
    "x86": "x86",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "armv6l": "arm",
}


def platform_identifier() -> str:
    """Return the runtime identifier of this machine, e.g. ``linux-x64``."""
    system = _platform.system().lower()
    machine = _platform.machine().lower()
    return f"{_OS_NAMES.get(system, system)}-{_ARCH_NAMES.get(machine, machine)}"


def sha256_digest(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def read_key_file(path: str) -> bytes:
    """Read PEM key material from *path*.

    Raises:
        AuthenticationError: If the file is missing, unreadable, or empty.
    """
    try:
        with open(path, "rb") as fh:
            data = fh.read()
    except OSError as exc:
        raise AuthenticationError(f"cannot read key file {path}: {exc}") from exc

    if not data.strip():
        raise AuthenticationError(f"key file {path} is empty")
    return data


# ---------------------------------------------------------------------------
# Server discovery
# ---------------------------------------------------------------------------


def can_ping(host: str, timeout: float = _PING_TIMEOUT) -> bool:
    """Return True if *host* answers a single ICMP echo via the system ``ping``.

    Any failure to run the probe (missing binary, DNS failure, timeout)
    counts as unreachable.
    """
    if sys.platform.startswith("win"):
        cmd = ["ping", "-n", "1", "-w", str(int(timeout * 1000)), host]
    elif sys.platform == "darwin":
        cmd = ["ping", "-c", "1", "-t", str(max(1, int(timeout))), host]
    else:
        cmd = ["ping", "-c", "1", "-W", str(max(1, int(timeout))), host]

    try:
        result = subprocess.run(cmd, capture_output=True, timeout=timeout + 5)
    except (OSError, subprocess.SubprocessError) as exc:
        logger.debug("ping %s failed: %s", host, exc)
        return False
    return result.returncode == 0


def try_find_server(
    candidates: Sequence[str] = KNOWN_UPDATERS,
    port: int = UPDATER_PORT,
    probe: Callable[[str], bool] = can_ping,
    timeout: Optional[float] = None,
) -> Optional[socket.socket]:
    """Connect to the first reachable candidate, in declaration order.

    Args:
        candidates: Host names to probe.
        port: TCP port to connect to on the chosen host.
        probe: Reachability predicate.  A probe that raises counts as
            unreachable.
        timeout: Optional socket timeout for the connection.

    Returns:
        The connected socket, or None if no candidate answered the probe.

    Raises:
        DiscoveryError: If the reachable host refuses the TCP connection.
    """
    for host in candidates:
        try:
            reachable = bool(probe(host))
        except Exception as exc:
            logger.debug("probe of %s raised %s; treating as unreachable", host, exc)
            reachable = False

        logger.debug("probe %s: %s", host, "reachable" if reachable else "unreachable")
        if not reachable:
            continue

        try:
            return socket.create_connection((host, port), timeout=timeout)
        except OSError as exc:
            raise DiscoveryError(f"cannot connect to {host}:{port}: {exc}") from exc

    return None


def find_server(
    candidates: Sequence[str] = KNOWN_UPDATERS,
    port: int = UPDATER_PORT,
    probe: Callable[[str], bool] = can_ping,
    timeout: Optional[float] = None,
) -> socket.socket:
    """Like :func:`try_find_server`, but raises when nothing is reachable.

    Raises:
        DiscoveryError: If no candidate is reachable.
    """
    sock = try_find_server(candidates, port, probe, timeout)
    if sock is None:
        raise DiscoveryError("no server found")
    return sock


# ---------------------------------------------------------------------------
# Cryptographic helpers
# ---------------------------------------------------------------------------


def _public_der(key: rsa.RSAPublicKey) -> bytes:
    return key.public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def _load_client_key(pem: Union[str, bytes]) -> rsa.RSAPrivateKey:
    """Load the client's RSA private key from PEM text."""
    if isinstance(pem, str):
        pem = pem.encode("utf-8")
    try:
        key = serialization.load_pem_private_key(pem, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise AuthenticationError(f"invalid client key: {exc}") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise AuthenticationError("client key must be an RSA private key")
    return key


def _load_server_key(data: bytes, pem: bool) -> rsa.RSAPublicKey:
    try:
        if pem:
            key = serialization.load_pem_public_key(data)
        else:
            key = serialization.load_der_public_key(data)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise AuthenticationError(f"invalid server key: {exc}") from exc
    if not isinstance(key, rsa.RSAPublicKey):
        raise AuthenticationError("server key must be an RSA public key")
    return key


def _aes_gcm_encrypt(key: bytes, plaintext: bytes) -> bytes:
    """Encrypt with AES-256-GCM.

    Returns: nonce (12 bytes) || ciphertext+tag
    """
    nonce = os.urandom(_AES_GCM_NONCE_SIZE)
    return nonce + AESGCM(key).encrypt(nonce, plaintext, None)


def _aes_gcm_decrypt(key: bytes, data: bytes) -> bytes:
    """Decrypt AES-256-GCM.  *data* is nonce (12 bytes) || ciphertext+tag."""
    if len(data) < _AES_GCM_NONCE_SIZE:
        raise ProtocolError("encrypted payload too short for nonce")
    nonce = data[:_AES_GCM_NONCE_SIZE]
    try:
        return AESGCM(key).decrypt(nonce, data[_AES_GCM_NONCE_SIZE:], None)
    except Exception as exc:
        raise ProtocolError(f"AES-GCM decryption failed: {exc}") from exc


# ---------------------------------------------------------------------------
# Wire-protocol helpers
# ---------------------------------------------------------------------------


def _recv_exact(sock: socket.socket, n: int) -> bytes:
    """Read exactly *n* bytes from *sock*.

    Raises:
        ChannelError: On premature EOF or socket error.
    """
    buf = bytearray()
    while len(buf) < n:
        try:
            chunk = sock.recv(n - len(buf))
        except OSError as exc:
            raise ChannelError(f"socket read error: {exc}") from exc
        if not chunk:
            raise ChannelError(f"connection closed (read {len(buf)} of {n} bytes)")
        buf.extend(chunk)
    return bytes(buf)


def _read_message(sock: socket.socket) -> tuple[int, bytes]:
    """Read a single framed message from the socket.

    Returns:
        (msg_type, payload_bytes)
    """
    total_len = struct.unpack("!I", _recv_exact(sock, 4))[0]

    if total_len > _MAX_MESSAGE_SIZE:
        raise ProtocolError(
            f"message too large: {total_len} bytes exceeds max {_MAX_MESSAGE_SIZE}"
        )
    if total_len < 1:
        raise ProtocolError(f"message too short: {total_len} bytes")

    msg_type = _recv_exact(sock, 1)[0]
    payload_len = total_len - 1
    payload = _recv_exact(sock, payload_len) if payload_len > 0 else b""
    return msg_type, payload


def _write_frame(sock: socket.socket, msg_type: int, data: bytes) -> None:
    total_len = 1 + len(data)
    if total_len > _MAX_MESSAGE_SIZE:
        raise ProtocolError(
            f"message too large: {total_len} bytes exceeds max {_MAX_MESSAGE_SIZE}"
        )
    frame = struct.pack("!I", total_len) + bytes([msg_type]) + data
    try:
        sock.sendall(frame)
    except OSError as exc:
        raise ChannelError(f"socket write error: {exc}") from exc


def _write_message(sock: socket.socket, msg_type: int, payload: Any) -> None:
    """Encode *payload* with msgpack and write a framed message."""
    _write_frame(sock, msg_type, msgpack.packb(payload, use_bin_type=True))


# ---------------------------------------------------------------------------
# Secure channel
# ---------------------------------------------------------------------------


class SecureChannel:
    """Encrypted line/byte stream over a connected socket.

    Instances are created by :meth:`establish`.  The channel does not own
    the socket: :meth:`close` only invalidates the session key, the owner
    of the socket closes it.
    """

    def __init__(self, sock: socket.socket, session_key: bytes) -> None:
        self._sock = sock
        self._session_key: Optional[bytes] = session_key

    @classmethod
    def establish(
        cls,
        sock: socket.socket,
        client_key: Union[str, bytes],
        server_key: Union[str, bytes] = b"",
    ) -> "SecureChannel":
        """Run the SERVER_HELLO / CLIENT_HELLO exchange on *sock*.

        Args:
            sock: A connected stream socket.
            client_key: PEM-encoded RSA private key of this client.
            server_key: PEM-encoded RSA public key the server must present.
                Empty to accept whichever key the server offers.

        Raises:
            AuthenticationError: On bad key material or a server key mismatch.
            ProtocolError: On an unexpected or malformed hello.
            ChannelError: On I/O errors.
        """
        client_priv = _load_client_key(client_key)

        msg_type, payload = _read_message(sock)
        if msg_type != _MSG_SERVER_HELLO:
            raise ProtocolError(
                f"expected SERVER_HELLO (0x{_MSG_SERVER_HELLO:02x}), "
                f"got 0x{msg_type:02x}"
            )

        try:
            hello = msgpack.unpackb(payload, raw=False)
        except Exception as exc:
            raise ProtocolError(f"undecodable SERVER_HELLO: {exc}") from exc
        server_pub_der = hello.get("server_pub") if isinstance(hello, dict) else None
        nonce = hello.get("nonce") if isinstance(hello, dict) else None
        if not isinstance(server_pub_der, bytes) or not isinstance(nonce, bytes):
            raise ProtocolError("malformed SERVER_HELLO")

        server_pub = _load_server_key(server_pub_der, pem=False)
        if server_key:
            if isinstance(server_key, str):
                server_key = server_key.encode("utf-8")
            pinned = _load_server_key(server_key, pem=True)
            if _public_der(pinned) != server_pub_der:
                raise AuthenticationError(
                    "server key mismatch -- possible impostor server"
                )

        session_key = os.urandom(_SESSION_KEY_SIZE)
        wrapped = server_pub.encrypt(session_key, _OAEP)
        signature = client_priv.sign(nonce + wrapped, _PSS, hashes.SHA256())

        _write_message(
            sock,
            _MSG_CLIENT_HELLO,
            {
                "client_pub": _public_der(client_priv.public_key()),
                "session_key": wrapped,
                "signature": signature,
            },
        )
        logger.debug("secure channel established")
        return cls(sock, session_key)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def write_line(self, line: str) -> None:
        self._send(_MSG_LINE, line)

    def read_line(self) -> str:
        value = self._receive(_MSG_LINE)
        if not isinstance(value, str):
            raise ProtocolError(f"expected a text line, got {type(value).__name__}")
        return value

    def read_raw(self, n: int) -> bytes:
        """Read exactly *n* bytes of raw payload, possibly spread over several frames."""
        if n < 0:
            raise ValueError(f"cannot read a negative byte count: {n}")
        buf = bytearray()
        while len(buf) < n:
            chunk = self._receive(_MSG_RAW)
            if not isinstance(chunk, bytes):
                raise ProtocolError(f"expected a raw chunk, got {type(chunk).__name__}")
            buf.extend(chunk)
        if len(buf) != n:
            raise ProtocolError(f"raw payload overran: got {len(buf)} of {n} bytes")
        return bytes(buf)

    def is_closed(self) -> bool:
        return self._session_key is None or self._sock.fileno() == -1

    def close(self) -> None:
        self._session_key = None

    # ------------------------------------------------------------------
    # Framing
    # ------------------------------------------------------------------

    def _require_key(self) -> bytes:
        if self._session_key is None:
            raise ChannelError("secure channel is closed")
        return self._session_key

    def _send(self, msg_type: int, value: Any) -> None:
        """Encrypt and write a framed message.

        Inner format (before encryption):
            [1-byte msg_type][msgpack-encoded value]
        """
        key = self._require_key()
        inner = bytes([msg_type]) + msgpack.packb(value, use_bin_type=True)
        try:
            _write_frame(self._sock, msg_type, _aes_gcm_encrypt(key, inner))
        except ChannelError:
            self.close()
            raise

    def _receive(self, expected_type: int) -> Any:
        key = self._require_key()
        try:
            _outer_type, encrypted = _read_message(self._sock)
        except ChannelError:
            self.close()
            raise

        plaintext = _aes_gcm_decrypt(key, encrypted)
        if len(plaintext) < 1:
            raise ProtocolError("decrypted payload is empty")

        inner_type = plaintext[0]
        if inner_type != expected_type:
            raise ProtocolError(
                f"expected message type 0x{expected_type:02x}, got 0x{inner_type:02x}"
            )
        try:
            return msgpack.unpackb(plaintext[1:], raw=False)
        except Exception as exc:
            raise ProtocolError(f"undecodable payload: {exc}") from exc


# ---------------------------------------------------------------------------
# Line protocol helpers
# ---------------------------------------------------------------------------


def is_ack(line: str) -> bool:
    return line.startswith(ACK_PREFIX)


def _ack_payload(line: str) -> str:
    return line[len(ACK_PREFIX):] if line.startswith(ACK_PREFIX) else ""


# ---------------------------------------------------------------------------
# Server connection
# ---------------------------------------------------------------------------


class ConnectionState(Enum):
    """Lifecycle stage of a ServerConnection."""

    INERT = "inert"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    ACTIVE = "active"
    CATALOG = "catalog"
    CLOSED = "closed"


ChannelFactory = Callable[[socket.socket, Union[str, bytes], bytes], Any]


class ServerConnection:
    """One authenticated session with an update server.

    The connection owns its socket and the secure channel built on top of
    it.  It starts inert, becomes active after :meth:`login` followed by
    :meth:`initialize`, and is closed for good after any handshake failure
    or :meth:`close`.  A closed connection never reactivates; discover a
    server again and build a new instance to retry.

    Parameters:
        sock: A connected socket.  When omitted, :func:`find_server` is
            used to locate one.
        server_key_path: Path to the PEM public key the server must
            present.  Falls back to the ``PROJUPDATE_SERVER_KEY``
            environment variable, then to no pinning.
        timeout: Socket timeout in seconds applied to the transport.
        channel_factory: Callable ``(sock, client_key, server_key) ->
            channel`` used at login.  Defaults to
            :meth:`SecureChannel.establish`.
        platform_supplier: Callable returning the platform identifier sent
            when :meth:`initialize` gets no override.

    Thread safety:
        Every state-changing method and accessor holds a per-instance
        reentrant lock for its whole duration, so concurrent callers
        observe whole state transitions only.
    """

    def __init__(
        self,
        sock: Optional[socket.socket] = None,
        *,
        server_key_path: Optional[str] = None,
        timeout: Optional[float] = None,
        channel_factory: Optional[ChannelFactory] = None,
        platform_supplier: Callable[[], str] = platform_identifier,
    ) -> None:
        key_path = server_key_path or os.environ.get("PROJUPDATE_SERVER_KEY")
        self._server_key = read_key_file(key_path) if key_path else b""

        if sock is None:
            sock = find_server(timeout=timeout)
        elif timeout is not None:
            sock.settimeout(timeout)

        self._sock = sock
        self._channel_factory = channel_factory or SecureChannel.establish
        self._platform_supplier = platform_supplier

        # Session state (guarded by _lock)
        self._lock = threading.RLock()
        self._channel: Optional[Any] = None
        self._state = ConnectionState.INERT
        self._dev_mode = False

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    def login(self, client_name: str, client_key: Union[str, bytes]) -> None:
        """Build a fresh secure channel and authenticate this client.

        Raises:
            InvalidStateError: If the connection is not inert or the
                transport is not connected.
            AuthenticationError: If the channel cannot be set up or the
                server rejects the client or its protocol version.
        """
        with self._lock:
            self._require_state(ConnectionState.INERT, "log in")
            try:
                if not self._transport_connected():
                    raise InvalidStateError("transport is not connected")
                self._state = ConnectionState.AUTHENTICATING
                self._authenticate(client_name, client_key)
            except Exception:
                self._teardown()
                raise

            self._state = ConnectionState.AUTHENTICATED
            logger.info("authenticated as %s", client_name)

    def initialize(self, project_name: str, platform: Optional[str] = None) -> None:
        """Select the project and platform; call right after :meth:`login`.

        Passing ``platform="dev"`` opens a developer session, which enables
        the console sub-protocol.

        Raises:
            InvalidStateError: If :meth:`login` has not just succeeded.
            AuthenticationError: If the project or platform is unrecognized.
        """
        with self._lock:
            self._require_state(ConnectionState.AUTHENTICATED, "initialize")
            platform_id = platform if platform is not None else self._platform_supplier()
            try:
                self._expect_ack(project_name, "project unrecognized")
                self._expect_ack(platform_id, "platform unrecognized")
            except Exception:
                self._teardown()
                raise

            self._state = ConnectionState.ACTIVE
            self._dev_mode = platform == DEV_PLATFORM
            logger.info(
                "project %s initialized (platform=%s, dev=%s)",
                project_name,
                platform_id,
                self._dev_mode,
            )

    def initialize_for_listing(
        self, client_name: str, client_key: Union[str, bytes]
    ) -> str:
        """Log in and request the project catalog.

        The connection ends up in the ``CATALOG`` state: it is never active
        and cannot be used for negotiations.

        Returns:
            The catalog line exactly as the server sent it.

        Raises:
            AuthenticationError: If login fails.
            OperationError: If the server rejects ``listAll``.
        """
        with self._lock:
            self.login(client_name, client_key)
            try:
                channel = self._channel
                channel.write_line(_CMD_LIST_ALL)
                if not is_ack(channel.read_line()):
                    raise OperationError(f"server rejected {_CMD_LIST_ALL!r}")
                catalog = channel.read_line()
            except Exception:
                self._teardown()
                raise

            self._state = ConnectionState.CATALOG
            return catalog

    def start_session(
        self,
        client_name: str,
        client_key: Union[str, bytes],
        project_name: str,
        platform: Optional[str] = None,
    ) -> None:
        """:meth:`login` followed by :meth:`initialize`, as one step."""
        with self._lock:
            self.login(client_name, client_key)
            self.initialize(project_name, platform)

    def start_dev_session(
        self, client_name: str, client_key: Union[str, bytes], project_name: str
    ) -> None:
        self.start_session(client_name, client_key, project_name, DEV_PLATFORM)

    def close(self) -> None:
        """Close the channel and the socket.  Safe to call multiple times."""
        with self._lock:
            if self._state is ConnectionState.CLOSED:
                return
            self._teardown()
            logger.debug("connection closed")

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    def is_active(self) -> bool:
        with self._lock:
            return self._state is ConnectionState.ACTIVE

    def is_dev_mode(self) -> bool:
        with self._lock:
            self._require_state(ConnectionState.ACTIVE, "query dev mode")
            return self._dev_mode

    def channel(self) -> Any:
        """Return the live secure channel of an active session.

        The channel belongs to this connection; never close it directly.

        Raises:
            InvalidStateError: If the session is not active or the
                transport has gone away.
        """
        with self._lock:
            self._require_state(ConnectionState.ACTIVE, "use the channel")
            if (
                self._channel is None
                or self._channel.is_closed()
                or not self._transport_connected()
            ):
                raise InvalidStateError("connection closed when it should be open")
            return self._channel

    # ------------------------------------------------------------------
    # Internals (must hold self._lock)
    # ------------------------------------------------------------------

    def _authenticate(self, client_name: str, client_key: Union[str, bytes]) -> None:
        try:
            channel = self._channel_factory(self._sock, client_key, self._server_key)
        except AuthenticationError:
            raise
        except Exception as exc:
            raise AuthenticationError(f"secure channel setup failed: {exc}") from exc
        if channel is None:
            raise AuthenticationError("secure channel setup yielded no channel")
        self._channel = channel

        # Identity: name, then echo the server's challenge back.
        channel.write_line(client_name)
        channel.write_line(channel.read_line())
        if not is_ack(channel.read_line()):
            raise AuthenticationError("authentication failed")

        self._expect_ack(str(CLIENT_VERSION), "client version rejected")

    def _expect_ack(self, line: str, error: str) -> None:
        self._channel.write_line(line)
        if not is_ack(self._channel.read_line()):
            raise AuthenticationError(error)

    def _require_state(self, expected: ConnectionState, action: str) -> None:
        if self._state is not expected:
            raise InvalidStateError(
                f"cannot {action}: connection is {self._state.value}, "
                f"expected {expected.value}"
            )

    def _transport_connected(self) -> bool:
        try:
            self._sock.getpeername()
        except OSError:
            return False
        return True

    def _teardown(self) -> None:
        channel, self._channel = self._channel, None
        if channel is not None:
            try:
                channel.close()
            except Exception:
                logger.debug("error closing channel during teardown", exc_info=True)
        try:
            self._sock.close()
        except OSError:
            pass
        self._state = ConnectionState.CLOSED
        self._dev_mode = False

    # ------------------------------------------------------------------
    # Context manager support
    # ------------------------------------------------------------------

    def __enter__(self) -> "ServerConnection":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<ServerConnection state={self._state.value} dev={self._dev_mode}>"


def list_projects(
    client_name: str,
    client_key: Union[str, bytes],
    sock: Optional[socket.socket] = None,
    **kwargs: Any,
) -> List[str]:
    """Fetch the server's project catalog on a throwaway connection.

    Discovers a server unless *sock* is given, lists, and closes.  The
    catalog line is comma-delimited.

    Returns:
        The project names, whitespace-stripped, empty entries dropped.
    """
    with ServerConnection(sock, **kwargs) as conn:
        catalog = conn.initialize_for_listing(client_name, client_key)
    return [name.strip() for name in catalog.split(",") if name.strip()]


# ---------------------------------------------------------------------------
# Negotiation
# ---------------------------------------------------------------------------


def raw_negotiate(
    connection: ServerConnection,
    mode: Mode,
    version: Union[SemVer, str, None] = None,
    prompt: Optional[PromptCallback] = None,
    log: Optional[LogCallback] = None,
) -> NegotiationResult:
    """Run the *mode* sub-protocol on an active connection.

    Args:
        connection: A connection that completed :meth:`ServerConnection.initialize`.
        mode: The sub-protocol to run.
        version: Local program version for :attr:`Mode.UPDATE`.  Prompted
            for when omitted.  Ignored by other modes.
        prompt: Callback ``(text) -> str`` used to obtain missing input.
        log: Callback ``(message) -> None`` for caller-visible messages.

    Returns:
        ``DATA`` with the binary for downloads (and outdated updates),
        ``SUCCESS`` otherwise.

    Raises:
        InvalidStateError: For :attr:`Mode.LIST_PROJECTS`, or when the
            connection is not active.
        OperationError: When the server rejects a command.
        DiscrepancyError: When a downloaded binary fails its checksum.
        ConfigurationError: When input is needed and *prompt* is None.
    """
    if mode is Mode.LIST_PROJECTS:
        raise InvalidStateError(
            "project listing is only available through "
            "ServerConnection.initialize_for_listing"
        )

    channel = connection.channel()

    if mode is Mode.UPDATE:
        if not _needs_download(channel, version, prompt, log):
            return NegotiationResult.success()
        return _download(channel)
    if mode is Mode.DOWNLOAD:
        return _download(channel)
    if mode is Mode.CONSOLE:
        return _run_console(connection, channel, prompt, log)
    raise ValueError(f"unknown negotiation mode: {mode!r}")


def safe_negotiate(
    connection: ServerConnection,
    mode: Mode,
    version: Union[SemVer, str, None] = None,
    prompt: Optional[PromptCallback] = None,
    log: Optional[LogCallback] = None,
) -> NegotiationResult:
    """:func:`raw_negotiate`, but any error becomes a failure result.

    The exception is kept on :attr:`NegotiationResult.error`.
    """
    try:
        return raw_negotiate(connection, mode, version, prompt, log)
    except Exception as exc:
        logger.warning("%s negotiation failed: %s", getattr(mode, "value", mode), exc)
        return NegotiationResult.failure(exc)


def _needs_download(
    channel: Any,
    version: Union[SemVer, str, None],
    prompt: Optional[PromptCallback],
    log: Optional[LogCallback],
) -> bool:
    """Compare local and server versions; True when the local one is behind."""
    if version is None:
        version = _prompt(prompt, "Program version in SemVer format: ")
    local = version if isinstance(version, SemVer) else SemVer.parse(version)

    payload = _command(channel, _CMD_VERSION)
    match = _VERSION_PATTERN.search(payload)
    if match is None:
        raise OperationError(f"no version in server reply {payload!r}")
    remote = SemVer.parse(match.group(0))

    comparison = local.compare_to(remote)
    if comparison is Comparison.AHEAD:
        logger.warning("local version %s is ahead of server version %s", local, remote)
        _emit(log, "WARN: You are currently running a beta version!")
        return False
    if comparison is Comparison.CURRENT:
        return False

    logger.info("program %s is outdated (server has %s); updating", local, remote)
    _emit(log, "Program is outdated. Updating...")
    return True


def _download(channel: Any) -> NegotiationResult:
    expected = _parse_digest(_command(channel, _CMD_SHA256SUM))
    length = _parse_length(_command(channel, _CMD_LEN))
    _command(channel, _CMD_BINARY)

    binary = channel.read_raw(length)
    actual = sha256_digest(binary)
    if not _hmac.compare_digest(actual, expected):
        raise DiscrepancyError(
            f"sha256 mismatch: server declared {expected.hex()}, received {actual.hex()}"
        )

    logger.info("downloaded %d bytes (sha256 %s)", len(binary), actual.hex())
    return NegotiationResult.data(binary)


def _run_console(
    connection: ServerConnection,
    channel: Any,
    prompt: Optional[PromptCallback],
    log: Optional[LogCallback],
) -> NegotiationResult:
    """Relay prompted commands to the server until ``disconnect``.

    Outside dev mode the console warns and proceeds.
    """
    if prompt is None:
        raise ConfigurationError("console requires a prompt callback")
    if not connection.is_dev_mode():
        logger.warning("console opened on a non-dev session")
        _emit(log, "WARN: Console opened outside dev mode")

    while True:
        command = prompt("> ")
        if command == _CMD_DISCONNECT:
            channel.write_line(command)
            break
        if command in _CONSOLE_REFUSED:
            _emit(log, "NAK: Unsupported in dev mode")
            continue
        logger.debug("console command %r", command)
        channel.write_line(command)
        _emit(log, channel.read_line())

    return NegotiationResult.success()


def _command(channel: Any, command: str) -> str:
    """Send *command* and return its acknowledgment payload."""
    logger.debug("command %r", command)
    channel.write_line(command)
    reply = channel.read_line()
    if not is_ack(reply):
        raise OperationError(f"server rejected {command!r}: {reply!r}")
    return _ack_payload(reply)


def _parse_digest(payload: str) -> bytes:
    try:
        digest = bytes.fromhex(payload.strip())
    except ValueError as exc:
        raise OperationError(f"malformed sha256sum reply {payload!r}") from exc
    if len(digest) != _SHA256_SIZE:
        raise OperationError(f"sha256sum reply has {len(digest)} bytes, expected 32")
    return digest


def _parse_length(payload: str) -> int:
    try:
        length = int(payload.strip())
    except ValueError as exc:
        raise OperationError(f"malformed len reply {payload!r}") from exc
    if length < 0:
        raise OperationError(f"negative len reply {length}")
    return length


# ---------------------------------------------------------------------------
# Callback helpers
# ---------------------------------------------------------------------------


def _prompt(prompt: Optional[PromptCallback], text: str) -> str:
    if prompt is None:
        raise ConfigurationError("prompted without a prompt callback")
    return prompt(text)


def _emit(log: Optional[LogCallback], message: str) -> None:
    if log is None:
        return
    try:
        log(message)
    except Exception:
        logger.exception("exception in log callback")
