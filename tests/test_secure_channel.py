# tests/test_secure_channel.py
"""
Tests for SecureChannel over a real socket pair.

A scripted server thread runs the server half of the channel setup with
its own RSA key and then talks to the client through the same encrypted
framing.
"""

import hashlib
import os
import struct

import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

import projupdate_client as pc
from conftest import ServerThread, _public_pem, server_handshake


# ================================================================
# CHANNEL SETUP
# ================================================================
class TestEstablish:
    """Test the SERVER_HELLO / CLIENT_HELLO exchange."""

    def test_handshake_and_line_round_trip(self, socket_pair, client_pem, server_key):
        client_sock, server_sock = socket_pair

        def serve():
            channel, hello = server_handshake(server_sock, server_key)
            line = channel.read_line()
            channel.write_line(f"ACK: {line}")
            return hello

        server = ServerThread(serve).start()
        channel = pc.SecureChannel.establish(client_sock, client_pem)
        channel.write_line("hello")
        reply = channel.read_line()
        hello = server.join()

        assert reply == "ACK: hello"
        assert set(hello) == {"client_pub", "session_key", "signature"}
        assert not channel.is_closed()

    def test_pinned_server_key_accepted(self, socket_pair, client_pem, server_key, server_public_pem):
        client_sock, server_sock = socket_pair
        server = ServerThread(server_handshake, server_sock, server_key).start()

        channel = pc.SecureChannel.establish(client_sock, client_pem, server_public_pem)
        server.join()
        assert not channel.is_closed()

    def test_pinned_server_key_mismatch(self, socket_pair, client_pem, server_key):
        client_sock, server_sock = socket_pair
        impostor = rsa.generate_private_key(public_exponent=65537, key_size=2048)

        def serve():
            try:
                server_handshake(server_sock, impostor)
            except pc.ChannelError:
                pass

        server = ServerThread(serve).start()
        with pytest.raises(pc.AuthenticationError, match="mismatch"):
            pc.SecureChannel.establish(client_sock, client_pem, _public_pem(server_key))
        client_sock.close()
        server.join()

    def test_invalid_client_key(self, socket_pair):
        client_sock, _ = socket_pair
        with pytest.raises(pc.AuthenticationError, match="invalid client key"):
            pc.SecureChannel.establish(client_sock, "not a pem")

    def test_unexpected_first_message(self, socket_pair, client_pem):
        client_sock, server_sock = socket_pair
        pc._write_message(server_sock, pc._MSG_LINE, {})
        with pytest.raises(pc.ProtocolError, match="SERVER_HELLO"):
            pc.SecureChannel.establish(client_sock, client_pem)

    def test_malformed_hello(self, socket_pair, client_pem):
        client_sock, server_sock = socket_pair
        pc._write_message(server_sock, pc._MSG_SERVER_HELLO, {"server_pub": "text"})
        with pytest.raises(pc.ProtocolError, match="malformed"):
            pc.SecureChannel.establish(client_sock, client_pem)

    def test_eof_during_setup(self, socket_pair, client_pem):
        client_sock, server_sock = socket_pair
        server_sock.close()
        with pytest.raises(pc.ChannelError):
            pc.SecureChannel.establish(client_sock, client_pem)


# ================================================================
# FRAMING
# ================================================================
class TestFraming:
    """Test encrypted framing once the channel is up."""

    def _connected(self, socket_pair, client_pem, server_key):
        client_sock, server_sock = socket_pair
        server = ServerThread(server_handshake, server_sock, server_key).start()
        client = pc.SecureChannel.establish(client_sock, client_pem)
        server_channel, _ = server.join()
        return client, server_channel

    def test_raw_payload_spread_over_chunks(self, socket_pair, client_pem, server_key):
        client, server = self._connected(socket_pair, client_pem, server_key)
        payload = os.urandom(5000)
        for offset in range(0, len(payload), 2048):
            server._send(pc._MSG_RAW, payload[offset:offset + 2048])

        assert client.read_raw(len(payload)) == payload

    def test_raw_overrun(self, socket_pair, client_pem, server_key):
        client, server = self._connected(socket_pair, client_pem, server_key)
        server._send(pc._MSG_RAW, b"0123456789")
        with pytest.raises(pc.ProtocolError, match="overran"):
            client.read_raw(4)

    def test_zero_length_raw(self, socket_pair, client_pem, server_key):
        client, server = self._connected(socket_pair, client_pem, server_key)
        assert client.read_raw(0) == b""

    def test_type_mismatch(self, socket_pair, client_pem, server_key):
        client, server = self._connected(socket_pair, client_pem, server_key)
        server._send(pc._MSG_RAW, b"bytes")
        with pytest.raises(pc.ProtocolError):
            client.read_line()

    def test_tampered_frame(self, socket_pair, client_pem, server_key):
        client, server = self._connected(socket_pair, client_pem, server_key)
        _, server_sock = socket_pair
        pc._write_frame(server_sock, pc._MSG_LINE, os.urandom(40))
        with pytest.raises(pc.ProtocolError, match="decryption"):
            client.read_line()

    def test_oversized_frame_header(self, socket_pair, client_pem, server_key):
        client, server = self._connected(socket_pair, client_pem, server_key)
        _, server_sock = socket_pair
        server_sock.sendall(struct.pack("!I", (1 << 20) + 1))
        with pytest.raises(pc.ProtocolError, match="too large"):
            client.read_line()

    def test_eof_closes_channel(self, socket_pair, client_pem, server_key):
        client, server = self._connected(socket_pair, client_pem, server_key)
        _, server_sock = socket_pair
        server_sock.close()
        with pytest.raises(pc.ChannelError):
            client.read_line()
        assert client.is_closed()

    def test_closed_channel_refuses_io(self, socket_pair, client_pem, server_key):
        client, server = self._connected(socket_pair, client_pem, server_key)
        client.close()
        assert client.is_closed()
        with pytest.raises(pc.ChannelError):
            client.write_line("late")


# ================================================================
# END TO END
# ================================================================
class TestEndToEnd:
    """A full session: login, initialize, update with download."""

    def test_update_downloads_binary(self, socket_pair, client_pem, server_key):
        client_sock, server_sock = socket_pair
        binary = os.urandom(3000)

        def serve():
            channel, _ = server_handshake(server_sock, server_key)
            script = []
            assert channel.read_line() == "client-a"
            channel.write_line("nonce-42")
            assert channel.read_line() == "nonce-42"
            channel.write_line("ACK: ")
            script.append(channel.read_line())  # client version
            channel.write_line("ACK: ")
            script.append(channel.read_line())  # project
            channel.write_line("ACK: ")
            script.append(channel.read_line())  # platform
            channel.write_line("ACK: ")
            for reply in ("ACK: 1.4.0", f"ACK: {hashlib.sha256(binary).hexdigest()}", f"ACK: {len(binary)}", "ACK: "):
                script.append(channel.read_line())
                channel.write_line(reply)
            channel._send(pc._MSG_RAW, binary)
            return script

        server = ServerThread(serve).start()
        conn = pc.ServerConnection(client_sock, platform_supplier=lambda: "linux-x64")
        conn.start_session("client-a", client_pem, "proj")
        result = pc.raw_negotiate(conn, pc.Mode.UPDATE, version="1.3.9")
        script = server.join()

        assert script == ["1.0.0", "proj", "linux-x64", "version", "sha256sum", "len", "binary"]
        assert result.get_bytes() == binary
        conn.close()
        assert conn.state is pc.ConnectionState.CLOSED

