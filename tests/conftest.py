import socket
import threading

import pytest

from credentials import CredentialStore
from file_transfer import FileTransferService
from server import ClientHandler, ClientManager

READ_TIMEOUT = 5.0


class Peer:
    """The client end of a socketpair whose other end is served by a ClientHandler."""

    def __init__(self, sock, handler, thread):
        self.sock = sock
        self.sock.settimeout(READ_TIMEOUT)
        self.rfile = sock.makefile('r', encoding='utf-8', newline='\n')
        self.handler = handler
        self.thread = thread

    def send(self, line):
        self.sock.sendall((line + '\n').encode('utf-8'))

    def readline(self):
        """Next line without terminator, None at end of stream."""
        line = self.rfile.readline()
        if not line:
            return None
        return line.rstrip('\r\n')

    def read_until(self, text):
        """Read lines until one contains `text`; returns that line."""
        seen = []
        while True:
            line = self.readline()
            if line is None:
                raise AssertionError(f"stream ended waiting for {text!r}, saw {seen!r}")
            if text in line:
                return line
            seen.append(line)

    def read_to_eof(self):
        lines = []
        while True:
            line = self.readline()
            if line is None:
                return lines
            lines.append(line)

    def close(self):
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.rfile.close()
        self.sock.close()


@pytest.fixture
def credentials():
    return CredentialStore()


@pytest.fixture
def manager():
    return ClientManager()


@pytest.fixture
def transfers():
    return FileTransferService()


@pytest.fixture
def connect(manager, credentials, transfers):
    """Factory: start a handler thread on a fresh socketpair and return its Peer."""
    peers = []

    def _connect(**handler_kwargs):
        handler_kwargs.setdefault('file_transfers', transfers)
        server_end, client_end = socket.socketpair()
        handler = ClientHandler(server_end, ('test', len(peers)), manager, credentials, **handler_kwargs)
        thread = threading.Thread(target=handler.run, daemon=True)
        thread.start()
        peer = Peer(client_end, handler, thread)
        peers.append(peer)
        return peer

    yield _connect

    for peer in peers:
        peer.close()
    for peer in peers:
        peer.thread.join(timeout=READ_TIMEOUT)


def answer_prompts(peer, *replies):
    """Reply to successive /auth prompts; returns the line that follows the last reply."""
    for reply in replies:
        prompt = peer.readline()
        assert prompt is not None and prompt.startswith('/auth '), prompt
        peer.send(reply)
    return peer.readline()


def register(peer, username, password):
    return answer_prompts(peer, '2', username, password)


def login(peer, username, password):
    return answer_prompts(peer, '1', username, password)


@pytest.fixture
def join(connect):
    """Factory: register a new user on a fresh connection and consume its welcome banner."""

    def _join(username, password='pw', **handler_kwargs):
        peer = connect(**handler_kwargs)
        assert register(peer, username, password) == '/auth Registration successful! Press Enter to Continue.'
        peer.read_until(f"Welcome {username}!")
        peer.read_until('/quit - Exit the chat')
        return peer

    return _join
