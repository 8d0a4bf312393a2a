"""
Pytest configuration and fixtures for attach_shell tests.
"""
import json
import socket
import time

import pytest

from attach_shell.server import ShellConfig, ShellServer


class RecordingOutput:
    """Stand-in for SocketWriter that keeps everything written."""

    def __init__(self) -> None:
        self.chunks = []
        self.closed = False
        self.columns = None

    def write(self, text):
        if self.closed:
            return 0
        self.chunks.append(text)
        return len(text)

    def flush(self):
        pass

    def end(self, text=None):
        if text:
            self.write(text)
        self.close()

    def close(self):
        self.closed = True

    @property
    def text(self):
        return "".join(self.chunks)


def recv_all(sock, timeout=3.0):
    sock.settimeout(timeout)
    chunks = []
    while True:
        try:
            chunk = sock.recv(4096)
        except ConnectionResetError:
            break
        if not chunk:
            break
        chunks.append(chunk)
    return b"".join(chunks)


def open_connection(server, payload=None, extra=b""):
    sock = socket.create_connection(("127.0.0.1", server.port), timeout=2.0)
    if payload is not None:
        sock.sendall(json.dumps(payload).encode("utf-8") + b"\n" + extra)
    return sock


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def shell_dir(tmp_path):
    return tmp_path / "shell"


@pytest.fixture
def make_server(shell_dir):
    servers = []

    def factory(**kwargs):
        config = kwargs.pop("config", None) or ShellConfig(use_colors=False)
        server = ShellServer(shell_dir, config, **kwargs)
        server.listen()
        servers.append(server)
        return server

    yield factory
    for server in servers:
        server.close()


@pytest.fixture
def shell_server(make_server):
    return make_server()
