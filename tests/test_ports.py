import asyncio
import socket

from gatehouse.process.ports import find_free_port, is_port_open


def test_closed_port_reports_false() -> None:
    port = find_free_port()

    assert asyncio.run(is_port_open(port)) is False


def test_listening_port_reports_true() -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as server:
        server.bind(("127.0.0.1", 0))
        server.listen()
        port = server.getsockname()[1]

        assert asyncio.run(is_port_open(port)) is True


def test_find_free_port_is_bindable() -> None:
    port = find_free_port()

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", port))

    assert 0 < port < 65536
