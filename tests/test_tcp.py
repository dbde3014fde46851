import socket
import threading

import pytest

from modbuskit.protocol import Callbacks, FunctionCode, handle_request
from modbuskit.tcp import MBAPHeader, ModbusTCPServer, handle_frame


def _register_callbacks(store):
    def read_words(function_code, table, start, quantity):
        return [store.get(start + offset, 0) for offset in range(quantity)]

    def write_words(function_code, table, start, quantity, values):
        for offset, value in enumerate(values):
            store[start + offset] = value

    return Callbacks(read_words=read_words, write_words=write_words)


def test_header_round_trip():
    header = MBAPHeader(transaction_id=0xBEEF, protocol_id=0, length=6, unit_id=17)
    assert MBAPHeader.from_bytes(header.to_bytes()) == header


def test_header_wire_layout():
    header = MBAPHeader(transaction_id=0x0102, protocol_id=0x0304, length=0x0506, unit_id=0x07)
    assert header.to_bytes() == bytes([1, 2, 3, 4, 5, 6, 7])


def test_header_from_short_data_raises():
    with pytest.raises(ValueError):
        MBAPHeader.from_bytes(b"\x00\x01\x00")


def test_handle_frame_too_short_returns_none():
    assert handle_frame(b"\x00\x01\x00\x00\x00\x01\x01", Callbacks()) is None


def test_handle_frame_read_holding_registers():
    store = {0: 0x1234, 1: 0x5678}
    request = bytes.fromhex("000100000006010300000002")
    response = handle_frame(request, _register_callbacks(store))
    assert response == bytes.fromhex("00010000000701030412345678")


def test_handle_frame_length_matches_payload():
    store = {5: 42}
    request = bytes.fromhex("00090000000603030005000a")
    response = handle_frame(request, _register_callbacks(store))
    header = MBAPHeader.from_bytes(response)
    assert header.length == len(response) - 6
    assert header.transaction_id == 9
    assert header.unit_id == 3
    assert response[7:] == handle_request(request[7:], _register_callbacks(store))


def test_handle_frame_unsupported_function_gives_exception():
    request = bytes.fromhex("0002000000020141")
    response = handle_frame(request, Callbacks())
    assert response[:4] == request[:4]
    assert response[6] == request[6]
    assert response[7:] == bytes([0x41 + 0x80, 0x01])
    assert MBAPHeader.from_bytes(response).length == 3


def test_handle_frame_write_single_register_echoes():
    store = {}
    request = bytes.fromhex("000400000006010600070102")
    response = handle_frame(request, _register_callbacks(store))
    assert response == request
    assert store == {7: 0x0102}


def test_server_rejects_bad_max_clients():
    with pytest.raises(ValueError):
        ModbusTCPServer("127.0.0.1", 0, 0, Callbacks())


def test_server_rejects_bad_host():
    with pytest.raises(ValueError):
        ModbusTCPServer("not-an-address", 0, 1, Callbacks())


@pytest.fixture
def running_server():
    servers = []

    def start(max_clients, callbacks):
        server = ModbusTCPServer("127.0.0.1", 0, max_clients, callbacks)
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        servers.append((server, thread))
        return server

    yield start
    for server, thread in servers:
        server.shutdown()
        thread.join(5)


def _connect(server):
    sock = socket.create_connection(server.server_address, timeout=5)
    return sock


def test_server_answers_request(running_server):
    store = {}
    server = running_server(2, _register_callbacks(store))
    write = bytes.fromhex("000100000006010600030102")
    read = bytes.fromhex("000200000006010300030001")
    with _connect(server) as client:
        client.sendall(write)
        assert client.recv(64) == write
        client.sendall(read)
        response = client.recv(64)
    assert response == handle_frame(read, _register_callbacks(store))
    assert response[7] == FunctionCode.READ_HOLDING_REGISTERS
    assert response[9:] == bytes.fromhex("0102")


def test_server_refuses_client_beyond_limit(running_server):
    server = running_server(1, _register_callbacks({}))
    request = bytes.fromhex("000100000006010300000001")
    with _connect(server) as first:
        first.sendall(request)
        assert first.recv(64) == handle_frame(request, _register_callbacks({}))
        with _connect(server) as second:
            try:
                data = second.recv(64)
            except ConnectionResetError:
                data = b""
            assert data == b""


def test_shutdown_closes_connections():
    server = ModbusTCPServer("127.0.0.1", 0, 1, _register_callbacks({}))
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    request = bytes.fromhex("000100000006010300000001")
    with _connect(server) as client:
        client.sendall(request)
        assert client.recv(64) == handle_frame(request, _register_callbacks({}))
        server.shutdown()
        thread.join(5)
        try:
            data = client.recv(64)
        except ConnectionResetError:
            data = b""
        assert data == b""
    assert not thread.is_alive()