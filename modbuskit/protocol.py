"""Modbus PDU handling: decode requests, dispatch to data callbacks, encode replies."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Optional, Sequence

__all__ = [
    "FunctionCode",
    "DataTable",
    "ExceptionCode",
    "ModbusException",
    "Callbacks",
    "flip_byte_bits",
    "error_response",
    "handle_request",
]

_EXCEPTION_FLAG = 0x80
_MAX_BYTE_COUNT = 0xFF


class FunctionCode(IntEnum):
    """Modbus public function codes."""

    READ_COILS = 0x01
    READ_DISCRETE_INPUTS = 0x02
    READ_HOLDING_REGISTERS = 0x03
    READ_INPUT_REGISTERS = 0x04
    WRITE_SINGLE_COIL = 0x05
    WRITE_SINGLE_REGISTER = 0x06
    READ_EXCEPTION_STATUS = 0x07
    DIAGNOSTIC = 0x08
    GET_COM_EVENT_COUNTER = 0x0B
    GET_COM_EVENT_LOG = 0x0C
    WRITE_MULTIPLE_COILS = 0x0F
    WRITE_MULTIPLE_REGISTERS = 0x10
    REPORT_SERVER_ID = 0x11
    READ_FILE_RECORD = 0x14
    WRITE_FILE_RECORD = 0x15
    MASK_WRITE_REGISTER = 0x16
    READ_WRITE_MULTIPLE_REGISTERS = 0x17
    READ_FIFO_QUEUE = 0x18
    READ_DEVICE_IDENTIFICATION = 0x43


class DataTable(IntEnum):
    """The four primary Modbus data tables."""

    DISCRETE_INPUTS = 0x01
    COILS = 0x02
    INPUT_REGISTERS = 0x03
    HOLDING_REGISTERS = 0x04


class ExceptionCode(IntEnum):
    """Modbus exception codes sent back in error responses."""

    ILLEGAL_FUNCTION = 0x01
    ILLEGAL_DATA_ADDRESS = 0x02
    ILLEGAL_DATA_VALUE = 0x03
    SERVER_DEVICE_FAILURE = 0x04
    ACKNOWLEDGE = 0x05
    SERVER_DEVICE_BUSY = 0x06
    MEMORY_PARITY_ERROR = 0x08
    GATEWAY_PATH_UNAVAILABLE = 0x0A
    GATEWAY_TARGET_DEVICE_FAILED_TO_RESPOND = 0x0B


class ModbusException(Exception):
    """Raised by callbacks (or the handler) to answer with a Modbus exception."""

    def __init__(self, code: int, message: Optional[str] = None) -> None:
        code = int(code)
        if not 0 < code <= 0xFF:
            raise ValueError(f"invalid Modbus exception code: {code}")
        try:
            self.code: int = ExceptionCode(code)
        except ValueError:
            self.code = code
        super().__init__(message or f"Modbus exception 0x{code:02X}")


ReadBits = Callable[[int, DataTable, int, int], Sequence[bool]]
WriteBits = Callable[[int, DataTable, int, int, list], None]
ReadWords = Callable[[int, DataTable, int, int], Sequence[int]]
WriteWords = Callable[[int, DataTable, int, int, list], None]
OtherFunction = Callable[[int, bytes], bytes]


@dataclass
class Callbacks:
    """Application hooks that serve the data tables.

    Read callbacks receive ``(function_code, table, start_address, quantity)``
    and return a sequence of values; missing trailing values read as zero.
    Write callbacks receive the same arguments followed by a list of values.
    ``other_functions`` receives ``(function_code, pdu)`` for any function
    code not handled here and returns the response PDU.
    Any callback may raise :class:`ModbusException` to reject the request.
    """

    read_bits: Optional[ReadBits] = None
    write_bits: Optional[WriteBits] = None
    read_words: Optional[ReadWords] = None
    write_words: Optional[WriteWords] = None
    other_functions: Optional[OtherFunction] = None


def flip_byte_bits(value: int) -> int:
    """Reverse the bit order of a single byte."""
    if not 0 <= value <= 0xFF:
        raise ValueError(f"byte value out of range: {value}")
    return int(f"{value:08b}"[::-1], 2)


def error_response(function_code: int, error_code: int) -> bytes:
    """Build the exception response PDU for a function code."""
    return bytes(((int(function_code) + _EXCEPTION_FLAG) & 0xFF, int(error_code) & 0xFF))


def _require(callback, name: str):
    if callback is None:
        raise ModbusException(ExceptionCode.ILLEGAL_FUNCTION, f"no {name} callback")
    return callback


def _unpack(fmt: str, pdu: bytes, offset: int = 1) -> tuple:
    try:
        return struct.unpack_from(fmt, pdu, offset)
    except struct.error:
        raise ModbusException(ExceptionCode.ILLEGAL_DATA_VALUE, "truncated request") from None


def _payload(pdu: bytes, offset: int, size: int) -> bytes:
    data = pdu[offset : offset + size]
    if len(data) < size:
        raise ModbusException(ExceptionCode.ILLEGAL_DATA_VALUE, "truncated request data")
    return data


def _fit(values: Sequence, count: int) -> list:
    fitted = list(values)[:count]
    fitted.extend([0] * (count - len(fitted)))
    return fitted


def _bit_byte_count(quantity: int) -> int:
    return (quantity + 7) // 8


def _check_byte_count(byte_count: int) -> None:
    if byte_count > _MAX_BYTE_COUNT:
        raise ModbusException(ExceptionCode.ILLEGAL_DATA_VALUE, "quantity too large")


def _pack_bits(bits: Sequence, quantity: int) -> bytes:
    packed = bytearray(_bit_byte_count(quantity))
    for index, bit in enumerate(_fit(bits, quantity)):
        if bit:
            packed[index // 8] |= 1 << (index % 8)
    return bytes(packed)


def _unpack_bits(data: bytes, quantity: int) -> list:
    return [bool(data[index // 8] >> (index % 8) & 1) for index in range(quantity)]


def _pack_words(words: Sequence[int], quantity: int) -> bytes:
    return b"".join((int(word) & 0xFFFF).to_bytes(2, "big") for word in _fit(words, quantity))


def _unpack_words(data: bytes) -> list:
    return [word for (word,) in struct.iter_unpack(">H", data)]


def _read_bits(function_code: FunctionCode, pdu: bytes, callbacks: Callbacks) -> bytes:
    read_bits = _require(callbacks.read_bits, "read_bits")
    start, quantity = _unpack(">HH", pdu)
    byte_count = _bit_byte_count(quantity)
    _check_byte_count(byte_count)
    table = DataTable.COILS if function_code == FunctionCode.READ_COILS else DataTable.DISCRETE_INPUTS
    bits = read_bits(function_code, table, start, quantity)
    return bytes((function_code, byte_count)) + _pack_bits(bits, quantity)


def _read_words(function_code: FunctionCode, pdu: bytes, callbacks: Callbacks) -> bytes:
    read_words = _require(callbacks.read_words, "read_words")
    start, quantity = _unpack(">HH", pdu)
    byte_count = 2 * quantity
    _check_byte_count(byte_count)
    table = (
        DataTable.HOLDING_REGISTERS
        if function_code == FunctionCode.READ_HOLDING_REGISTERS
        else DataTable.INPUT_REGISTERS
    )
    words = read_words(function_code, table, start, quantity)
    return bytes((function_code, byte_count)) + _pack_words(words, quantity)


def _write_single(function_code: FunctionCode, pdu: bytes, callbacks: Callbacks) -> bytes:
    address, value = _unpack(">HH", pdu)
    if function_code == FunctionCode.WRITE_SINGLE_COIL:
        write_bits = _require(callbacks.write_bits, "write_bits")
        write_bits(function_code, DataTable.COILS, address, 1, [value != 0])
    else:
        write_words = _require(callbacks.write_words, "write_words")
        write_words(function_code, DataTable.HOLDING_REGISTERS, address, 1, [value])
    return pdu[:5]


def _write_multiple_registers(function_code: FunctionCode, pdu: bytes, callbacks: Callbacks) -> bytes:
    write_words = _require(callbacks.write_words, "write_words")
    start, quantity = _unpack(">HH", pdu)
    values = _unpack_words(_payload(pdu, 6, 2 * quantity))
    write_words(function_code, DataTable.HOLDING_REGISTERS, start, quantity, values)
    return pdu[:5]


def _write_multiple_coils(function_code: FunctionCode, pdu: bytes, callbacks: Callbacks) -> bytes:
    write_bits = _require(callbacks.write_bits, "write_bits")
    start, quantity = _unpack(">HH", pdu)
    values = _unpack_bits(_payload(pdu, 6, _bit_byte_count(quantity)), quantity)
    write_bits(function_code, DataTable.COILS, start, quantity, values)
    return pdu[:5]


def _read_write_multiple_registers(
    function_code: FunctionCode, pdu: bytes, callbacks: Callbacks
) -> bytes:
    read_words = _require(callbacks.read_words, "read_words")
    write_words = _require(callbacks.write_words, "write_words")
    read_start, read_quantity, write_start, write_quantity, _ = _unpack(">HHHHB", pdu)
    byte_count = 2 * read_quantity
    _check_byte_count(byte_count)
    values = _unpack_words(_payload(pdu, 10, 2 * write_quantity))
    write_words(function_code, DataTable.HOLDING_REGISTERS, write_start, write_quantity, values)
    words = read_words(function_code, DataTable.HOLDING_REGISTERS, read_start, read_quantity)
    return bytes((function_code, byte_count)) + _pack_words(words, read_quantity)


_HANDLERS = {
    FunctionCode.READ_COILS: _read_bits,
    FunctionCode.READ_DISCRETE_INPUTS: _read_bits,
    FunctionCode.READ_HOLDING_REGISTERS: _read_words,
    FunctionCode.READ_INPUT_REGISTERS: _read_words,
    FunctionCode.WRITE_SINGLE_COIL: _write_single,
    FunctionCode.WRITE_SINGLE_REGISTER: _write_single,
    FunctionCode.WRITE_MULTIPLE_REGISTERS: _write_multiple_registers,
    FunctionCode.WRITE_MULTIPLE_COILS: _write_multiple_coils,
    FunctionCode.READ_WRITE_MULTIPLE_REGISTERS: _read_write_multiple_registers,
}


def handle_request(pdu: bytes, callbacks: Callbacks) -> bytes:
    """Process a request PDU and return the response PDU.

    Failures reported through :class:`ModbusException` become exception
    responses; a response is always produced for a non-empty request.
    """
    pdu = bytes(pdu)
    if not pdu:
        raise ValueError("empty request PDU")
    function_code = pdu[0]
    try:
        if function_code in _HANDLERS:
            code = FunctionCode(function_code)
            return _HANDLERS[code](code, pdu, callbacks)
        if callbacks.other_functions is not None:
            return bytes(callbacks.other_functions(function_code, pdu))
        raise ModbusException(ExceptionCode.ILLEGAL_FUNCTION, "unsupported function")
    except ModbusException as exc:
        return error_response(function_code, exc.code)