# modbuskit

A compact Modbus server library. It decodes Modbus request PDUs, hands
each read or write to callbacks you provide, and returns the encoded
response PDU. A threaded Modbus/TCP server (`modbuskit.tcp`) puts the
request handler on a network socket.

## Installation

```
pip install modbuskit
```

## Supported function codes

| Code | Function                        |
|------|---------------------------------|
| 0x01 | Read Coils                      |
| 0x02 | Read Discrete Inputs            |
| 0x03 | Read Holding Registers          |
| 0x04 | Read Input Registers            |
| 0x05 | Write Single Coil               |
| 0x06 | Write Single Register           |
| 0x0F | Write Multiple Coils            |
| 0x10 | Write Multiple Registers        |
| 0x17 | Read/Write Multiple Registers   |

Any other function code goes to the `other_functions` callback if one is
set. If none is set, it gets an "illegal function" exception response.

## Callbacks

`modbuskit.protocol.Callbacks` is a dataclass that holds the hooks:
`read_bits`, `write_bits`, `read_words`, `write_words` and
`other_functions`. Set only the ones you need. A request that needs a
hook you left unset gets an `ExceptionCode.ILLEGAL_FUNCTION` response.

- Read callbacks get `(function_code, table, start_address, quantity)`
  and return a sequence of values. Extra values are dropped. Missing
  trailing values read as zero.
- Write callbacks get `(function_code, table, start_address, quantity,
  values)`, where `values` is a list.
- `other_functions` gets `(function_code, pdu)` and returns the whole
  response PDU as bytes.

`table` is a `DataTable` member: coils for 0x01, 0x05 and 0x0F, discrete
inputs for 0x02, input registers for 0x04, and holding registers for
0x03, 0x06, 0x10 and 0x17. Bits arrive as booleans and are returned as
any truthy or falsy values, in address order. Registers are plain 16-bit
integers. You never deal with the on-wire bit order or byte order.

Raise `ModbusException(code)` from a callback to reject a request. The
client then gets that exception code. A request that is cut short, or
that asks for more data than fits into one response (over 255 bytes),
gets `ExceptionCode.ILLEGAL_DATA_VALUE`.

```python
from modbuskit.protocol import (
    Callbacks, ExceptionCode, ModbusException, handle_request,
)

holding = [0] * 100

def read_words(function_code, table, address, quantity):
    if address + quantity > len(holding):
        raise ModbusException(ExceptionCode.ILLEGAL_DATA_ADDRESS)
    return holding[address:address + quantity]

def write_words(function_code, table, address, quantity, values):
    if address + quantity > len(holding):
        raise ModbusException(ExceptionCode.ILLEGAL_DATA_ADDRESS)
    holding[address:address + quantity] = values

callbacks = Callbacks(read_words=read_words, write_words=write_words)

# Read Holding Registers, address 0, quantity 2
response = handle_request(bytes([0x03, 0x00, 0x00, 0x00, 0x02]), callbacks)
# response == b"\x03\x04\x00\x00\x00\x00"
```

`handle_request(pdu, callbacks)` returns a response PDU for every
non-empty request: either the normal reply or an exception reply. It
raises `ValueError` for an empty PDU. For a Read/Write Multiple
Registers request, the write is done before the read.

Other helpers in `modbuskit.protocol`:

- `error_response(function_code, error_code)` builds an exception reply
  (the function code with bit 0x80 set, then the error code).
- `flip_byte_bits(value)` reverses the bit order of one byte.
- `FunctionCode`, `DataTable` and `ExceptionCode` are `IntEnum`s of the
  protocol's numbers.

## Modbus/TCP

```python
import threading
from modbuskit.tcp import ModbusTCPServer

server = ModbusTCPServer("0.0.0.0", 502, max_clients=4, callbacks=callbacks)
thread = threading.Thread(target=server.serve_forever)
thread.start()
# ...
server.shutdown()
thread.join()
```

The constructor binds and listens at once. `host` must be an IPv4
address literal, and `max_clients` must be between 1 and 255. Pass port
0 to let the system pick one; `server.server_address` holds the bound
address.

`serve_forever()` runs until `shutdown()` is called from another thread.
Each client runs on its own thread. Once `max_clients` clients are
connected, further connections are accepted and closed straight away.
TCP keepalive is turned on for client sockets where the platform
supports it. `shutdown()` stops accepting, closes open connections and
waits a short time for client threads to end.

Each `recv` of up to 64 bytes is handled as one request frame.
`handle_frame(data, callbacks)` does this on its own: it returns the
framed response, or `None` when the data is shorter than the 7-byte MBAP
header plus a function code. The response keeps the request's
transaction id, protocol id and unit id. `MBAPHeader.from_bytes(data)`
and `MBAPHeader.to_bytes()` parse and build the header.

## What it does not do

modbuskit is a server only. It has no Modbus client, no serial (RTU or
ASCII) transport and no command-line program. Frames split across or
joined in TCP reads are not reassembled. It keeps no data of its own:
all storage is up to your callbacks.

## Running the tests

```
pip install -e ".[test]"
pytest
```