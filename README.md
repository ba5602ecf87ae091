# canopen_master

A CANopen master library in pure Python with no third-party dependencies.

## What it contains

- **Object dictionaries** (`canopen_master.objdict`): `ObjectDict` holds
  `Entry` objects keyed by `Key(index, sub_index)`. Values are `HoldAny`
  instances tagged with a `DataType`; `$NODEID`-relative values are held as
  `NodeIdOffset` and resolved with `NodeIdOffset.apply(value, node_id)`.
  `encode_value` and `decode_value` convert values to and from their
  little-endian wire form.
- **EDS/DCF parsing** (`canopen_master.eds`): `load_eds(path, overlay)` and
  `parse_eds(text, overlay)` build an `ObjectDict` from an electronic data
  sheet. The optional overlay maps section names (such as `"1017"`) to values
  that replace that object's `ParameterValue`. Helpers: `int_from_string`,
  `parse_int`, `set_access`, `read_value`, `format_value`.
- **Object storage** (`canopen_master.storage`): `ObjectStorage` caches the
  object values of one remote node and reads or writes them through delegate
  functions. `entry(key, type_tag)` returns a `StorageEntry` with `get()`,
  `get_cached()`, `set(value)` and `set_cached(value)`;
  `string_reader` and `string_writer` give text access to an object.
- **SDO client** (`canopen_master.sdo`): `SDOClient` performs expedited and
  segmented uploads and downloads and owns the node's `ObjectStorage`.
  `abort_text(code)` describes an SDO abort code.
- **PDO mapping** (`canopen_master.pdo`): `PDOMapper` configures the transmit
  and receive PDOs described in the dictionary; `read(status)` checks received
  PDOs for timeouts, `write()` sends transmit PDOs whose data changed.
- **NMT node control** (`canopen_master.node`): `Node` resets, starts, stops
  and prepares a device, follows its heartbeat and reports its `NodeState`
  through `get_state()` and `add_state_listener(callback)`. `NodeChain` sends
  NMT commands to several nodes in turn.
- **Emergency handling** (`canopen_master.emcy`): `EMCYHandler` watches EMCY
  messages and the error register (0x1001) and error list (0x1003).
- **SYNC** (`canopen_master.sync`): `SimpleSyncLayer` sends SYNC frames with an
  optional counter while nodes are operational; `ExternalSyncLayer` follows
  SYNC frames from another producer. `create_master(name, interface)` returns
  a `SimpleMaster` (`"simple"`) or an `ExternalMaster` (`"external"`), whose
  `get_sync(SyncProperties(header, period_ms, overflow))` creates the layer.
- **Layers** (`canopen_master.layer`): each component is a `Layer` with
  `init`, `read`, `write`, `diag`, `halt`, `recover` and `shutdown`. Results
  collect in a `LayerStatus` (levels in `StatusLevel`, text in `reason`) or a
  `LayerReport` for diagnostics. Layers combine in a `LayerGroup`,
  `LayerStack` or `LayerGroupNoDiag`; a `DiagGroup` gathers diagnostics.
- **Frames and transport** (`canopen_master.frames`): `Header`, `Frame`, the
  in-process `CommInterface` with listeners, and `BufferedReader`.
- **Timer** (`canopen_master.timer`): `Timer.start(func, period, start_now)`
  calls `func` on a background thread every period (seconds or `timedelta`)
  for as long as it returns True.

Errors are subclasses of `canopen_master.exceptions.CanOpenError`:
`ParseError`, `CanOpenTimeout`, `AccessError` and `PointerInvalid`. Missing
dictionary entries raise `KeyError`.

## Installation

```
pip install .
```

For the test suite:

```
pip install ".[test]"
pytest
```

## Example

```python
from canopen_master.eds import load_eds
from canopen_master.frames import CommInterface
from canopen_master.layer import LayerStatus, StatusLevel
from canopen_master.node import Node
from canopen_master.objdict import DataType, Key


def transmit(frame):
    ...  # hand the frame to the CAN hardware
    return True


bus = CommInterface(transmit)
# call bus.dispatch(frame) for every frame received from the bus

node = Node(bus, load_eds("device.eds"), 1)

status = LayerStatus()
node.init(status)
if status.bounded(StatusLevel.WARN):
    print("node is", node.get_state().name)
    print("device type", hex(node.get(Key(0x1000), DataType.UNSIGNED32)))
else:
    print("init failed:", status.reason)

status = LayerStatus()
node.shutdown(status)
```

## What it does not do

The package contains no driver for CAN hardware or operating-system CAN
sockets: frames leave through the transmit callable given to
`CommInterface` and arrive through `CommInterface.dispatch`. It provides no
command-line tool and no kernel-side (broadcast manager) SYNC producer; SYNC
frames are sent by `SimpleSyncLayer` from within the layer cycle.