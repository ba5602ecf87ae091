"""Process data objects: mapping of object values into PDO frames."""

from __future__ import annotations

import threading
from typing import Optional

from .exceptions import CanOpenTimeout
from .frames import CommInterface, Frame, Header, Listener
from .layer import LayerStatus
from .objdict import DataType, Entry, Key, NodeIdOffset, ObjectDict
from .storage import ObjectStorage

ID_MASK = (1 << 29) - 1
EXTENDED_MASK = 1 << 29
NO_RTR_MASK = 1 << 30
INVALID_MASK = 1 << 31

SUB_COM_NUM = 0
SUB_COM_COB_ID = 1
SUB_COM_TRANSMISSION_TYPE = 2
SUB_COM_RESERVED = 4
SUB_MAP_NUM = 0

RPDO_COM_BASE = 0x1400
RPDO_MAP_BASE = 0x1600
TPDO_COM_BASE = 0x1800
TPDO_MAP_BASE = 0x1A00

MAX_MAPPED_OBJECTS = 0x40
MAX_PDO_NUMBER = 512
MAX_PDO_LENGTH = 8

_RTR_SYNC = 0xFC
_RTR_EVENT = 0xFD


def _pdo_header(cob_id: int, fill_rtr: bool = False) -> Header:
    return Header(
        cob_id & ID_MASK,
        bool(cob_id & EXTENDED_MASK),
        fill_rtr and not cob_id & NO_RTR_MASK,
        False,
    )


def _is_cyclic(transmission_type: int) -> bool:
    return 1 <= transmission_type <= 240


class PDOBuffer:
    """The bytes of one mapped object, shared between the storage and the PDO frame."""

    def __init__(self, size: int) -> None:
        self.size = size
        self._lock = threading.Lock()
        self._dirty = False
        self._empty = True
        self._buffer = bytes(size)

    def take(self) -> tuple[Optional[bytes], bool]:
        """The buffered bytes (None if nothing was written yet) and whether they changed."""
        with self._lock:
            if self._empty:
                return None, False
            was_dirty = self._dirty
            self._dirty = False
            return self._buffer, was_dirty

    def put(self, data: bytes) -> None:
        """Store the leading bytes of a received frame."""
        data = bytes(data)
        with self._lock:
            if len(data) < self.size:
                raise TypeError(f"PDO buffer needs {self.size} bytes, got {len(data)}")
            self._buffer = data[: self.size]
            self._empty = False
            self._dirty = True

    def read(self, entry: Entry, data: bytes) -> bytes:
        """Read delegate for the object storage."""
        with self._lock:
            if self.size != len(data):
                raise TypeError(f"PDO buffer size mismatch [key {entry.key()}]")
            if self._empty:
                raise CanOpenTimeout("PDO data empty", key=entry.key())
            if self._dirty:
                self._dirty = False
                return self._buffer
            return bytes(data)

    def write(self, entry: Entry, data: bytes) -> None:
        """Write delegate for the object storage."""
        data = bytes(data)
        with self._lock:
            if self.size != len(data):
                raise TypeError(f"PDO buffer size mismatch [key {entry.key()}]")
            self._buffer = data
            self._empty = False
            self._dirty = True

    def clean(self) -> None:
        with self._lock:
            self._dirty = False


def _check_com_changed(od: ObjectDict, index: int) -> bool:
    for sub in range(7):
        try:
            if not od.get(Key(index, sub)).init_val.is_empty():
                return True
        except KeyError:
            pass
    return False


def _check_map_changed(num: int, od: ObjectDict, map_index: int) -> bool:
    if num <= MAX_MAPPED_OBJECTS:
        for sub in range(1, num + 1):
            try:
                if not od.get(Key(map_index, sub)).init_val.is_empty():
                    return True
            except KeyError:
                pass
        return False
    return od.get(Key(map_index, SUB_MAP_NUM)).init_val.is_empty()


class _PDO:
    def __init__(self, interface: CommInterface) -> None:
        self.interface = interface
        self.header = Header()
        self.dlc = 0
        self.transmission_type = 0
        self.buffers: list[PDOBuffer] = []
        self._lock = threading.Lock()

    def _parse_and_set_mapping(
        self, storage: ObjectStorage, com_index: int, map_index: int, read: bool, write: bool
    ) -> None:
        od = storage.object_dict
        num_entry = storage.entry(Key(map_index, SUB_MAP_NUM), DataType.UNSIGNED8)
        try:
            map_num = num_entry.desc().value().get(DataType.UNSIGNED8)
        except Exception:
            map_num = 0

        map_changed = _check_map_changed(map_num, od, map_index)

        cob_id = storage.entry(Key(com_index, SUB_COM_COB_ID), DataType.UNSIGNED32)
        com_changed = _check_com_changed(od, map_index)
        if (map_changed or com_changed) and cob_id.desc().writable:
            cob_id.set(cob_id.get() | INVALID_MASK)

        if 0 < map_num <= MAX_MAPPED_OBJECTS:
            if map_changed:
                num_entry.set(0)
            self.dlc = 0
            for sub in range(1, map_num + 1):
                map_entry = storage.entry(Key(map_index, sub), DataType.UNSIGNED32)
                init = od.get(Key(map_index, sub)).init_val
                if not init.is_empty():
                    map_entry.set(init.get(DataType.UNSIGNED32))
                param = map_entry.get_cached()
                length = param & 0xFF
                sub_index = (param >> 8) & 0xFF
                index = param >> 16
                buffer = PDOBuffer(length // 8)
                if index >= 0x1000 and (read or write):
                    storage.map(index, sub_index, buffer.read if read else None, buffer.write)
                self.dlc += buffer.size
                if self.dlc > MAX_PDO_LENGTH:
                    raise ValueError(f"PDO mapping of 0x{map_index:04x} exceeds 8 bytes")
                buffer.clean()
                self.buffers.append(buffer)

        if com_changed:
            subs = od.get(Key(com_index, SUB_COM_NUM)).value().get(DataType.UNSIGNED8)
            for i in range(SUB_COM_NUM + 1, subs + 1):
                if i in (SUB_COM_COB_ID, SUB_COM_RESERVED):
                    continue
                try:
                    storage.init(Key(com_index, i))
                except KeyError:
                    pass  # not provided
        if map_changed:
            num_entry.set(map_num)
        if (com_changed or map_changed) and cob_id.desc().writable:
            storage.init(Key(com_index, SUB_COM_COB_ID))
            cob_id.set(
                NodeIdOffset.apply(
                    od.get(Key(com_index, SUB_COM_COB_ID)).value(), storage.node_id
                )
            )

    def _frame(self, data: bytes) -> Frame:
        return Frame(
            id=self.header.id,
            is_extended=self.header.is_extended,
            is_rtr=self.header.is_rtr,
            is_error=self.header.is_error,
            data=data,
        )


class _RPDO(_PDO):
    """A PDO the device transmits and the master receives."""

    def __init__(self, interface: CommInterface) -> None:
        super().__init__(interface)
        self._listener: Optional[Listener] = None
        self._timeout = -1

    @classmethod
    def create(
        cls, interface: CommInterface, storage: ObjectStorage, com_index: int, map_index: int
    ) -> Optional["_RPDO"]:
        rpdo = cls(interface)
        return rpdo if rpdo._init(storage, com_index, map_index) else None

    def _init(self, storage: ObjectStorage, com_index: int, map_index: int) -> bool:
        with self._lock:
            self.close()
            od = storage.object_dict
            self._parse_and_set_mapping(storage, com_index, map_index, True, False)
            cob_id = NodeIdOffset.apply(
                od.get(Key(com_index, SUB_COM_COB_ID)).value(), storage.node_id
            )
            if not self.buffers or cob_id & INVALID_MASK:
                return False
            self.header = _pdo_header(cob_id, True)
            self.transmission_type = (
                od.get(Key(com_index, SUB_COM_TRANSMISSION_TYPE)).value().get(DataType.UNSIGNED8)
            )
            self._listener = self.interface.create_listener(
                self._handle_frame, _pdo_header(cob_id)
            )
            return True

    def close(self) -> None:
        if self._listener is not None:
            self._listener.close()
            self._listener = None

    def sync(self, status: LayerStatus) -> None:
        with self._lock:
            tt = self.transmission_type
            if _is_cyclic(tt) or tt == _RTR_SYNC:
                if self._timeout > 0:
                    self._timeout -= 1
                elif self._timeout == 0:
                    status.warn("RPDO timeout")
            if tt in (_RTR_SYNC, _RTR_EVENT) and self.header.is_rtr:
                self.interface.send(self._frame(bytes(self.dlc)))

    def _handle_frame(self, msg: Frame) -> None:
        offset = 0
        for buffer in self.buffers:
            if offset + buffer.size <= msg.dlc:
                buffer.put(msg.data[offset : offset + buffer.size])
                offset += buffer.size
        with self._lock:
            tt = self.transmission_type
            if _is_cyclic(tt):
                self._timeout = tt + 2
            elif tt in (_RTR_SYNC, _RTR_EVENT) and self.header.is_rtr:
                self._timeout = 1 + 2


class _TPDO(_PDO):
    """A PDO the master transmits and the device receives."""

    @classmethod
    def create(
        cls, interface: CommInterface, storage: ObjectStorage, com_index: int, map_index: int
    ) -> Optional["_TPDO"]:
        tpdo = cls(interface)
        return tpdo if tpdo._init(storage, com_index, map_index) else None

    def _init(self, storage: ObjectStorage, com_index: int, map_index: int) -> bool:
        with self._lock:
            od = storage.object_dict
            cob_id = NodeIdOffset.apply(
                od.get(Key(com_index, SUB_COM_COB_ID)).value(), storage.node_id
            )
            self.header = _pdo_header(cob_id)
            self._parse_and_set_mapping(storage, com_index, map_index, False, True)
            if not self.buffers or cob_id & INVALID_MASK:
                return False
            self._data = bytearray(self.dlc)
            tt = storage.entry(Key(com_index, SUB_COM_TRANSMISSION_TYPE), DataType.UNSIGNED8)
            self.transmission_type = tt.desc().value().get(DataType.UNSIGNED8)
            if self.transmission_type != 1 and self.transmission_type <= 240:
                tt.set(1)  # enforce synchronous transmission for compatibility
            return True

    def close(self) -> None:
        return None

    def sync(self) -> None:
        with self._lock:
            updated = False
            offset = 0
            for buffer in self.buffers:
                if len(self._data) - offset >= buffer.size:
                    chunk, dirty = buffer.take()
                    if chunk is not None:
                        self._data[offset : offset + buffer.size] = chunk
                    updated = dirty or updated
                    offset += buffer.size
            if updated:
                self.interface.send(self._frame(bytes(self._data)))


class PDOMapper:
    """Sets up all PDOs of a node and moves their data each cycle."""

    def __init__(self, interface: CommInterface) -> None:
        self.interface = interface
        self._lock = threading.Lock()
        self._rpdos: list[_RPDO] = []
        self._tpdos: list[_TPDO] = []

    def init(self, storage: ObjectStorage, status: LayerStatus) -> bool:
        """Configure the PDOs described in the node's dictionary."""
        with self._lock:
            try:
                for rpdo in self._rpdos:
                    rpdo.close()
                self._rpdos = []
                od = storage.object_dict
                for i in range(MAX_PDO_NUMBER):
                    if len(self._rpdos) >= od.device_info.nr_of_tx_pdo:
                        break
                    if not od.has(TPDO_COM_BASE + i, 0) and not od.has(TPDO_MAP_BASE + i, 0):
                        continue
                    rpdo = _RPDO.create(
                        self.interface, storage, TPDO_COM_BASE + i, TPDO_MAP_BASE + i
                    )
                    if rpdo is not None:
                        self._rpdos.append(rpdo)

                self._tpdos = []
                for i in range(MAX_PDO_NUMBER):
                    if len(self._tpdos) >= od.device_info.nr_of_rx_pdo:
                        break
                    if not od.has(RPDO_COM_BASE + i, 0) and not od.has(RPDO_MAP_BASE + i, 0):
                        continue
                    tpdo = _TPDO.create(
                        self.interface, storage, RPDO_COM_BASE + i, RPDO_MAP_BASE + i
                    )
                    if tpdo is not None:
                        self._tpdos.append(tpdo)
                return True
            except KeyError as exc:
                status.error(f"PDO error: {exc}")
                return False

    def read(self, status: LayerStatus) -> None:
        """Check the received PDOs for timeouts and request RTR PDOs."""
        with self._lock:
            for rpdo in self._rpdos:
                rpdo.sync(status)

    def write(self) -> bool:
        """Send every transmitted PDO whose data changed."""
        with self._lock:
            for tpdo in self._tpdos:
                tpdo.sync()
        return True