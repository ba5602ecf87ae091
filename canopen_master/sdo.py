"""Client side of the SDO protocol: expedited and segmented transfers of object values."""

from __future__ import annotations

import logging
import threading
from typing import Optional

from .exceptions import CanOpenTimeout
from .frames import BufferedReader, CommInterface, Frame, Header
from .objdict import Entry, Key, NodeIdOffset, ObjectDict
from .storage import ObjectStorage

_log = logging.getLogger(__name__)

# client command specifiers
_DOWNLOAD_SEGMENT_REQUEST = 0
_DOWNLOAD_INITIATE_REQUEST = 1
_UPLOAD_INITIATE_REQUEST = 2
_UPLOAD_SEGMENT_REQUEST = 3
_ABORT = 4

# server command specifiers
_UPLOAD_SEGMENT_RESPONSE = 0
_DOWNLOAD_SEGMENT_RESPONSE = 1
_UPLOAD_INITIATE_RESPONSE = 2
_DOWNLOAD_INITIATE_RESPONSE = 3

_SIZE_INDICATED = 0x01
_EXPEDITED = 0x02
_TOGGLE = 0x10
_SEGMENT_DONE = 0x01

TOGGLE_NOT_ALTERNATED = 0x05030000
PROTOCOL_TIMED_OUT = 0x05040000
LENGTH_MISMATCH = 0x06070010
GENERAL_ERROR = 0x08000000

SDO_SERVER_PARAMETER = 0x1200
_ID_MASK = (1 << 29) - 1
_EXTENDED_BIT = 1 << 29

_ABORT_TEXTS = {
    0x05030000: "Toggle bit not alternated.",
    0x05040000: "SDO protocol timed out.",
    0x05040001: "Client/server command specifier not valid or unknown.",
    0x05040002: "Invalid block size (block mode only).",
    0x05040003: "Invalid sequence number (block mode only).",
    0x05040004: "CRC error (block mode only).",
    0x05040005: "Out of memory.",
    0x06010000: "Unsupported access to an object.",
    0x06010001: "Attempt to read a write only object.",
    0x06010002: "Attempt to write a read only object.",
    0x06020000: "Object does not exist in the object dictionary.",
    0x06040041: "Object cannot be mapped to the PDO.",
    0x06040042: "The number and length of the objects to be mapped would exceed PDO length.",
    0x06040043: "General parameter incompatibility reason.",
    0x06040047: "General internal incompatibility in the device.",
    0x06060000: "Access failed due to an hardware error.",
    0x06070010: "Data type does not match, length of service parameter does not match",
    0x06070012: "Data type does not match, length of service parameter too high",
    0x06070013: "Data type does not match, length of service parameter too low",
    0x06090011: "Sub-index does not exist.",
    0x06090030: "Invalid value for parameter (download only).",
    0x06090031: "Value of parameter written too high (download only).",
    0x06090032: "Value of parameter written too low (download only).",
    0x06090036: "Maximum value is less than minimum value.",
    0x060A0023: "Resource not available: SDO connection",
    0x08000000: "General error",
    0x08000020: "Data cannot be transferred or stored to the application.",
    0x08000021: "Data cannot be transferred or stored to the application because of local control.",
    0x08000022: "Data cannot be transferred or stored to the application because of the present device state.",
    0x08000023: "Object dictionary dynamic generation fails or no object dictionary is present (e.g.object dictionary is generated from file and generation fails because of an file error).",
    0x08000024: "No data available",
}


def abort_text(code: int) -> str:
    """Description of an SDO abort code."""
    return _ABORT_TEXTS.get(code, "Abort code is reserved")


def _initiate_size(data: bytes) -> int:
    """Size announced by an initiate frame, 0 if none."""
    if not data[0] & _SIZE_INDICATED:
        return 0
    if data[0] & _EXPEDITED:
        return 4 - ((data[0] >> 2) & 0x03)
    return data[4] | (data[7] << 8)


def _header_from_cob_id(value: int) -> Header:
    return Header(value & _ID_MASK, bool(value & _EXTENDED_BIT))


class SDOClient:
    """Reads and writes objects of one node and owns the node's object storage."""

    def __init__(self, interface: CommInterface, object_dict: ObjectDict, node_id: int) -> None:
        self.interface = interface
        self.node_id = node_id
        self.storage = ObjectStorage(object_dict, node_id, self.read, self.write)
        self.response_timeout = 1.0
        self.client_id = Header(0x600 + node_id)
        self._lock = threading.Lock()
        self._reader = BufferedReader(False, 1)
        self._buffer = bytearray()
        self._offset = 0
        self._total = 0
        self._done = False
        self._current: Optional[Entry] = None
        self._last_msg = self._frame(bytes([_ABORT << 5]))

    def _frame(self, data: bytes) -> Frame:
        return Frame(
            id=self.client_id.id,
            is_extended=self.client_id.is_extended,
            data=bytes(data).ljust(8, b"\x00"),
        )

    def _send(self, data: bytes) -> None:
        self._last_msg = self._frame(data)
        self.interface.send(self._last_msg)

    def _resolve_id(self, sub_index: int, fallback: int) -> Header:
        try:
            value = self.storage.object_dict.get(Key(SDO_SERVER_PARAMETER, sub_index)).value()
            return _header_from_cob_id(NodeIdOffset.apply(value, self.node_id))
        except Exception:
            return Header(fallback + self.node_id)

    def init(self) -> None:
        """Resolve the SDO identifiers and start listening for server responses."""
        self.client_id = self._resolve_id(1, 0x600)
        self._last_msg = self._frame(bytes([_ABORT << 5]))
        self._current = None
        server_id = self._resolve_id(2, 0x580)
        self._reader.listen(self.interface, server_id)

    # request frames

    @staticmethod
    def _mux(entry: Entry) -> bytes:
        return entry.index.to_bytes(2, "little") + bytes([entry.sub_index])

    def _send_download_initiate(self, entry: Entry) -> None:
        size = len(self._buffer)
        if size > 4:
            head = (_DOWNLOAD_INITIATE_REQUEST << 5) | _SIZE_INDICATED
            payload = bytes([size & 0xFF, 0, 0, (size >> 8) & 0xFF])
            self._offset = 0
        else:
            head = (
                (_DOWNLOAD_INITIATE_REQUEST << 5)
                | ((4 - size) << 2)
                | _EXPEDITED
                | _SIZE_INDICATED
            )
            payload = bytes(self._buffer).ljust(4, b"\x00")
            self._offset = size
        self._send(bytes([head]) + self._mux(entry) + payload)

    def _send_download_segment(self, toggle: bool) -> None:
        size = len(self._buffer) - self._offset
        done = 0
        if size > 7:
            size = 7
        else:
            done = _SEGMENT_DONE
        chunk = bytes(self._buffer[self._offset : self._offset + size])
        head = (_DOWNLOAD_SEGMENT_REQUEST << 5) | (_TOGGLE if toggle else 0) | ((7 - size) << 1) | done
        self._offset += size
        self._send(bytes([head]) + chunk.ljust(7, b"\x00"))

    def _send_upload_initiate(self, entry: Entry) -> None:
        self._send(bytes([_UPLOAD_INITIATE_REQUEST << 5]) + self._mux(entry))

    def _send_upload_segment(self, toggle: bool) -> None:
        self._send(bytes([(_UPLOAD_SEGMENT_REQUEST << 5) | (_TOGGLE if toggle else 0)]))

    def _abort(self, reason: int) -> None:
        if self._current is not None:
            self._send(
                bytes([_ABORT << 5]) + self._mux(self._current) + reason.to_bytes(4, "little")
            )

    # response checks; each returns an abort reason or 0

    def _check_initiate(self, data: bytes, request: int) -> int:
        req = self._last_msg.data
        if req[0] >> 5 == request and data[1:4] == req[1:4]:
            return 0
        return GENERAL_ERROR

    def _check_segment(self, data: bytes, request: int) -> int:
        req = self._last_msg.data
        if req[0] >> 5 != request:
            return GENERAL_ERROR
        if (data[0] & _TOGGLE) != (req[0] & _TOGGLE):
            return TOGGLE_NOT_ALTERNATED
        return 0

    def _check_upload_initiate(self, data: bytes) -> int:
        req = self._last_msg.data
        if req[0] >> 5 == _UPLOAD_INITIATE_REQUEST and data[1:4] == req[1:4]:
            announced = _initiate_size(data)
            size = self._total
            # devices may answer with more bytes than requested
            if announced == 0 or size == 0 or announced >= size:
                if not data[0] & _EXPEDITED or (announced <= 4 and size <= 4):
                    return 0
            else:
                return LENGTH_MISMATCH
        return GENERAL_ERROR

    def _resize(self, size: int) -> None:
        if len(self._buffer) > size:
            del self._buffer[size:]
        else:
            self._buffer.extend(bytes(size - len(self._buffer)))

    def _read_upload_initiate(self, data: bytes) -> bool:
        if data[0] & _SIZE_INDICATED and self._total == 0:
            self._total = _initiate_size(data)
            self._resize(self._total)
        if data[0] & _EXPEDITED:
            n = min(len(self._buffer), 4)
            self._buffer[:n] = data[4 : 4 + n]
            self._offset = len(self._buffer)
            return True
        return False

    def _read_upload_segment(self, data: bytes) -> bool:
        n = 7 - ((data[0] >> 1) & 0x07)
        if self._total == 0:
            self._resize(self._offset + n)
        if self._offset + n <= len(self._buffer):
            self._buffer[self._offset : self._offset + n] = data[1 : 1 + n]
            self._offset += n
            return True
        return False

    def _process_frame(self, msg: Frame) -> bool:
        if msg.dlc != 8:
            return False
        data = msg.data
        command = data[0] >> 5
        reason = 0
        toggle = bool(data[0] & _TOGGLE)
        if command == _DOWNLOAD_INITIATE_RESPONSE:
            reason = self._check_initiate(data, _DOWNLOAD_INITIATE_REQUEST)
            if not reason:
                if self._offset < self._total:
                    self._send_download_segment(False)
                else:
                    self._done = True
        elif command == _DOWNLOAD_SEGMENT_RESPONSE:
            reason = self._check_segment(data, _DOWNLOAD_SEGMENT_REQUEST)
            if not reason:
                if self._offset < self._total:
                    self._send_download_segment(not toggle)
                else:
                    self._done = True
        elif command == _UPLOAD_INITIATE_RESPONSE:
            reason = self._check_upload_initiate(data)
            if not reason:
                if self._read_upload_initiate(data):
                    self._done = True
                else:
                    self._send_upload_segment(False)
        elif command == _UPLOAD_SEGMENT_RESPONSE:
            reason = self._check_segment(data, _UPLOAD_SEGMENT_REQUEST)
            if not reason:
                if self._read_upload_segment(data):
                    if data[0] & _SEGMENT_DONE or self._offset == self._total:
                        self._done = True
                    else:
                        self._send_upload_segment(not toggle)
                else:
                    _log.error(
                        "abort, size mismatch %d %d",
                        len(self._buffer),
                        7 - ((data[0] >> 1) & 0x07),
                    )
                    reason = LENGTH_MISMATCH
        elif command == _ABORT:
            code = int.from_bytes(data[4:8], "little")
            _log.error(
                "abort %x#%d, reason: %s",
                int.from_bytes(data[1:3], "little"),
                data[3],
                abort_text(code),
            )
            self._offset = 0
            return False
        if reason:
            self._abort(reason)
            self._offset = 0
            return False
        return True

    def _transmit_and_wait(self, entry: Entry, data: bytes, upload: bool) -> bytes:
        self._buffer = bytearray(data)
        self._offset = 0
        self._total = len(self._buffer)
        self._current = entry
        self._done = False
        with self._reader.enabled():
            if upload:
                self._send_upload_initiate(entry)
            else:
                self._send_download_initiate(entry)
            while not self._done:
                msg = self._reader.read(self.response_timeout)
                if msg is None:
                    self._abort(PROTOCOL_TIMED_OUT)
                    _log.error("Did not receive a response message")
                    break
                if not self._process_frame(msg):
                    _log.error("Could not process message")
                    break
        if self._offset == 0 or self._offset != self._total:
            raise CanOpenTimeout("SDO", key=entry.key())
        return bytes(self._buffer)

    def read(self, entry: Entry, data: bytes) -> bytes:
        """Upload the object's value; ``data`` gives the expected size (empty if unknown)."""
        if not self._lock.acquire(timeout=2.0):
            raise CanOpenTimeout("SDO read", key=entry.key())
        try:
            return self._transmit_and_wait(entry, bytes(data), True)
        finally:
            self._lock.release()

    def write(self, entry: Entry, data: bytes) -> None:
        """Download ``data`` to the object."""
        if not self._lock.acquire(timeout=2.0):
            raise CanOpenTimeout("SDO write", key=entry.key())
        try:
            self._transmit_and_wait(entry, bytes(data), False)
        finally:
            self._lock.release()