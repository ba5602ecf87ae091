"""Handling of emergency (EMCY) messages and the node's error register."""

from __future__ import annotations

import logging
from typing import Optional

from .exceptions import CanOpenTimeout
from .frames import CommInterface, Frame, Header, Listener
from .layer import Layer, LayerReport, LayerState, LayerStatus
from .objdict import DataType, Key
from .storage import ObjectStorage, StorageEntry

_log = logging.getLogger(__name__)

ERROR_REGISTER_INDEX = 0x1001
PREDEFINED_ERRORS_INDEX = 0x1003
EMCY_COB_ID_INDEX = 0x1014

_GENERIC_ERROR = 0x01
_PROFILE_SPECIFIC = 0x20
_ID_MASK = (1 << 29) - 1
_EXTENDED_BIT = 1 << 29


class EMCYHandler(Layer):
    """Tracks the emergency state of a node from EMCY messages and its error register."""

    def __init__(self, interface: CommInterface, storage: ObjectStorage) -> None:
        super().__init__("EMCY handler")
        self._storage = storage
        self._has_error = True
        self._error_register = storage.entry(ERROR_REGISTER_INDEX, DataType.UNSIGNED8)
        try:
            self._num_errors = storage.entry(Key(PREDEFINED_ERRORS_INDEX, 0), DataType.UNSIGNED8)
        except Exception:
            self._num_errors = StorageEntry()  # 0x1003 is optional
        self._listener: Optional[Listener] = None
        try:
            cob_id = storage.entry(EMCY_COB_ID_INDEX, DataType.UNSIGNED32).get_cached()
            header = Header(cob_id & _ID_MASK, bool(cob_id & _EXTENDED_BIT))
            self._listener = interface.create_listener(self.handle_emcy, header)
        except Exception:
            self._listener = None  # EMCY is optional

    @property
    def has_error(self) -> bool:
        return self._has_error

    def handle_emcy(self, frame: Frame) -> None:
        payload = frame.data.ljust(8, b"\x00")
        error_code = int.from_bytes(payload[0:2], "little")
        error_register = payload[2]
        if error_code == 0:
            _log.info("EMCY reset: %s", frame)
        else:
            _log.error("EMCY received: %s", frame)
        self._has_error = (error_register & ~_PROFILE_SPECIFIC) != 0

    def handle_read(self, status: LayerStatus, current_state: LayerState) -> None:
        if current_state == LayerState.READY and self._has_error:
            status.error("Node has emergency error")

    def handle_write(self, status: LayerStatus, current_state: LayerState) -> None:
        return None

    def _error_list(self, count: int) -> str:
        parts: list[str] = []
        for i in range(count):
            try:
                field = self._storage.entry(
                    Key(PREDEFINED_ERRORS_INDEX, i + 1), DataType.UNSIGNED32
                ).get()
                parts.append(f"{field & 0xFFFF:x}#{field >> 16:x}")
            except KeyError:
                parts.append("NOT_IN_DICT!")
            except CanOpenTimeout:
                parts.append("LIST_UNDERFLOW!")
                break
        return ", ".join(parts)

    def handle_diag(self, report: LayerReport) -> None:
        try:
            error_register = self._error_register.get()
        except Exception:
            report.error("Could not read error error_register")
            return
        if not error_register:
            return
        if error_register & _GENERIC_ERROR:
            report.error("Node has emergency error")
        elif error_register & ~_PROFILE_SPECIFIC:
            report.warn("Error register is not zero")
        report.add("error_register", error_register)
        count = self._num_errors.get() if self._num_errors.valid() else 0
        report.add("errors", self._error_list(count))

    def handle_init(self, status: LayerStatus) -> None:
        try:
            error_register = self._error_register.get()
        except Exception:
            status.error("Could not read error error_register")
            return
        if error_register & _GENERIC_ERROR:
            _log.error("error register: %d", error_register)
            status.error("Node has emergency error")
            return
        self.reset_errors(status)

    def reset_errors(self, status: LayerStatus) -> None:
        """Clear the node's error list and the emergency flag."""
        if self._num_errors.valid():
            self._num_errors.set(0)
        self._has_error = False

    def handle_recover(self, status: LayerStatus) -> None:
        self.handle_init(status)

    def handle_shutdown(self, status: LayerStatus) -> None:
        return None

    def handle_halt(self, status: LayerStatus) -> None:
        return None