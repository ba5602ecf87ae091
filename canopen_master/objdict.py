"""Object dictionary model: keys, data types, typed values and dictionary entries."""

from __future__ import annotations

import operator
import re
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Iterator, Optional, Union


class DataType(IntEnum):
    """CANopen basic data types and their type codes."""

    INTEGER8 = 0x0002
    INTEGER16 = 0x0003
    INTEGER32 = 0x0004
    UNSIGNED8 = 0x0005
    UNSIGNED16 = 0x0006
    UNSIGNED32 = 0x0007
    REAL32 = 0x0008
    VISIBLE_STRING = 0x0009
    OCTET_STRING = 0x000A
    UNICODE_STRING = 0x000B
    DOMAIN = 0x000F
    REAL64 = 0x0010
    INTEGER64 = 0x0015
    UNSIGNED64 = 0x001B

    @property
    def size(self) -> Optional[int]:
        """Size in bytes, or None for variable-length types."""
        fmt = _STRUCT_FORMATS.get(self)
        return None if fmt is None else struct.calcsize(fmt)

    @property
    def is_string(self) -> bool:
        return self in _STRING_TYPES

    @property
    def is_float(self) -> bool:
        return self in (DataType.REAL32, DataType.REAL64)

    @property
    def is_integer(self) -> bool:
        return not self.is_string and not self.is_float

    @property
    def is_signed(self) -> bool:
        return self in (
            DataType.INTEGER8,
            DataType.INTEGER16,
            DataType.INTEGER32,
            DataType.INTEGER64,
        )


_STRUCT_FORMATS = {
    DataType.INTEGER8: "<b",
    DataType.INTEGER16: "<h",
    DataType.INTEGER32: "<i",
    DataType.INTEGER64: "<q",
    DataType.UNSIGNED8: "<B",
    DataType.UNSIGNED16: "<H",
    DataType.UNSIGNED32: "<I",
    DataType.UNSIGNED64: "<Q",
    DataType.REAL32: "<f",
    DataType.REAL64: "<d",
}

_STRING_TYPES = frozenset(
    {
        DataType.VISIBLE_STRING,
        DataType.OCTET_STRING,
        DataType.UNICODE_STRING,
        DataType.DOMAIN,
    }
)


class ObjectCode(IntEnum):
    NULL_DATA = 0x00
    DOMAIN_DATA = 0x02
    DEFTYPE = 0x05
    DEFSTRUCT = 0x06
    VAR = 0x07
    ARRAY = 0x08
    RECORD = 0x09


def _as_datatype(data_type: Union[int, DataType]) -> DataType:
    try:
        return DataType(data_type)
    except ValueError:
        raise TypeError(f"unsupported data type 0x{int(data_type):04x}") from None


def _kind(data_type: DataType) -> object:
    """Types that share one value representation compare equal here."""
    return "string" if data_type.is_string else data_type


def _int_range(data_type: DataType) -> tuple[int, int]:
    bits = 8 * (data_type.size or 0)
    if data_type.is_signed:
        return -(1 << (bits - 1)), (1 << (bits - 1)) - 1
    return 0, (1 << bits) - 1


def _wrap(data_type: DataType, value: int) -> int:
    """Truncate an integer to the width of ``data_type``."""
    bits = 8 * (data_type.size or 0)
    value &= (1 << bits) - 1
    if data_type.is_signed and value >= 1 << (bits - 1):
        value -= 1 << bits
    return value


def _normalize(data_type: DataType, value: Any) -> Any:
    if data_type.is_string:
        if isinstance(value, str):
            return value.encode("utf-8")
        if isinstance(value, (bytes, bytearray, memoryview)):
            return bytes(value)
        raise TypeError(f"{data_type.name} needs bytes or str, got {type(value).__name__}")
    if data_type.is_float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TypeError(f"{data_type.name} needs a number, got {type(value).__name__}")
        try:
            packed = struct.pack(_STRUCT_FORMATS[data_type], float(value))
        except (OverflowError, struct.error) as exc:
            raise ValueError(f"{value!r} does not fit {data_type.name}") from exc
        return struct.unpack(_STRUCT_FORMATS[data_type], packed)[0]
    try:
        number = operator.index(value)
    except TypeError:
        raise TypeError(
            f"{data_type.name} needs an integer, got {type(value).__name__}"
        ) from None
    low, high = _int_range(data_type)
    if not low <= number <= high:
        raise ValueError(f"{number} is out of range for {data_type.name}")
    return number


def encode_value(data_type: Union[int, DataType], value: Any) -> bytes:
    """Encode a value to its little-endian wire representation."""
    dt = _as_datatype(data_type)
    normalized = _normalize(dt, value)
    if dt.is_string:
        return normalized
    return struct.pack(_STRUCT_FORMATS[dt], normalized)


def decode_value(data_type: Union[int, DataType], data: bytes) -> Any:
    """Decode the wire representation of a value."""
    dt = _as_datatype(data_type)
    raw = bytes(data)
    if dt.is_string:
        return raw
    if len(raw) != dt.size:
        raise ValueError(f"{dt.name} needs {dt.size} bytes, got {len(raw)}")
    return struct.unpack(_STRUCT_FORMATS[dt], raw)[0]


_HEX_FIELD = re.compile(r"\s*([+-]?)(?:0[xX])?([0-9a-fA-F]+)")


def _scan_hex(text: str) -> Optional[tuple[int, int]]:
    match = _HEX_FIELD.match(text)
    if match is None:
        return None
    number = int(match.group(2), 16)
    if match.group(1) == "-":
        number = -number
    return number, match.end()


@dataclass(frozen=True)
class Key:
    """Index and optional sub-index of an object dictionary entry."""

    index: int
    sub_index: Optional[int] = None

    def __post_init__(self) -> None:
        if not 0 <= self.index <= 0xFFFF:
            raise ValueError(f"index {self.index} out of range")
        if self.sub_index is not None and not 0 <= self.sub_index <= 0xFF:
            raise ValueError(f"sub-index {self.sub_index} out of range")

    @classmethod
    def from_string(cls, text: str) -> "Key":
        """Parse ``<hex index>`` or ``<hex index>sub<hex sub-index>``."""
        scanned = _scan_hex(text)
        if scanned is None:
            return cls(0)
        index, end = scanned
        index &= 0xFFFF
        rest = text[end:]
        if rest.startswith("sub"):
            sub = _scan_hex(rest[3:])
            if sub is not None:
                return cls(index, sub[0] & 0xFF)
        return cls(index)

    def has_sub(self) -> bool:
        return self.sub_index is not None

    @property
    def code(self) -> int:
        """Packed form: index in the upper 16 bits, sub-index or 0xFFFF below."""
        return (self.index << 16) | (0xFFFF if self.sub_index is None else self.sub_index)

    def __str__(self) -> str:
        text = f"{self.index:x}"
        if self.sub_index is not None:
            text += f"sub{self.sub_index:x}"
        return text


@dataclass(frozen=True)
class NodeIdOffset:
    """A value that is only known once the node id is added to it."""

    offset: int
    data_type: DataType

    def __post_init__(self) -> None:
        dt = _as_datatype(self.data_type)
        object.__setattr__(self, "data_type", dt)
        if not dt.is_integer:
            raise TypeError(f"node id offsets need an integer type, not {dt.name}")
        object.__setattr__(self, "offset", _wrap(dt, operator.index(self.offset)))

    def resolve(self, node_id: int) -> int:
        return _wrap(self.data_type, node_id + self.offset)

    @staticmethod
    def apply(value: "HoldAny", node_id: int) -> Any:
        """The held value, with the node id added if it is an offset."""
        if value.is_empty():
            raise TypeError("cannot apply a node id to an empty value")
        held = value.value
        if isinstance(held, NodeIdOffset):
            return held.resolve(node_id)
        return held


@dataclass(frozen=True)
class HoldAny:
    """A typed value that may be empty; an empty value may still carry its type."""

    type_tag: Optional[DataType] = None
    value: Any = None

    def __post_init__(self) -> None:
        tag = None if self.type_tag is None else _as_datatype(self.type_tag)
        value = self.value
        if isinstance(value, NodeIdOffset):
            if tag is None:
                tag = value.data_type
            elif _kind(tag) != _kind(value.data_type):
                raise TypeError("offset type does not match the declared type")
        elif value is not None:
            if tag is None:
                raise TypeError("a value needs a data type")
            value = _normalize(tag, value)
        object.__setattr__(self, "type_tag", tag)
        object.__setattr__(self, "value", value)

    @property
    def is_offset(self) -> bool:
        return isinstance(self.value, NodeIdOffset)

    def is_empty(self) -> bool:
        return self.value is None

    def same_type(self, other: "HoldAny") -> bool:
        """True if both carry a type and hold the same kind of value."""
        return (
            self.type_tag is not None
            and other.type_tag is not None
            and _kind(self.type_tag) == _kind(other.type_tag)
            and self.is_offset == other.is_offset
        )

    def data(self) -> bytes:
        """The encoded value; offsets encode their offset."""
        if self.value is None:
            raise ValueError("buffer empty")
        if isinstance(self.value, NodeIdOffset):
            return encode_value(self.type_tag, self.value.offset)
        return encode_value(self.type_tag, self.value)

    def get(self, type_tag: Union[int, DataType]) -> Any:
        """The held value as ``type_tag``; string types yield the raw bytes."""
        requested = _as_datatype(type_tag)
        if requested.is_string:
            return b"" if self.value is None else self.data()
        if self.type_tag is None or self.is_offset or _kind(self.type_tag) != _kind(requested):
            raise TypeError(f"value is not of type {requested.name}")
        if self.value is None:
            raise ValueError("buffer empty")
        return self.value


@dataclass
class DeviceInfo:
    vendor_name: str = ""
    vendor_number: int = 0
    product_name: str = ""
    product_number: int = 0
    revision_number: int = 0
    order_code: str = ""
    baudrates: set[int] = field(default_factory=set)
    simple_boot_up_master: bool = False
    simple_boot_up_slave: bool = False
    granularity: int = 0
    dynamic_channels_supported: bool = False
    group_messaging: bool = False
    nr_of_rx_pdo: int = 0
    nr_of_tx_pdo: int = 0
    lss_supported: bool = False
    dummy_usage: set[int] = field(default_factory=set)


@dataclass
class Entry:
    """Description of one object dictionary entry."""

    index: int = 0
    sub_index: int = 0
    data_type: int = 0
    desc: str = ""
    readable: bool = True
    writable: bool = True
    mappable: bool = False
    def_val: HoldAny = field(default_factory=HoldAny)
    init_val: HoldAny = field(default_factory=HoldAny)
    obj_code: ObjectCode = ObjectCode.VAR
    constant: bool = False

    def value(self) -> HoldAny:
        """The parameter value if one is set, else the default value."""
        return self.init_val if not self.init_val.is_empty() else self.def_val

    def key(self) -> Key:
        return Key(self.index, self.sub_index)


class ObjectDict:
    """Entries of a device's object dictionary, keyed by index and sub-index."""

    def __init__(self, device_info: Optional[DeviceInfo] = None) -> None:
        self.device_info = device_info if device_info is not None else DeviceInfo()
        self._entries: dict[Key, Entry] = {}

    @staticmethod
    def _key(key: Union[Key, int]) -> Key:
        return key if isinstance(key, Key) else Key(key)

    def get(self, key: Union[Key, int]) -> Entry:
        """The entry for ``key``; raises KeyError if there is none."""
        k = self._key(key)
        try:
            return self._entries[k]
        except KeyError:
            raise KeyError(k) from None

    def __getitem__(self, key: Union[Key, int]) -> Entry:
        return self.get(key)

    def has(self, index: Union[Key, int], sub_index: Optional[int] = None) -> bool:
        key = index if isinstance(index, Key) else Key(index, sub_index)
        return key in self._entries

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def insert(self, is_sub: bool, entry: Entry) -> bool:
        """Add ``entry``; False if its key is already taken."""
        key = Key(entry.index, entry.sub_index) if is_sub else Key(entry.index)
        if key in self._entries:
            return False
        self._entries[key] = entry
        return True

    def items(self) -> Iterator[tuple[Key, Entry]]:
        return iter(list(self._entries.items()))

    def __iter__(self) -> Iterator[Key]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)