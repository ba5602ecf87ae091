"""Reading of electronic data sheets (EDS/DCF files) into an object dictionary."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping, Optional, Union

from .exceptions import ParseError
from .objdict import (
    DataType,
    DeviceInfo,
    Entry,
    HoldAny,
    NodeIdOffset,
    ObjectCode,
    ObjectDict,
)

Overlay = Union[Mapping[str, str], Iterable[tuple[str, str]], None]

_NODEID = "$NODEID"
_C_INTEGER = re.compile(r"\s*([+-]?)(?:0[xX]([0-9a-fA-F]+)|(0[0-7]*)|([1-9][0-9]*))")
_DECIMAL = re.compile(r"\s*\+?([0-9]+)\s*")
_OCTET_TYPES = (DataType.DOMAIN, DataType.OCTET_STRING)
_OBJECT_LISTS = ("MandatoryObjects", "OptionalObjects", "ManufacturerObjects")

_ACCESS = {
    "ro": (True, False, False),
    "wo": (False, True, False),
    "rw": (True, True, False),
    "rwr": (True, True, False),
    "rww": (True, True, False),
    "const": (True, False, True),
}


def _data_type(data_type: Union[int, DataType]) -> DataType:
    try:
        return DataType(data_type)
    except ValueError:
        raise TypeError(f"unsupported data type 0x{int(data_type):04x}") from None


def _integer_type(data_type: Union[int, DataType]) -> DataType:
    dt = _data_type(data_type)
    if not dt.is_integer:
        raise TypeError(f"{dt.name} is not an integer type")
    return dt


def _truncate(value: int, data_type: DataType) -> int:
    bits = 8 * (data_type.size or 0)
    value &= (1 << bits) - 1
    if data_type.is_signed and value >= 1 << (bits - 1):
        value -= 1 << bits
    return value


def int_from_string(text: str, data_type: Union[int, DataType]) -> int:
    """Parse a decimal, octal (leading 0) or hex (0x) prefix of ``text`` into ``data_type``.

    Parsing stops at the first character that does not belong to the number;
    text without a number yields 0. The result is truncated to the type's width.
    """
    dt = _integer_type(data_type)
    match = _C_INTEGER.match(text)
    if match is None:
        return 0
    sign, hex_digits, octal_digits, decimal_digits = match.groups()
    if hex_digits is not None:
        number = int(hex_digits, 16)
    elif octal_digits is not None:
        number = int(octal_digits, 8)
    else:
        number = int(decimal_digits)
    if sign == "-":
        number = -number
    return _truncate(number, dt)


def parse_int(text: Optional[str], data_type: Union[int, DataType]) -> HoldAny:
    """Parse an integer value that may be written relative to ``$NODEID``."""
    dt = _integer_type(data_type)
    if text is None:
        return HoldAny(dt)
    value = text.strip()
    upper = value.upper()
    if upper.startswith(_NODEID):
        plus = value.find("+", len(_NODEID))
        offset_text = value[plus + 1 :] if plus >= 0 else value
        return HoldAny(dt, NodeIdOffset(int_from_string(offset_text.strip(), dt), dt))
    if upper.endswith(_NODEID):
        plus = value.find("+")
        offset_text = value[: plus + 1] if plus >= 0 else ""
        return HoldAny(dt, NodeIdOffset(int_from_string(offset_text.strip(), dt), dt))
    return HoldAny(dt, int_from_string(value, dt))


def set_access(entry: Entry, access: str) -> None:
    """Set the access flags of ``entry`` from an EDS AccessType string."""
    entry.constant = False
    try:
        readable, writable, constant = _ACCESS[access.lower()]
    except KeyError:
        raise ParseError("Cannot determine access", key=entry.key()) from None
    entry.readable = readable
    entry.writable = writable
    entry.constant = constant


def _hex_to_bytes(text: str) -> Optional[bytes]:
    try:
        return bytes.fromhex("".join(text.split()))
    except ValueError:
        return None


def read_value(data_type: Union[int, DataType], text: Optional[str]) -> HoldAny:
    """Parse the text of a value of ``data_type``; None gives an empty typed value."""
    dt = _data_type(data_type)
    if dt.is_integer:
        return parse_int(text, dt)
    if text is None:
        return HoldAny(dt)
    if dt in _OCTET_TYPES:
        data = _hex_to_bytes(text)
        return HoldAny(dt) if data is None else HoldAny(dt, data)
    if dt.is_string:
        return HoldAny(dt, text)
    try:
        return HoldAny(dt, float(text.strip()))
    except ValueError as exc:
        raise ParseError(f"cannot convert {text!r} to {dt.name}") from exc


def format_value(data_type: Union[int, DataType], value: Any) -> str:
    """Render a value of ``data_type`` as text."""
    dt = _data_type(data_type)
    if dt in _OCTET_TYPES:
        return bytes(value).hex()
    if dt.is_string:
        if isinstance(value, (bytes, bytearray, memoryview)):
            return bytes(value).decode("utf-8", errors="replace")
        return str(value)
    if dt.is_float:
        return f"{value:g}"
    return str(int(value))


class _Section:
    """One INI section with case-insensitive keys that remembers their spelling."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._values: dict[str, tuple[str, str]] = {}

    def __contains__(self, key: str) -> bool:
        return key.lower() in self._values

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        item = self._values.get(key.lower())
        return default if item is None else item[1]

    def require(self, key: str) -> str:
        item = self._values.get(key.lower())
        if item is None:
            raise ParseError(f"No such node ({self.name}.{key})")
        return item[1]

    def put(self, key: str, value: str) -> None:
        existing = self._values.get(key.lower())
        self._values[key.lower()] = (key if existing is None else existing[0], value)

    def items(self) -> Iterator[tuple[str, str]]:
        return iter(list(self._values.values()))


def _read_ini(text: str) -> dict[str, _Section]:
    sections: dict[str, _Section] = {}
    current: Optional[_Section] = None
    for number, raw in enumerate(text.lstrip("\ufeff").splitlines(), 1):
        line = raw.strip()
        if not line or line[0] in ";#":
            continue
        if line.startswith("["):
            if not line.endswith("]"):
                raise ParseError(f"line {number}: unmatched '['")
            name = line[1:-1].strip()
            if name.lower() in sections:
                raise ParseError(f"line {number}: duplicate section name {name!r}")
            current = sections[name.lower()] = _Section(name)
            continue
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep:
            raise ParseError(f"line {number}: '=' character not found")
        if not key:
            raise ParseError(f"line {number}: key expected")
        if current is None:
            raise ParseError(f"line {number}: key outside of a section")
        if key in current:
            raise ParseError(f"line {number}: duplicate key name {key!r}")
        current.put(key, value.strip())
    return sections


def _to_bool(text: str) -> Optional[bool]:
    value = text.strip().lower()
    if value in ("1", "true"):
        return True
    if value in ("0", "false"):
        return False
    return None


def _read_bool(section: _Section, key: str, default: bool = False) -> bool:
    text = section.get(key)
    if text is None:
        return default
    value = _to_bool(text)
    return default if value is None else value


def _require_bool(text: str, where: str) -> bool:
    value = _to_bool(text)
    if value is None:
        raise ParseError(f"conversion of data to type bool failed ({where})")
    return value


def _read_uint(section: _Section, key: str) -> int:
    text = section.get(key)
    if text is None:
        return 0
    match = _DECIMAL.fullmatch(text)
    return int(match.group(1)) if match else 0


def _device_info(sections: dict[str, _Section]) -> DeviceInfo:
    di = sections.get("deviceinfo")
    if di is None:
        raise ParseError("No such node (DeviceInfo)")
    info = DeviceInfo(
        vendor_name=di.get("VendorName", "") or "",
        vendor_number=_read_uint(di, "VendorNumber"),
        product_name=di.get("ProductName", "") or "",
        product_number=_read_uint(di, "ProductNumber"),
        revision_number=_read_uint(di, "RevisionNumber"),
        order_code=di.get("OrderCode", "") or "",
        simple_boot_up_master=_read_bool(di, "SimpleBootUpMaster"),
        simple_boot_up_slave=_read_bool(di, "SimpleBootUpSlave"),
        granularity=_read_uint(di, "Granularity"),
        dynamic_channels_supported=_read_bool(di, "DynamicChannelsSupported"),
        group_messaging=_read_bool(di, "GroupMessaging"),
        nr_of_rx_pdo=_read_uint(di, "NrOfRXPDO"),
        nr_of_tx_pdo=_read_uint(di, "NrOfTXPDO"),
        lss_supported=_read_bool(di, "LSS_Supported"),
    )
    for key, value in di.items():
        if key.startswith("BaudRate_"):
            rate = int_from_string(key[9:], DataType.UNSIGNED16)
            if _require_bool(value, key):
                info.baudrates.add(rate * 1000)
    dummies = sections.get("dummyusage")
    if dummies is not None:
        for key, value in dummies.items():
            if key.startswith("Dummy"):
                dummy = int_from_string("0x" + key[5:], DataType.UNSIGNED16)
                if _require_bool(value, key):
                    info.dummy_usage.add(dummy)
    return info


def _read_var(entry: Entry, section: _Section) -> None:
    entry.data_type = int_from_string(section.require("DataType"), DataType.UNSIGNED16)
    entry.mappable = _read_bool(section, "PDOMapping", False)
    try:
        set_access(entry, section.require("AccessType"))
    except ParseError:
        raise ParseError("No AccessType", key=entry.key()) from None
    entry.def_val = read_value(entry.data_type, section.get("DefaultValue"))
    entry.init_val = read_value(entry.data_type, section.get("ParameterValue"))


def _parse_object(
    od: ObjectDict, sections: dict[str, _Section], name: str, sub_index: Optional[int] = None
) -> None:
    section = sections.get(name[2:].lower())
    if section is None:
        return
    entry = Entry()
    try:
        entry.index = int_from_string(name, DataType.UNSIGNED16)
        code = int_from_string(
            section.get("ObjectType", str(int(ObjectCode.VAR))) or "", DataType.UNSIGNED16
        )
        parameter_name = section.require("ParameterName")
        entry.desc = section.get("Denotation", parameter_name) or ""
        try:
            entry.obj_code = ObjectCode(code)
        except ValueError:
            raise ParseError("Object type not supported", key=entry.key()) from None

        if entry.obj_code in (ObjectCode.VAR, ObjectCode.DOMAIN_DATA) or sub_index is not None:
            entry.sub_index = sub_index or 0
            _read_var(entry, section)
            od.insert(sub_index is not None, entry)
        elif entry.obj_code in (ObjectCode.ARRAY, ObjectCode.RECORD):
            subs = int_from_string(section.get("CompactSubObj", "") or "", DataType.UNSIGNED8)
            if subs:
                od.insert(
                    True,
                    Entry(
                        index=entry.index,
                        sub_index=0,
                        data_type=DataType.UNSIGNED8,
                        desc="NrOfObjects",
                        readable=True,
                        writable=False,
                        mappable=False,
                        def_val=HoldAny(DataType.UNSIGNED8, subs),
                    ),
                )
                _read_var(entry, section)
                values = sections.get(f"{name[2:]}Value".lower())
                for i in range(1, subs):
                    text = values.get(str(i)) if values is not None else None
                    od.insert(
                        True,
                        Entry(
                            index=entry.index,
                            sub_index=i,
                            data_type=entry.data_type,
                            desc=name,
                            readable=entry.readable,
                            writable=entry.writable,
                            mappable=entry.mappable,
                            def_val=entry.def_val,
                            init_val=read_value(entry.data_type, text),
                        ),
                    )
            else:
                subs = int_from_string(section.require("SubNumber"), DataType.UNSIGNED8)
                for i in range(subs):
                    _parse_object(od, sections, f"{name}sub{i:x}", i)
        else:
            raise ParseError("Object type not supported", key=entry.key())
    except TypeError as exc:
        raise ParseError(f"Type of {name} does not match or is not supported") from exc
    except Exception as exc:
        raise ParseError(f"Cannot process {name}: {exc}") from exc


def _parse_objects(od: ObjectDict, sections: dict[str, _Section], key: str) -> None:
    objects = sections.get(key.lower())
    if objects is None:
        return
    count = int_from_string(objects.get("SupportedObjects", "") or "", DataType.UNSIGNED16)
    for i in range(1, count + 1):
        _parse_object(od, sections, objects.require(str(i)))


def _overlay_items(overlay: Overlay) -> Iterable[tuple[str, str]]:
    if overlay is None:
        return ()
    if isinstance(overlay, Mapping):
        return list(overlay.items())
    return list(overlay)


def parse_eds(text: str, overlay: Overlay = None) -> ObjectDict:
    """Build an object dictionary from EDS text.

    ``overlay`` maps section names (such as ``"1017"``) to parameter values
    that replace the ParameterValue of that object.
    """
    sections = _read_ini(text)
    od = ObjectDict(_device_info(sections))
    for section_name, value in _overlay_items(overlay):
        section = sections.get(section_name.lower())
        if section is None:
            raise ParseError(f"No such node ({section_name})")
        section.put("ParameterValue", value)
    for key in _OBJECT_LISTS:
        _parse_objects(od, sections, key)
    return od


def load_eds(path: Union[str, Path], overlay: Overlay = None) -> ObjectDict:
    """Read an EDS file and build its object dictionary."""
    text = Path(path).read_text(encoding="utf-8", errors="replace")
    return parse_eds(text, overlay)