"""Cached, typed access to the objects of a remote node's dictionary."""

from __future__ import annotations

import threading
from typing import Any, Callable, Optional, Union

from .eds import format_value, read_value
from .exceptions import AccessError, PointerInvalid
from .objdict import (
    DataType,
    Entry,
    HoldAny,
    Key,
    NodeIdOffset,
    ObjectDict,
    decode_value,
    encode_value,
)

ReadFunc = Callable[[Entry, bytes], bytes]
WriteFunc = Callable[[Entry, bytes], None]
KeyLike = Union[Key, int]

_UNSET = object()


def _data_type(data_type: Union[int, DataType]) -> DataType:
    try:
        return DataType(data_type)
    except ValueError:
        raise TypeError(f"unsupported data type 0x{int(data_type):04x}") from None


def _same_kind(a: DataType, b: DataType) -> bool:
    return a == b or (a.is_string and b.is_string)


def _as_key(key: KeyLike) -> Key:
    return key if isinstance(key, Key) else Key(key)


class _Data:
    """The cached buffer of one object together with its access delegates."""

    def __init__(
        self,
        key: Key,
        entry: Entry,
        type_tag: DataType,
        node_id: int,
        read_delegate: ReadFunc,
        write_delegate: WriteFunc,
        value: Any = _UNSET,
    ) -> None:
        self.key = key
        self.entry = entry
        self.type_tag = type_tag
        self._node_id = node_id
        self._lock = threading.RLock()
        self._read_delegate = read_delegate
        self._write_delegate = write_delegate
        if value is _UNSET:
            self._buffer = self._blank()
            self._valid = False
        else:
            self._buffer = encode_value(type_tag, value)
            self._valid = True

    def _blank(self) -> bytes:
        return bytes(self.type_tag.size or 0)

    def _allocate(self) -> None:
        if self.type_tag.is_string:
            self._buffer = b""
            self._valid = True
        elif not self._valid:
            self._buffer = self._blank()
            self._valid = True

    def _access(self) -> bytes:
        if not self._valid:
            raise ValueError(f"buffer not valid [key {self.key}]")
        return self._buffer

    def _encoded(self, value: HoldAny) -> bytes:
        return encode_value(self.type_tag, NodeIdOffset.apply(value, self._node_id))

    def size(self) -> int:
        with self._lock:
            return len(self._buffer)

    def set_delegates(self, read: Optional[ReadFunc], write: Optional[WriteFunc]) -> None:
        with self._lock:
            if read is not None:
                self._read_delegate = read
            if write is not None:
                self._write_delegate = write

    def get(self, cached: bool) -> Any:
        with self._lock:
            if not self.entry.readable:
                raise AccessError("no read access", key=self.key)
            if self.entry.constant:
                cached = True
            if not self._valid or not cached:
                self._allocate()
                self._buffer = bytes(self._read_delegate(self.entry, self._buffer))
            return decode_value(self.type_tag, self._access())

    def set(self, value: Any) -> None:
        encoded = encode_value(self.type_tag, value)
        with self._lock:
            if not self.entry.writable:
                if self._access() != encoded:
                    raise AccessError("no write access", key=self.key)
                return
            self._allocate()
            self._buffer = encoded
            self._write_delegate(self.entry, encoded)

    def set_cached(self, value: Any) -> None:
        encoded = encode_value(self.type_tag, value)
        with self._lock:
            if self._valid and encoded == self._buffer:
                return
            if not self.entry.writable:
                raise AccessError("no write access and not cached", key=self.key)
            self._allocate()
            self._buffer = encoded
            self._write_delegate(self.entry, encoded)

    def init(self) -> None:
        with self._lock:
            init_val = self.entry.init_val
            if init_val.is_empty():
                return
            init_data = self._encoded(init_val)
            def_val = self.entry.def_val
            default = None if def_val.is_empty() else self._encoded(def_val)
            if self._valid and default is not None and self._buffer != default:
                return  # changed by someone else
            if not self._valid or self._buffer != init_data:
                self._buffer = init_data
                self._valid = True
                if self.entry.writable and (default is None or init_data != default):
                    self._write_delegate(self.entry, self._buffer)

    def force_write(self) -> None:
        with self._lock:
            if not self._valid and self.entry.readable:
                self._buffer = bytes(self._read_delegate(self.entry, self._buffer))
                self._valid = True
            if self._valid:
                self._write_delegate(self.entry, self._buffer)

    def reset(self) -> None:
        with self._lock:
            def_val = self.entry.def_val
            if (
                not def_val.is_empty()
                and not def_val.is_offset
                and def_val.type_tag is not None
                and _same_kind(def_val.type_tag, self.type_tag)
            ):
                self._buffer = encode_value(self.type_tag, def_val.value)
                self._valid = True
            else:
                self._valid = False


class StorageEntry:
    """A typed handle on one stored object; unbound handles raise on use."""

    def __init__(self, data: Optional[_Data] = None) -> None:
        self._data = data

    def valid(self) -> bool:
        return self._data is not None

    def _bound(self, context: str) -> _Data:
        if self._data is None:
            raise PointerInvalid(context)
        return self._data

    @property
    def type_tag(self) -> DataType:
        return self._bound("StorageEntry.type_tag").type_tag

    def get(self) -> Any:
        """Read the value from the device."""
        return self._bound("StorageEntry.get()").get(False)

    def get_cached(self) -> Any:
        """The cached value; read from the device only if nothing is cached."""
        return self._bound("StorageEntry.get_cached()").get(True)

    def set(self, value: Any) -> None:
        self._bound("StorageEntry.set(value)").set(value)

    def set_cached(self, value: Any) -> bool:
        """Write ``value`` unless it is already cached; False on any failure."""
        if self._data is None:
            return False
        try:
            self._data.set_cached(value)
        except Exception:
            return False
        return True

    def desc(self) -> Entry:
        return self._bound("StorageEntry.desc()").entry


class ObjectStorage:
    """Caches object values of one node and routes reads and writes through delegates."""

    def __init__(
        self,
        object_dict: ObjectDict,
        node_id: int,
        read_delegate: ReadFunc,
        write_delegate: WriteFunc,
    ) -> None:
        if object_dict is None or read_delegate is None or write_delegate is None:
            raise ValueError("a dictionary and both delegates are required")
        self.object_dict = object_dict
        self.node_id = node_id
        self._read_delegate = read_delegate
        self._write_delegate = write_delegate
        self._storage: dict[Key, _Data] = {}
        self._lock = threading.RLock()

    def entry(self, key: KeyLike, type_tag: Union[int, DataType]) -> StorageEntry:
        """A handle on the object at ``key`` holding values of ``type_tag``."""
        k = _as_key(key)
        requested = _data_type(type_tag)
        with self._lock:
            data = self._storage.get(k)
            if data is None:
                e = self.object_dict.get(k)
                def_val = e.def_val
                if not def_val.is_empty():
                    if def_val.type_tag is None or not _same_kind(def_val.type_tag, requested):
                        raise TypeError(f"type of {k} does not match {requested.name}")
                    value = NodeIdOffset.apply(def_val, self.node_id)
                    data = _Data(
                        k, e, requested, self.node_id,
                        self._read_delegate, self._write_delegate, value,
                    )
                elif def_val.type_tag is None or _same_kind(def_val.type_tag, requested):
                    data = _Data(
                        k, e, requested, self.node_id,
                        self._read_delegate, self._write_delegate,
                    )
                else:
                    raise TypeError(f"type of {k} does not match {requested.name}")
                self._storage[k] = data
            if not _same_kind(data.type_tag, requested):
                raise TypeError(f"type of {k} does not match {requested.name}")
            return StorageEntry(data)

    def _map(
        self,
        e: Entry,
        key: Key,
        read_delegate: Optional[ReadFunc],
        write_delegate: Optional[WriteFunc],
    ) -> int:
        data = self._storage.get(key)
        if data is None:
            tag = e.def_val.type_tag
            if tag is None:
                raise TypeError(f"type of {key} is unknown")
            data = _Data(key, e, tag, self.node_id, self._read_delegate, self._write_delegate)
            self._storage[key] = data
            data.reset()
        if read_delegate is not None and write_delegate is not None:
            data.set_delegates(self._read_delegate, write_delegate)
            data.force_write()
            data.set_delegates(read_delegate, self._write_delegate)
        elif write_delegate is not None:
            data.set_delegates(self._read_delegate, write_delegate)
            data.force_write()
        elif read_delegate is not None:
            data.set_delegates(read_delegate, self._write_delegate)
        return data.size()

    def map(
        self,
        index: int,
        sub_index: int,
        read_delegate: Optional[ReadFunc],
        write_delegate: Optional[WriteFunc],
    ) -> int:
        """Route the object's reads and writes to the given delegates; returns its size."""
        with self._lock:
            key = Key(index, sub_index)
            try:
                e = self.object_dict.get(key)
            except KeyError:
                if sub_index != 0:
                    raise
                key = Key(index)
                e = self.object_dict.get(key)
            return self._map(e, key, read_delegate, write_delegate)

    def _init_nolock(self, key: Key, e: Entry) -> None:
        if e.init_val.is_empty():
            return
        data = self._storage.get(key)
        if data is None:
            tag = e.init_val.type_tag
            if tag is None:
                raise TypeError(f"type of {key} is unknown")
            data = _Data(key, e, tag, self.node_id, self._read_delegate, self._write_delegate)
            self._storage[key] = data
        data.init()

    def init(self, key: KeyLike) -> None:
        """Write the configured parameter value of one object if it differs."""
        k = _as_key(key)
        with self._lock:
            self._init_nolock(k, self.object_dict.get(k))

    def init_all(self) -> None:
        """Write every configured parameter value."""
        with self._lock:
            for key, e in self.object_dict.items():
                self._init_nolock(key, e)

    def reset(self) -> None:
        """Forget cached values, falling back to the defaults."""
        with self._lock:
            for data in self._storage.values():
                data.reset()

    def _entry_type(self, key: KeyLike) -> DataType:
        return _data_type(self.object_dict.get(_as_key(key)).data_type)

    def string_reader(self, key: KeyLike, cached: bool = False) -> Callable[[], str]:
        """A function that returns the object's value as text."""
        dt = self._entry_type(key)
        handle = self.entry(key, dt)

        def reader() -> str:
            return format_value(dt, handle.get_cached() if cached else handle.get())

        return reader

    def string_writer(self, key: KeyLike, cached: bool = False) -> Callable[[str], None]:
        """A function that parses text and writes it to the object."""
        dt = self._entry_type(key)
        handle = self.entry(key, dt)

        def writer(text: str) -> None:
            value = read_value(dt, text).get(dt)
            if cached:
                handle.set_cached(value)
            else:
                handle.set(value)

        return writer