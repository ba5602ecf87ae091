import pytest

from canopen_master.exceptions import AccessError, PointerInvalid
from canopen_master.objdict import (
    DataType,
    Entry,
    HoldAny,
    Key,
    NodeIdOffset,
    ObjectDict,
    encode_value,
)
from canopen_master.storage import ObjectStorage, StorageEntry

U8 = DataType.UNSIGNED8
U16 = DataType.UNSIGNED16
U32 = DataType.UNSIGNED32


class Device:
    def __init__(self, values=None):
        self.values = dict(values or {})
        self.reads = []
        self.writes = []

    def read(self, entry, data):
        self.reads.append(entry.key())
        return self.values[entry.key()]

    def write(self, entry, data):
        self.writes.append((entry.key(), bytes(data)))
        self.values[entry.key()] = bytes(data)


def make_dict():
    od = ObjectDict()
    od.insert(False, Entry(index=0x1000, data_type=U32, desc="device type",
                           readable=True, writable=False, def_val=HoldAny(U32)))
    od.insert(False, Entry(index=0x1017, data_type=U16, desc="producer heartbeat",
                           def_val=HoldAny(U16, 0), init_val=HoldAny(U16, 100)))
    od.insert(False, Entry(index=0x1014, data_type=U32, desc="COB-ID EMCY",
                           def_val=HoldAny(U32, NodeIdOffset(0x80, U32))))
    od.insert(False, Entry(index=0x1008, data_type=DataType.VISIBLE_STRING, desc="name",
                           readable=True, writable=False, constant=True,
                           def_val=HoldAny(DataType.VISIBLE_STRING, b"dev")))
    od.insert(True, Entry(index=0x2000, sub_index=1, data_type=U8, desc="command",
                          readable=False, writable=True, def_val=HoldAny(U8)))
    return od


def make_storage(device, node_id=5):
    return ObjectStorage(make_dict(), node_id, device.read, device.write)


def test_get_reads_from_device():
    device = Device({Key(0x1000, 0): encode_value(U32, 0x00020192)})
    storage = make_storage(device)
    assert storage.entry(0x1000, U32).get() == 0x00020192
    assert device.reads == [Key(0x1000, 0)]


def test_get_cached_reads_once():
    device = Device({Key(0x1000, 0): encode_value(U32, 7)})
    handle = make_storage(device).entry(0x1000, U32)
    assert handle.get_cached() == 7
    assert handle.get_cached() == 7
    assert len(device.reads) == 1


def test_default_value_needs_no_read():
    device = Device()
    assert make_storage(device).entry(0x1017, U16).get_cached() == 0
    assert device.reads == []


def test_node_id_offset_is_applied():
    handle = make_storage(Device(), node_id=5).entry(0x1014, U32)
    assert handle.get_cached() == 0x85


def test_set_writes_wire_bytes():
    device = Device()
    make_storage(device).entry(0x1017, U16).set(0x1234)
    assert device.writes == [(Key(0x1017, 0), b"\x34\x12")]


def test_set_read_only():
    device = Device({Key(0x1000, 0): encode_value(U32, 3)})
    handle = make_storage(device).entry(0x1000, U32)
    handle.get()
    with pytest.raises(AccessError):
        handle.set(4)
    handle.set(3)
    assert device.writes == []


def test_unreadable_entry_raises():
    handle = make_storage(Device()).entry(Key(0x2000, 1), U8)
    with pytest.raises(AccessError):
        handle.get()


def test_constant_entry_is_not_read():
    device = Device()
    handle = make_storage(device).entry(0x1008, DataType.VISIBLE_STRING)
    assert handle.get() == b"dev"
    assert device.reads == []


def test_type_mismatch_raises():
    storage = make_storage(Device())
    with pytest.raises(TypeError):
        storage.entry(0x1017, U32)
    storage.entry(0x1000, U32)
    with pytest.raises(TypeError):
        storage.entry(0x1000, U8)


def test_missing_key_raises():
    with pytest.raises(KeyError):
        make_storage(Device()).entry(0x6000, U8)


def test_set_cached_only_writes_changes():
    device = Device()
    handle = make_storage(device).entry(0x1017, U16)
    assert handle.set_cached(0) is True
    assert device.writes == []
    assert handle.set_cached(9) is True
    assert device.writes == [(Key(0x1017, 0), encode_value(U16, 9))]


def test_set_cached_read_only_fails():
    device = Device({Key(0x1000, 0): encode_value(U32, 3)})
    handle = make_storage(device).entry(0x1000, U32)
    handle.get()
    assert handle.set_cached(4) is False
    assert handle.set_cached(3) is True


def test_init_writes_parameter_value_once():
    device = Device()
    storage = make_storage(device)
    storage.init(Key(0x1017))
    assert device.writes == [(Key(0x1017, 0), encode_value(U16, 100))]
    assert storage.entry(0x1017, U16).get_cached() == 100
    storage.init(Key(0x1017))
    assert len(device.writes) == 1


def test_init_all_writes_every_parameter():
    device = Device()
    storage = make_storage(device)
    storage.init_all()
    assert device.writes == [(Key(0x1017, 0), encode_value(U16, 100))]


def test_reset_restores_default():
    storage = make_storage(Device())
    handle = storage.entry(0x1017, U16)
    handle.set(5)
    storage.reset()
    assert handle.get_cached() == 0


def test_map_forces_write_and_falls_back_to_index():
    device = Device()
    storage = make_storage(device)
    written = []
    size = storage.map(0x1017, 0, None, lambda e, d: written.append(bytes(d)))
    assert size == 2
    assert written == [encode_value(U16, 0)]


def test_map_read_delegate_replaces_reader():
    device = Device()
    storage = make_storage(device)
    storage.map(0x1017, 0, lambda e, d: encode_value(U16, 77), None)
    assert storage.entry(0x1017, U16).get() == 77
    assert device.reads == []


def test_map_missing_sub_index_raises():
    with pytest.raises(KeyError):
        make_storage(Device()).map(0x1017, 3, None, None)


def test_string_writer_and_reader_round_trip():
    device = Device()
    storage = make_storage(device)
    storage.string_writer(Key(0x1017))("42")
    assert device.writes == [(Key(0x1017, 0), encode_value(U16, 42))]
    assert storage.string_reader(Key(0x1017), True)() == "42"


def test_unbound_entry():
    handle = StorageEntry()
    assert handle.valid() is False
    with pytest.raises(PointerInvalid):
        handle.get()
    assert handle.set_cached(1) is False


def test_desc_returns_dictionary_entry():
    handle = make_storage(Device()).entry(0x1017, U16)
    assert handle.desc().desc == "producer heartbeat"