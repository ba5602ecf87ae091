import pytest

from canopen_master.eds import (
    format_value,
    int_from_string,
    load_eds,
    parse_eds,
    parse_int,
    read_value,
    set_access,
)
from canopen_master.exceptions import ParseError
from canopen_master.objdict import DataType, Entry, Key, NodeIdOffset

POS_TYPES = [DataType.UNSIGNED8, DataType.UNSIGNED16, DataType.UNSIGNED32, DataType.UNSIGNED64]
NODE_IDS = range(128)


def hex_value(data_type, text):
    return parse_int(text, data_type).get(data_type)


def hex_node(data_type, text, node_id):
    return NodeIdOffset.apply(parse_int(text, data_type), node_id)


@pytest.mark.parametrize("data_type", POS_TYPES)
def test_check_zero(data_type):
    assert hex_value(data_type, "0") == 0
    assert hex_value(data_type, "0x0") == 0
    for i in NODE_IDS:
        assert hex_node(data_type, "0", i) == 0
        assert hex_node(data_type, "0x0", i) == 0
        assert hex_node(data_type, "$NODEID+0", i) == i
        assert hex_node(data_type, "$NODEID+0x0", i) == i
        assert hex_node(data_type, "0+$NODEID", i) == i
        assert hex_node(data_type, "0x0+$NODEID", i) == i


@pytest.mark.parametrize("text", ["0xABCD", "0xabcd", "0xAbCd", "0xabCD"])
def test_check_camel_case(text):
    assert hex_value(DataType.UNSIGNED16, text) == 0xABCD


@pytest.mark.parametrize("text", [" $NODEID", " $NODeID", " $NodeId", " $NodeID", " $nodeID"])
def test_check_node_camel_case(text):
    for i in NODE_IDS:
        assert hex_node(DataType.UNSIGNED16, text, i) == i


@pytest.mark.parametrize("text", [" 0xABCD ", "0xABCD ", " 0xABCD"])
def test_check_spaces(text):
    assert hex_value(DataType.UNSIGNED16, text) == 0xABCD


@pytest.mark.parametrize("text", [" $NODEID ", " $NODEID", "$NODEID "])
def test_check_node_spaces_plain(text):
    for i in NODE_IDS:
        assert hex_node(DataType.UNSIGNED16, text, i) == i


@pytest.mark.parametrize(
    "text",
    [
        "$NODEID + 1",
        "$NODEID+ 1",
        "$NODEID+1",
        "$NODEID +1",
        "$NODEID +0x1 ",
        "$NODEID + 0x1",
        "1 + $NODEID",
        "1+ $NODEID",
        "1+$NODEID",
        "1 +$NODEID",
        "0x1 +  $NODEID ",
        "0x1  +$NODEID",
    ],
)
def test_check_node_spaces_offset(text):
    for i in NODE_IDS:
        assert hex_node(DataType.UNSIGNED16, text, i) == i + 1


@pytest.mark.parametrize(
    "base", [0x80, 0x180, 0x200, 0x280, 0x300, 0x380, 0x400, 0x480, 0x500, 0x580, 0x600, 0x700]
)
def test_check_common_objects(base):
    for i in NODE_IDS:
        assert hex_node(DataType.UNSIGNED32, f"$NODEID+0x{base:x}", i) == base + i
        assert hex_node(DataType.UNSIGNED32, f"0x{base:x}+$NODEID", i) == base + i


def check_access(constant, readable, writable, variants):
    entry = Entry()
    for variant in variants:
        entry.constant = not constant
        entry.readable = not readable
        entry.writable = not writable
        set_access(entry, variant)
        assert (entry.constant, entry.readable, entry.writable) == (constant, readable, writable)


def test_access_ro():
    check_access(False, True, False, ["ro", "Ro", "rO", "RO"])


def test_access_wo():
    check_access(False, False, True, ["wo", "Wo", "wO", "WO"])


def test_access_rw():
    check_access(
        False,
        True,
        True,
        [
            "rw", "Rw", "rW", "Rw",
            "rwr", "Rwr", "rWr", "Rwr",
            "rwR", "RwR", "rWR", "RwR",
            "rww", "Rww", "rWw", "Rww",
            "rwW", "RwW", "rWW", "RwW",
        ],
    )


def test_access_const():
    check_access(True, True, False, ["const", "Const", "CONST"])


def test_access_invalid():
    with pytest.raises(ParseError, match="Cannot determine access"):
        set_access(Entry(index=0x2000), "readwrite")


def test_int_from_string_prefixes():
    assert int_from_string("10", DataType.UNSIGNED16) == 10
    assert int_from_string("0x10", DataType.UNSIGNED16) == 16
    assert int_from_string("010", DataType.UNSIGNED16) == 8
    assert int_from_string("0x1018sub1", DataType.UNSIGNED16) == 0x1018
    assert int_from_string("", DataType.UNSIGNED16) == 0
    assert int_from_string("-1", DataType.UNSIGNED8) == 255
    assert int_from_string("0xFFFF", DataType.INTEGER16) == -1


def test_int_from_string_rejects_non_integer_types():
    with pytest.raises(TypeError):
        int_from_string("1", DataType.REAL32)


def test_parse_int_missing_is_empty_but_typed():
    value = parse_int(None, DataType.UNSIGNED8)
    assert value.is_empty()
    assert value.type_tag == DataType.UNSIGNED8


def test_read_value_kinds():
    assert read_value(DataType.VISIBLE_STRING, "hello").get(DataType.VISIBLE_STRING) == b"hello"
    assert read_value(DataType.OCTET_STRING, "0102ff").get(DataType.OCTET_STRING) == b"\x01\x02\xff"
    assert read_value(DataType.OCTET_STRING, "zz").is_empty()
    assert read_value(DataType.REAL64, " 1.5 ").get(DataType.REAL64) == 1.5
    assert read_value(DataType.REAL32, None).is_empty()


def test_read_value_bad_float():
    with pytest.raises(ParseError):
        read_value(DataType.REAL32, "abc")


def test_read_value_unknown_type():
    with pytest.raises(TypeError):
        read_value(0x0001, "1")


def test_format_value():
    assert format_value(DataType.DOMAIN, b"\x01\xab") == "01ab"
    assert format_value(DataType.VISIBLE_STRING, b"abc") == "abc"
    assert format_value(DataType.UNSIGNED16, 42) == "42"
    assert format_value(DataType.REAL32, 1.5) == "1.5"


def test_format_read_round_trip():
    for dt, text in [(DataType.INTEGER32, "-17"), (DataType.OCTET_STRING, "a1b2")]:
        value = read_value(dt, text).get(dt)
        assert format_value(dt, value) == text


SAMPLE_EDS = """\
; sample device description
[DeviceInfo]
VendorName=Example Vendor
VendorNumber=42
ProductName=Demo
NrOfRXPDO=4
NrOfTXPDO=4
BaudRate_500=1
BaudRate_1000=0
SimpleBootUpSlave=1

[DummyUsage]
Dummy0002=1
Dummy0005=0

[MandatoryObjects]
SupportedObjects=2
1=0x1000
2=0x1018

[1000]
ParameterName=Device type
ObjectType=0x7
DataType=0x0007
AccessType=ro
DefaultValue=0x00000192
PDOMapping=0

[1018]
ParameterName=Identity
ObjectType=0x9
SubNumber=2

[1018sub0]
ParameterName=Number of entries
ObjectType=0x7
DataType=0x0005
AccessType=ro
DefaultValue=1

[1018sub1]
ParameterName=Vendor-ID
ObjectType=0x7
DataType=0x0007
AccessType=ro
DefaultValue=0x2A

[OptionalObjects]
SupportedObjects=2
1=0x1017
2=0x1003

[1017]
ParameterName=Producer heartbeat time
DataType=0x0006
AccessType=rw
DefaultValue=0
ParameterValue=100

[1003]
ParameterName=Pre-defined error field
ObjectType=0x8
DataType=0x0007
AccessType=ro
CompactSubObj=3

[1003Value]
1=0x11

[ManufacturerObjects]
SupportedObjects=1
1=0x2000

[2000]
ParameterName=COB
Denotation=Custom COB
DataType=0x0007
AccessType=rw
PDOMapping=1
DefaultValue=$NODEID+0x180
"""


def test_parse_device_info():
    od = parse_eds(SAMPLE_EDS)
    info = od.device_info
    assert info.vendor_name == "Example Vendor"
    assert info.vendor_number == 42
    assert info.product_name == "Demo"
    assert info.nr_of_rx_pdo == 4
    assert info.nr_of_tx_pdo == 4
    assert info.baudrates == {500000}
    assert info.dummy_usage == {2}
    assert info.simple_boot_up_slave is True
    assert info.simple_boot_up_master is False


def test_parse_var_and_record():
    od = parse_eds(SAMPLE_EDS)
    device_type = od.get(Key(0x1000))
    assert device_type.def_val.get(DataType.UNSIGNED32) == 0x192
    assert device_type.readable and not device_type.writable
    assert device_type.desc == "Device type"
    assert not od.has(0x1000, 0)
    assert od.get(Key(0x1018, 0)).def_val.get(DataType.UNSIGNED8) == 1
    assert od.get(Key(0x1018, 1)).def_val.get(DataType.UNSIGNED32) == 0x2A
    assert not od.has(0x1018)


def test_parse_parameter_value():
    od = parse_eds(SAMPLE_EDS)
    heartbeat = od.get(Key(0x1017))
    assert heartbeat.init_val.get(DataType.UNSIGNED16) == 100
    assert heartbeat.value().get(DataType.UNSIGNED16) == 100


def test_parse_compact_array():
    od = parse_eds(SAMPLE_EDS)
    count = od.get(Key(0x1003, 0))
    assert count.desc == "NrOfObjects"
    assert count.def_val.get(DataType.UNSIGNED8) == 3
    assert not count.writable
    assert od.get(Key(0x1003, 1)).init_val.get(DataType.UNSIGNED32) == 0x11
    assert od.get(Key(0x1003, 2)).init_val.is_empty()
    assert not od.has(0x1003, 3)


def test_parse_node_id_offset_and_denotation():
    od = parse_eds(SAMPLE_EDS)
    cob = od.get(Key(0x2000))
    assert cob.desc == "Custom COB"
    assert cob.mappable is True
    assert NodeIdOffset.apply(cob.def_val, 5) == 0x185


def test_overlay_replaces_parameter_value():
    od = parse_eds(SAMPLE_EDS, {"1017": "200"})
    assert od.get(Key(0x1017)).init_val.get(DataType.UNSIGNED16) == 200
    od = parse_eds(SAMPLE_EDS, [("1000", "0x5")])
    assert od.get(Key(0x1000)).init_val.get(DataType.UNSIGNED32) == 5


def test_overlay_missing_section():
    with pytest.raises(ParseError):
        parse_eds(SAMPLE_EDS, {"3000": "1"})


def test_missing_device_info():
    with pytest.raises(ParseError, match="DeviceInfo"):
        parse_eds("[MandatoryObjects]\nSupportedObjects=0\n")


def test_missing_access_type():
    text = (
        "[DeviceInfo]\n[MandatoryObjects]\nSupportedObjects=1\n1=0x1000\n"
        "[1000]\nParameterName=x\nDataType=0x7\n"
    )
    with pytest.raises(ParseError, match="No AccessType"):
        parse_eds(text)


def test_unsupported_data_type():
    text = (
        "[DeviceInfo]\n[MandatoryObjects]\nSupportedObjects=1\n1=0x1000\n"
        "[1000]\nParameterName=x\nDataType=0x1\nAccessType=ro\n"
    )
    with pytest.raises(ParseError, match="Type of 0x1000"):
        parse_eds(text)


def test_unsupported_object_type():
    text = (
        "[DeviceInfo]\n[MandatoryObjects]\nSupportedObjects=1\n1=0x1000\n"
        "[1000]\nParameterName=x\nObjectType=0x5\n"
    )
    with pytest.raises(ParseError, match="Object type not supported"):
        parse_eds(text)


def test_duplicate_key_is_rejected():
    with pytest.raises(ParseError, match="duplicate"):
        parse_eds("[DeviceInfo]\nVendorName=a\nvendorname=b\n")


def test_load_eds(tmp_path):
    path = tmp_path / "device.eds"
    path.write_text(SAMPLE_EDS, encoding="utf-8")
    od = load_eds(path, {"1017": "300"})
    assert od.get(Key(0x1017)).init_val.get(DataType.UNSIGNED16) == 300
    assert len(od) == len(parse_eds(SAMPLE_EDS))