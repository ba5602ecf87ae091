import time

import pytest

from canopen_master.exceptions import CanOpenError
from canopen_master.frames import CommInterface, Frame, Header
from canopen_master.layer import LayerState, LayerStatus, StatusLevel
from canopen_master.sync import (
    ExternalMaster,
    ExternalSyncLayer,
    SimpleMaster,
    SimpleSyncLayer,
    SyncProperties,
    create_master,
)

SYNC_HEADER = Header(0x80)


def make_interface():
    sent = []
    return CommInterface(transmit=sent.append), sent


def ready_layer(overflow=0, period_ms=5):
    interface, sent = make_interface()
    layer = SimpleSyncLayer(SyncProperties(SYNC_HEADER, period_ms, overflow), interface)
    status = LayerStatus()
    layer.init(status)
    assert status.bounded(StatusLevel.OK)
    return layer, sent


def test_init_reaches_ready():
    layer, _ = ready_layer()
    assert layer.layer_state == LayerState.READY


def test_sync_without_counter():
    layer, sent = ready_layer()
    layer.add_node("node")
    status = LayerStatus()
    for _ in range(2):
        layer.read(status)
        layer.write(status)
    assert status.bounded(StatusLevel.OK)
    assert len(sent) == 2
    assert all(frame.id == SYNC_HEADER.id and frame.dlc == 0 for frame in sent)


def test_no_frames_without_nodes():
    layer, sent = ready_layer()
    layer.write(LayerStatus())
    assert sent == []


def test_no_frames_before_init():
    interface, sent = make_interface()
    layer = SimpleSyncLayer(SyncProperties(SYNC_HEADER, 5, 0), interface)
    layer.add_node("node")
    layer.write(LayerStatus())
    assert sent == []


def test_counter_sequence():
    layer, sent = ready_layer(overflow=3)
    layer.add_node("node")
    for _ in range(4):
        layer.write(LayerStatus())
    assert [frame.data[0] for frame in sent] == [2, 3, 1, 2]


def test_counter_stays_within_overflow():
    overflow = 5
    layer, sent = ready_layer(overflow=overflow, period_ms=1)
    layer.add_node("node")
    for _ in range(3 * overflow):
        layer.write(LayerStatus())
    counters = [frame.data[0] for frame in sent]
    assert all(1 <= c <= overflow for c in counters)
    assert set(counters) == set(range(1, overflow + 1))


@pytest.mark.parametrize("overflow", [1, 241, -1])
def test_invalid_overflow(overflow):
    interface, _ = make_interface()
    with pytest.raises(CanOpenError, match="overflow"):
        SimpleSyncLayer(SyncProperties(SYNC_HEADER, 10, overflow), interface)


def test_remove_node_stops_sending():
    layer, sent = ready_layer()
    layer.add_node("a")
    layer.add_node("a")
    assert layer.node_count == 1
    layer.write(LayerStatus())
    layer.remove_node("a")
    layer.remove_node("missing")
    assert layer.node_count == 0
    layer.write(LayerStatus())
    assert len(sent) == 1


def test_halt_and_recover():
    layer, _ = ready_layer()
    status = LayerStatus()
    layer.halt(status)
    assert layer.layer_state == LayerState.ERROR
    layer.recover(status)
    assert layer.layer_state == LayerState.READY
    assert status.bounded(StatusLevel.OK)


def test_external_sync_follows_bus():
    interface, sent = make_interface()
    layer = ExternalSyncLayer(SyncProperties(SYNC_HEADER, 400, 0), interface)
    status = LayerStatus()
    layer.init(status)
    interface.dispatch(Frame(id=SYNC_HEADER.id))
    started = time.monotonic()
    layer.read(status)
    elapsed = time.monotonic() - started
    assert elapsed < 0.39
    layer.write(status)
    assert sent == []
    assert status.bounded(StatusLevel.OK)


def test_external_sync_times_out_without_frame():
    interface, _ = make_interface()
    layer = ExternalSyncLayer(SyncProperties(SYNC_HEADER, 400, 0), interface)
    status = LayerStatus()
    layer.init(status)
    started = time.monotonic()
    layer.read(status)
    assert time.monotonic() - started >= 0.3
    assert status.bounded(StatusLevel.OK)


def test_create_master():
    interface, _ = make_interface()
    properties = SyncProperties(SYNC_HEADER, 10, 0)
    simple = create_master("simple", interface)
    external = create_master("External", interface)
    assert isinstance(simple, SimpleMaster)
    assert isinstance(external, ExternalMaster)
    sync = simple.get_sync(properties)
    assert isinstance(sync, SimpleSyncLayer)
    assert sync.properties == properties
    assert isinstance(external.get_sync(properties), ExternalSyncLayer)


def test_create_unknown_master():
    interface, _ = make_interface()
    with pytest.raises(ValueError):
        create_master("nonexistent", interface)


def test_sync_properties_equality():
    a = SyncProperties(Header(0x80), 10, 0)
    b = SyncProperties(Header(0x80), 10, 0)
    c = SyncProperties(Header(0x80), 20, 0)
    assert a == b
    assert hash(a) == hash(b)
    assert a != c
    assert len({a, b, c}) == 2