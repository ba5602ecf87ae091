from collections import deque

from canopen_master.frames import CommInterface, Frame, Header
from canopen_master.layer import LayerReport, LayerStatus, StatusLevel
from canopen_master.node import Node, NodeChain, NodeState
from canopen_master.objdict import DataType, DeviceInfo, Entry, HoldAny, ObjectDict
from canopen_master.sync import SyncCounter, SyncProperties


def device_info():
    return DeviceInfo(
        vendor_name="",
        vendor_number=0,
        product_name="",
        product_number=0,
        revision_number=0,
        order_code="",
        simple_boot_up_master=False,
        simple_boot_up_slave=False,
        granularity=0,
        dynamic_channels_supported=False,
        group_messaging=False,
        nr_of_rx_pdo=0,
        nr_of_tx_pdo=0,
        lss_supported=False,
    )


def make_dict(default=0, init=100):
    od = ObjectDict(device_info())
    od.insert(
        False,
        Entry(
            index=0x1017,
            sub_index=0,
            data_type=DataType.UNSIGNED16,
            desc="producer heartbeat",
            readable=True,
            writable=True,
            mappable=False,
            def_val=HoldAny(DataType.UNSIGNED16, default),
            init_val=HoldAny(DataType.UNSIGNED16, init),
        ),
    )
    return od


def parse(text):
    ident, _, data = text.partition("#")
    return Frame(id=int(ident, 16), data=bytes.fromhex(data))


class Replay:
    def __init__(self):
        self.pending = deque()
        self.interface = CommInterface(transmit=self.transmit)

    def add(self, request, response):
        self.pending.append((request, response))

    def transmit(self, frame):
        if self.pending and str(frame) == self.pending[0][0]:
            _, response = self.pending.popleft()
            self.interface.dispatch(parse(response))

    def done(self):
        return not self.pending


class RecordingSync(SyncCounter):
    def __init__(self):
        super().__init__(SyncProperties(Header(0x80), 10, 0))
        self.nodes = set()

    def add_node(self, node):
        self.nodes.add(node)

    def remove_node(self, node):
        self.nodes.discard(node)


def standard_replay():
    replay = Replay()
    replay.add("0#8201", "701#00")
    replay.add("601#2b17100064000000", "581#6017100000000000")
    replay.add("0#0101", "701#05")
    replay.add("601#2b17100000000000", "581#6017100000000000")
    return replay


def test_init_and_shutdown():
    replay = standard_replay()
    assert not replay.done()
    node = Node(replay.interface, make_dict(), 1)

    status = LayerStatus()
    node.init(status)
    assert status.bounded(StatusLevel.OK)
    assert node.get_state() == NodeState.OPERATIONAL

    status = LayerStatus()
    node.shutdown(status)
    assert status.bounded(StatusLevel.OK)
    assert replay.done()
    assert node.get_state() == NodeState.UNKNOWN


def test_state_listener_sees_transitions():
    replay = standard_replay()
    node = Node(replay.interface, make_dict(), 1)
    seen = []
    node.add_state_listener(seen.append)
    node.init(LayerStatus())
    assert seen == [NodeState.BOOT_UP, NodeState.OPERATIONAL]
    node.shutdown(LayerStatus())
    assert seen[-1] == NodeState.UNKNOWN


def test_sync_counter_tracks_operational_node():
    replay = standard_replay()
    sync = RecordingSync()
    node = Node(replay.interface, make_dict(), 1, sync)
    node.init(LayerStatus())
    assert sync.nodes == {node}
    node.shutdown(LayerStatus())
    assert sync.nodes == set()


def test_diag_reports_stopped_node():
    replay = standard_replay()
    node = Node(replay.interface, make_dict(), 1)
    node.init(LayerStatus())
    report = LayerReport()
    node.diag(report)
    assert report.bounded(StatusLevel.OK)
    replay.interface.dispatch(parse("701#04"))
    assert node.get_state() == NodeState.STOPPED
    report = LayerReport()
    node.diag(report)
    assert not report.bounded(StatusLevel.WARN)


def test_start_without_heartbeat_assumes_state():
    sent = []
    node = Node(CommInterface(transmit=sent.append), ObjectDict(device_info()), 3)
    node.state_timeout = 0.05
    assert node.start() is True
    assert node.get_state() == NodeState.OPERATIONAL
    assert str(sent[0]) == "0#0103"


def test_start_with_heartbeat_times_out():
    node = Node(CommInterface(), make_dict(default=100, init=100), 1)
    node.state_timeout = 0.05
    assert node.start() is False
    assert node.get_state() == NodeState.UNKNOWN


def test_init_fails_when_reset_not_answered():
    node = Node(CommInterface(), make_dict(default=100, init=100), 1)
    node.reset_timeout = 0.05
    node.sdo.response_timeout = 0.05
    status = LayerStatus()
    node.init(status)
    assert not status.bounded(StatusLevel.WARN)


def test_stop_sends_nmt_stop():
    sent = []
    node = Node(CommInterface(transmit=sent.append), ObjectDict(device_info()), 5)
    assert node.stop() is True
    assert str(sent[-1]) == "0#0205"


def test_node_chain_starts_all_nodes():
    sent = []
    interface = CommInterface(transmit=sent.append)
    chain = NodeChain()
    for node_id in (1, 2):
        node = Node(interface, ObjectDict(device_info()), node_id)
        node.state_timeout = 0.05
        chain.add(node)
    chain.start()
    assert [node.get_state() for node in chain.elements] == [
        NodeState.OPERATIONAL,
        NodeState.OPERATIONAL,
    ]
    assert [str(frame) for frame in sent] == ["0#0101", "0#0102"]


def test_node_chain_prepare():
    interface = CommInterface()
    node = Node(interface, ObjectDict(device_info()), 4)
    node.state_timeout = 0.05
    chain = NodeChain([node])
    chain.prepare()
    assert node.get_state() == NodeState.PRE_OPERATIONAL