import asyncio
import socket

import pytest

from coapmq import broker as broker_mod
from coapmq import coap_codec as cc
from coapmq.broker import BrokerProtocol, CoapBroker, run_all, start_coap, start_http
from coapmq.errors import ListenerBindFailure
from coapmq.identity import ClientIdentity
from coapmq.msgid import MessageIdGenerator

A = ("10.0.0.1", 5683)
B = ("10.0.0.2", 5683)
PUBLISHER = ("10.0.0.9", 40000)


class FakeTransport:
    def __init__(self):
        self.sent = []
        self.closed = False

    def sendto(self, data, addr):
        self.sent.append((addr, cc.decode(data)))

    def is_closing(self):
        return self.closed

    def close(self):
        self.closed = True


def request(path, payload=b"", mid=1, mtype=cc.CON, code=cc.POST):
    msg = cc.CoapMessage(type=mtype, code=code, message_id=mid, token=b"\x01", payload=payload)
    msg.set_path(path)
    return cc.encode(msg)


@pytest.fixture
def rig():
    broker = CoapBroker(msgid=MessageIdGenerator(seed=500))
    proto = BrokerProtocol(broker)
    transport = FakeTransport()
    proto.connection_made(transport)
    return broker, proto, transport


def test_end_to_end(rig):
    broker, proto, transport = rig
    proto.datagram_received(request(["ADDSUB", "temp"], mid=10), A)
    proto.datagram_received(request(["ADDSUB", "temp"], mid=11), B)
    assert [(addr, m.type, m.message_id) for addr, m in transport.sent] == [
        (A, cc.ACK, 10), (B, cc.ACK, 11)]

    transport.sent.clear()
    proto.datagram_received(request(["PUB", "temp"], b"23C", mid=12), PUBLISHER)

    deliveries = [(addr, m) for addr, m in transport.sent if m.type == cc.NON]
    acks = [(addr, m) for addr, m in transport.sent if m.type == cc.ACK]
    assert sorted(addr for addr, _ in deliveries) == [A, B]
    for _, m in deliveries:
        assert m.payload == b"23C"
        assert m.path == ["PUB", "temp"]
    assert [m.message_id for _, m in deliveries] == [501, 502]

    assert len(acks) == 1
    addr, ack = acks[0]
    assert addr == PUBLISHER
    assert ack.message_id == 12
    assert ack.payload == b"23C"
    assert ack.content_format == cc.LINK_FORMAT

    assert broker.metrics.publishes_total == 1
    assert broker.metrics.deliveries_total == 2
    assert broker.metrics.packet_count["PUB"] == 1


def test_non_request_gets_fresh_id(rig):
    broker, proto, transport = rig
    proto.datagram_received(request(["HB"], mid=7, mtype=cc.NON), A)
    (addr, reply), = transport.sent
    assert reply.type == cc.NON
    assert reply.message_id == 501


def test_garbage_gets_no_reply(rig):
    broker, proto, transport = rig
    proto.datagram_received(b"\xff\xff", A)
    proto.datagram_received(request(["BOGUS"]), A)
    proto.datagram_received(request(["ADDSUB"]), A)
    assert transport.sent == []
    assert broker.registry.topics() == []
    assert broker.metrics.dropped_total == 3


def test_ping_answered_with_reset(rig):
    broker, proto, transport = rig
    ping = cc.encode(cc.CoapMessage(type=cc.CON, code=cc.EMPTY, message_id=33))
    proto.datagram_received(ping, A)
    (addr, rst), = transport.sent
    assert addr == A
    assert (rst.type, rst.message_id) == (cc.RST, 33)


def test_ack_and_reset_ignored(rig):
    broker, proto, transport = rig
    proto.datagram_received(request(["HB"], mtype=cc.ACK, code=cc.CONTENT), A)
    proto.datagram_received(cc.build_reset(9), A)
    assert transport.sent == []


def test_closed_transport_is_contained(rig):
    broker, proto, transport = rig
    broker.registry.subscribe("temp", ClientIdentity.from_addr(A))
    transport.closed = True
    proto.datagram_received(request(["PUB", "temp"], b"x"), PUBLISHER)
    assert broker.metrics.delivery_failures_total == 1
    assert broker.metrics.ack_failures_total == 1

    transport.closed = False
    proto.datagram_received(request(["HB"], mid=2), A)
    assert len(transport.sent) == 1


def test_unexpected_error_contained(rig, monkeypatch):
    broker, proto, transport = rig

    def explode(cmd):
        raise RuntimeError("boom")

    monkeypatch.setattr(broker.dispatcher, "handle", explode)
    proto.datagram_received(request(["HB"]), A)

    monkeypatch.undo()
    proto.datagram_received(request(["HB"], mid=3), A)
    assert len(transport.sent) == 1


def test_connection_lost_detaches(rig):
    broker, proto, transport = rig
    proto.connection_lost(None)
    assert broker.transport is None


def test_bind_failure():
    async def bind_twice():
        broker = CoapBroker(msgid=MessageIdGenerator(seed=1))
        first = await start_coap(broker, "127.0.0.1", 0)
        port = first.get_extra_info("sockname")[1]
        try:
            await start_coap(CoapBroker(msgid=MessageIdGenerator(seed=1)), "127.0.0.1", port)
        finally:
            first.close()

    with pytest.raises(ListenerBindFailure):
        asyncio.run(bind_twice())


def raw_request(segments, payload=b"", mid=1):
    msg = cc.CoapMessage(type=cc.CON, code=cc.POST, message_id=mid, payload=payload)
    msg.options = [(cc.URI_PATH, s) for s in segments]
    return cc.encode(msg)


def test_undecodable_topics_do_not_alias(rig):
    broker, proto, transport = rig
    proto.datagram_received(raw_request([b"ADDSUB", b"\xff"], mid=1), A)
    proto.datagram_received(raw_request([b"PUB", b"\xfe"], b"leak", mid=2), PUBLISHER)
    proto.datagram_received(raw_request([b"HB", b"\xc3"], mid=3), B)

    assert transport.sent == []
    assert broker.registry.topics() == []
    assert broker.metrics.dropped_total == 3


def test_http_bind_failure(monkeypatch):
    busy = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    busy.bind(("127.0.0.1", 0))
    busy.listen(1)
    monkeypatch.setattr(broker_mod, "HTTP_HOST", "127.0.0.1")
    monkeypatch.setattr(broker_mod, "HTTP_PORT", busy.getsockname()[1])

    try:
        with pytest.raises(ListenerBindFailure):
            asyncio.run(start_http(CoapBroker(msgid=MessageIdGenerator(seed=1))))
    finally:
        busy.close()


def test_run_all_cleans_up_http(monkeypatch):
    class Runner:
        cleaned = False

        async def cleanup(self):
            self.cleaned = True

    runner = Runner()

    async def fake_start_http(broker):
        return runner

    async def failing_coap(broker):
        raise ListenerBindFailure("port taken")

    monkeypatch.setattr(broker_mod, "HTTP_ENABLED", True)
    monkeypatch.setattr(broker_mod, "start_http", fake_start_http)
    monkeypatch.setattr(broker_mod, "serve_coap", failing_coap)

    with pytest.raises(ListenerBindFailure):
        asyncio.run(run_all(CoapBroker(msgid=MessageIdGenerator(seed=1))))
    assert runner.cleaned
