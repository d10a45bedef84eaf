import asyncio
import logging
import time

from . import coap_codec
from .command import Command
from .config import COAP_HOST, COAP_PORT, HTTP_HOST, HTTP_PORT, HTTP_ENABLED, LOG_PACKET_TIMES, MAX_CHANNEL
from .dispatcher import Dispatcher
from .errors import CodecError, ListenerBindFailure, TransmitFailure
from .identity import ClientIdentity
from .metrics import Metrics
from .msgid import MessageIdGenerator
from .registry import Registry

logger = logging.getLogger(__name__)


def _log_packet(name: str, peer, ms: float):
    if LOG_PACKET_TIMES:
        logger.info("[%s] from=%s cycle_ms=%.3f", name, peer, ms)


class CoapBroker:
    """Process-lifetime context owning the registry and the UDP endpoint."""

    def __init__(self, capacity: int = MAX_CHANNEL, msgid: MessageIdGenerator = None):
        self.registry = Registry(capacity)
        self.msgid = msgid or MessageIdGenerator()
        self.metrics = Metrics()
        self.dispatcher = Dispatcher(self.registry, self.send, self.acknowledge, self.metrics)
        self.transport = None

    def _transmit(self, data: bytes, addr):
        if self.transport is None or self.transport.is_closing():
            raise TransmitFailure("transport is not open")
        try:
            self.transport.sendto(data, addr)
        except OSError as e:
            raise TransmitFailure(str(e)) from e
        self.metrics.incr("bytes_out_total", len(data))

    def send(self, client: ClientIdentity, payload: bytes, topic: str):
        self._transmit(coap_codec.build_delivery(topic, payload, self.msgid.next()), client.addr)

    def acknowledge(self, cmd: Command):
        mid = None if cmd.confirmable else self.msgid.next()
        self._transmit(coap_codec.build_ack(cmd, mid), cmd.sender.addr)

    def handle_datagram(self, data: bytes, addr):
        peer = ClientIdentity.from_addr(addr)
        self.metrics.incr("datagrams_total")
        self.metrics.incr("bytes_in_total", len(data))
        t0 = time.perf_counter()

        try:
            msg = coap_codec.decode(data)
        except CodecError as e:
            logger.debug("undecodable datagram from %s: %s", peer, e)
            self.metrics.incr("dropped_total")
            return

        if msg.code == coap_codec.EMPTY:
            # CoAP ping: empty CON is answered with RST, everything else ignored
            if msg.type == coap_codec.CON:
                try:
                    self._transmit(coap_codec.build_reset(msg.message_id), addr)
                except TransmitFailure as e:
                    logger.warning("RST to %s failed: %s", peer, e)
            return
        if msg.type in (coap_codec.ACK, coap_codec.RST):
            return

        cmd = coap_codec.to_command(msg, peer)
        self.dispatcher.handle(cmd)

        ms = (time.perf_counter() - t0) * 1000
        name = cmd.verb or "EMPTY"
        self.metrics.observe_packet(name, ms)
        _log_packet(name, peer, ms)


class BrokerProtocol(asyncio.DatagramProtocol):
    def __init__(self, broker: CoapBroker):
        self.broker = broker

    def connection_made(self, transport):
        self.broker.transport = transport

    def datagram_received(self, data, addr):
        try:
            self.broker.handle_datagram(data, addr)
        except Exception:
            logger.exception("error handling datagram from %s", addr)

    def error_received(self, exc):
        logger.warning("transport error: %s", exc)

    def connection_lost(self, exc):
        self.broker.transport = None


async def start_coap(broker: CoapBroker, host: str = COAP_HOST, port: int = COAP_PORT):
    loop = asyncio.get_running_loop()
    try:
        transport, _ = await loop.create_datagram_endpoint(
            lambda: BrokerProtocol(broker), local_addr=(host, port)
        )
    except OSError as e:
        raise ListenerBindFailure(f"cannot bind {host}:{port}: {e}") from e
    logger.info("CoAP listening on %s", transport.get_extra_info("sockname"))
    return transport


async def serve_coap(broker: CoapBroker):
    transport = await start_coap(broker)
    try:
        await asyncio.Event().wait()
    finally:
        transport.close()


async def start_http(broker: CoapBroker):
    from aiohttp import web
    from .http_api import make_app
    app = make_app(broker)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, HTTP_HOST, HTTP_PORT)
    try:
        await site.start()
    except OSError as e:
        await runner.cleanup()
        raise ListenerBindFailure(f"cannot bind {HTTP_HOST}:{HTTP_PORT}: {e}") from e
    logger.info("HTTP stats listening on http://%s:%s/stats and /metrics", HTTP_HOST, HTTP_PORT)
    return runner


async def run_all(broker: CoapBroker = None):
    broker = broker or CoapBroker()
    runner = await start_http(broker) if HTTP_ENABLED else None
    try:
        await serve_coap(broker)
    finally:
        if runner is not None:
            await runner.cleanup()
