import logging
from typing import Callable, Optional

from .command import ADDSUB, HB, PUB, REMSUB, Command
from .errors import MalformedCommand, UnknownVerb
from .identity import ClientIdentity
from .metrics import Metrics
from .registry import Registry

logger = logging.getLogger(__name__)

SendFn = Callable[[ClientIdentity, bytes, str], None]
AckFn = Callable[[Command], None]

TOPIC_VERBS = (ADDSUB, REMSUB, PUB)


class Dispatcher:
    """
    Routes decoded commands onto the registry.

    Holds no state of its own. Recognized verbs are acknowledged exactly
    once; anything else is dropped without a reply.
    """

    def __init__(self, registry: Registry, send: SendFn, acknowledge: AckFn,
                 metrics: Optional[Metrics] = None):
        self.registry = registry
        self.send = send
        self.acknowledge = acknowledge
        self.metrics = metrics or Metrics()
        self._handlers = {
            ADDSUB: self._add_sub,
            REMSUB: self._rem_sub,
            PUB: self._publish,
            HB: self._heartbeat,
        }

    def handle(self, cmd: Command) -> bool:
        """Process one command, returning True if it was acknowledged."""
        try:
            handler = self._resolve(cmd)
        except (MalformedCommand, UnknownVerb) as e:
            logger.debug("drop from %s: %s", cmd.sender, e)
            self.metrics.incr("dropped_total")
            return False

        logger.debug("cmd=%s topic=%s msg=%r from=%s", cmd.verb, cmd.topic, cmd.payload, cmd.sender)
        handler(cmd)
        self._ack(cmd)

        if logger.isEnabledFor(logging.DEBUG):
            for topic, clients in self.registry.snapshot().items():
                logger.debug("Topic=%s sub by client=>%s", topic, clients)
        return True

    def _resolve(self, cmd: Command):
        handler = self._handlers.get(cmd.verb)
        if handler is None:
            raise UnknownVerb(f"unknown verb {cmd.verb!r}")
        if cmd.verb in TOPIC_VERBS and not cmd.topic:
            raise MalformedCommand(f"{cmd.verb} without topic")
        return handler

    def _add_sub(self, cmd: Command):
        logger.info("add sub topic=%s in client=%s", cmd.topic, cmd.sender)
        self.registry.subscribe(cmd.topic, cmd.sender)
        self.metrics.incr("subscribes_total")

    def _rem_sub(self, cmd: Command):
        logger.info("remove sub topic=%s in client=%s", cmd.topic, cmd.sender)
        self.registry.unsubscribe(cmd.topic, cmd.sender)
        self.metrics.incr("unsubscribes_total")
        logger.debug("client=%s still subscribed to %s", cmd.sender, self.registry.topics_of(cmd.sender))

    def _heartbeat(self, cmd: Command):
        logger.debug("Got heart beat from %s", cmd.sender)
        self.metrics.incr("heartbeats_total")

    def _publish(self, cmd: Command):
        delivered = self.fan_out(cmd.topic, cmd.payload)
        self.metrics.incr("publishes_total")
        logger.debug("pub finished topic=%s delivered=%d", cmd.topic, delivered)

    def fan_out(self, topic: str, payload: bytes) -> int:
        """Deliver payload to every current subscriber; returns the success count."""
        delivered = 0
        for client in self.registry.subscribers_of(topic):
            try:
                self.send(client, payload, topic)
            except Exception:
                # one unreachable subscriber must not starve the rest
                logger.warning("delivery to %s on topic=%s failed", client, topic, exc_info=True)
                self.metrics.incr("delivery_failures_total")
                continue
            delivered += 1
            self.metrics.incr("deliveries_total")
            logger.debug("topic->%s PUB to %s msg=%r", topic, client, payload)
        return delivered

    def _ack(self, cmd: Command):
        try:
            self.acknowledge(cmd)
        except Exception:
            logger.warning("Error on transmitter for %s", cmd.sender, exc_info=True)
            self.metrics.incr("ack_failures_total")
            return
        self.metrics.incr("acks_total")
