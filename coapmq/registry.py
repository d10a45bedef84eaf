import logging
import threading
from typing import Dict, List, Optional

from .identity import ClientIdentity

logger = logging.getLogger(__name__)


class Registry:
    """
    Subscription state: topic -> subscribers and subscriber -> topics.

    A topic or client key only exists while it holds at least one
    subscription. Every call runs under one lock, so concurrent datagram
    handlers always observe both indexes in agreement.
    """

    def __init__(self, capacity: Optional[int] = None):
        self.capacity = capacity
        # exact topic -> subscribers, in subscription order
        self._topic_clients: Dict[str, List[ClientIdentity]] = {}
        # subscriber -> topics (reverse index)
        self._client_topics: Dict[ClientIdentity, List[str]] = {}
        self._lock = threading.Lock()

    def subscribe(self, topic: str, client: ClientIdentity) -> bool:
        with self._lock:
            clients = self._topic_clients.setdefault(topic, [])
            if client in clients:
                return False
            clients.append(client)
            self._client_topics.setdefault(client, []).append(topic)
            over = self.capacity is not None and len(self._topic_clients) > self.capacity

        if over:
            logger.warning("topic count %d exceeds capacity %d", self.topic_count, self.capacity)
        return True

    def unsubscribe(self, topic: str, client: ClientIdentity) -> bool:
        with self._lock:
            clients = self._topic_clients.get(topic)
            if not clients or client not in clients:
                return False

            clients.remove(client)
            if not clients:
                del self._topic_clients[topic]

            topics = self._client_topics[client]
            topics.remove(topic)
            if not topics:
                del self._client_topics[client]
            return True

    def subscribers_of(self, topic: str) -> List[ClientIdentity]:
        with self._lock:
            return list(self._topic_clients.get(topic, ()))

    def topics_of(self, client: ClientIdentity) -> List[str]:
        with self._lock:
            return list(self._client_topics.get(client, ()))

    def topics(self) -> List[str]:
        with self._lock:
            return list(self._topic_clients)

    def snapshot(self) -> Dict[str, List[str]]:
        with self._lock:
            return {t: [str(c) for c in cs] for t, cs in self._topic_clients.items()}

    @property
    def topic_count(self) -> int:
        with self._lock:
            return len(self._topic_clients)

    @property
    def client_count(self) -> int:
        with self._lock:
            return len(self._client_topics)

    def __len__(self):
        with self._lock:
            return sum(len(cs) for cs in self._topic_clients.values())
