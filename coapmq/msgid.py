import logging
import random
import socket
import threading

logger = logging.getLogger(__name__)

MAX_ID = 0xFFFF


def host_ipv4_int16() -> int:
    """Low 16 bits of this host's primary IPv4 address, 0 if unknown."""
    ip = None
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # connect() on UDP only picks a route, nothing is sent
        s.connect(("192.0.2.1", 9))
        ip = s.getsockname()[0]
    except OSError:
        pass
    finally:
        s.close()

    if ip is None or ip.startswith("0."):
        try:
            ip = socket.gethostbyname(socket.gethostname())
        except OSError:
            return 0

    try:
        packed = socket.inet_aton(ip)
    except OSError:
        return 0
    return (packed[2] << 8) | packed[3]


def random_int16() -> int:
    return random.SystemRandom().randint(0, MAX_ID)


class MessageIdGenerator:
    def __init__(self, seed: int = None):
        if seed is None:
            seed = host_ipv4_int16() + random_int16()
        self._value = seed & MAX_ID
        self._lock = threading.Lock()
        logger.info("Init msgID=%d", self._value)

    @property
    def current(self) -> int:
        return self._value

    def next(self) -> int:
        with self._lock:
            self._value = (self._value + 1) & MAX_ID
            return self._value
