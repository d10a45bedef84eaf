import threading
import time
from dataclasses import dataclass, field
from typing import Dict

@dataclass
class Metrics:
    start_time: float = field(default_factory=time.time)

    datagrams_total: int = 0
    dropped_total: int = 0
    subscribes_total: int = 0
    unsubscribes_total: int = 0
    publishes_total: int = 0
    heartbeats_total: int = 0
    deliveries_total: int = 0
    delivery_failures_total: int = 0
    acks_total: int = 0
    ack_failures_total: int = 0
    bytes_in_total: int = 0
    bytes_out_total: int = 0

    # per-command timing
    packet_count: Dict[str, int] = field(default_factory=lambda: {})
    packet_time_sum_ms: Dict[str, float] = field(default_factory=lambda: {})
    packet_time_max_ms: Dict[str, float] = field(default_factory=lambda: {})

    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def incr(self, name: str, amount: int = 1):
        with self._lock:
            setattr(self, name, getattr(self, name) + amount)

    def observe_packet(self, name: str, ms: float):
        with self._lock:
            self.packet_count[name] = self.packet_count.get(name, 0) + 1
            self.packet_time_sum_ms[name] = self.packet_time_sum_ms.get(name, 0.0) + ms
            self.packet_time_max_ms[name] = max(self.packet_time_max_ms.get(name, 0.0), ms)

    def snapshot(self):
        with self._lock:
            up = time.time() - self.start_time
            avg_ms = {}
            for k, c in self.packet_count.items():
                avg_ms[k] = (self.packet_time_sum_ms.get(k, 0.0) / c) if c else 0.0

            return {
                "uptime_sec": round(up, 2),
                "datagrams_total": self.datagrams_total,
                "dropped_total": self.dropped_total,
                "subscribes_total": self.subscribes_total,
                "unsubscribes_total": self.unsubscribes_total,
                "publishes_total": self.publishes_total,
                "heartbeats_total": self.heartbeats_total,
                "deliveries_total": self.deliveries_total,
                "delivery_failures_total": self.delivery_failures_total,
                "acks_total": self.acks_total,
                "ack_failures_total": self.ack_failures_total,
                "bytes_in_total": self.bytes_in_total,
                "bytes_out_total": self.bytes_out_total,
                "packet_count": dict(self.packet_count),
                "packet_avg_ms": {k: round(v, 3) for k, v in avg_ms.items()},
                "packet_max_ms": {k: round(v, 3) for k, v in self.packet_time_max_ms.items()},
            }
