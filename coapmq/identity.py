from dataclasses import dataclass
from typing import Tuple

_V4_MAPPED = "::ffff:"


@dataclass(frozen=True)
class ClientIdentity:
    host: str
    port: int

    @classmethod
    def from_addr(cls, addr) -> "ClientIdentity":
        # asyncio hands out (host, port) for IPv4 and (host, port, flow, scope) for IPv6
        host, port = addr[0], int(addr[1])
        host = str(host).lower()
        if host.startswith(_V4_MAPPED) and "." in host:
            host = host[len(_V4_MAPPED):]
        return cls(host, port)

    @property
    def addr(self) -> Tuple[str, int]:
        return (self.host, self.port)

    def __str__(self):
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"
