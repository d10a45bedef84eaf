from dataclasses import dataclass, field
from typing import Optional, Tuple

from .identity import ClientIdentity

ADDSUB = "ADDSUB"
REMSUB = "REMSUB"
PUB = "PUB"
HB = "HB"


@dataclass(frozen=True)
class Command:
    verb: str
    topic: Optional[str]
    payload: bytes
    sender: ClientIdentity
    correlation_id: int
    # request details the acknowledgment has to mirror
    token: bytes = b""
    path: Tuple[str, ...] = field(default_factory=tuple)
    confirmable: bool = True
