import struct
from dataclasses import dataclass, field
from typing import List, Tuple

from .command import PUB, Command
from .errors import CodecError
from .identity import ClientIdentity

VERSION = 1

# message types
CON = 0
NON = 1
ACK = 2
RST = 3

# codes, class << 5 | detail
EMPTY = 0x00
GET = 0x01
POST = 0x02
PUT = 0x03
DELETE = 0x04
CONTENT = 0x45  # 2.05

# option numbers
URI_PATH = 11
CONTENT_FORMAT = 12

# content formats
TEXT_PLAIN = 0
LINK_FORMAT = 40

PAYLOAD_MARKER = 0xFF


@dataclass
class CoapMessage:
    type: int = CON
    code: int = EMPTY
    message_id: int = 0
    token: bytes = b""
    options: List[Tuple[int, bytes]] = field(default_factory=list)
    payload: bytes = b""

    @property
    def raw_path(self) -> List[bytes]:
        return [v for n, v in self.options if n == URI_PATH]

    @property
    def path(self) -> List[str]:
        return [v.decode("utf-8", errors="replace") for v in self.raw_path]

    @property
    def content_format(self):
        for n, v in self.options:
            if n == CONTENT_FORMAT:
                return decode_uint(v)
        return None

    def set_path(self, segments):
        self.options = [(n, v) for n, v in self.options if n != URI_PATH]
        self.options.extend((URI_PATH, s.encode("utf-8")) for s in segments)

    def set_content_format(self, fmt: int):
        self.options = [(n, v) for n, v in self.options if n != CONTENT_FORMAT]
        self.options.append((CONTENT_FORMAT, encode_uint(fmt)))


def encode_uint(value: int) -> bytes:
    # minimal-length big endian, zero is the empty string
    out = bytearray()
    while value:
        out.insert(0, value & 0xFF)
        value >>= 8
    return bytes(out)


def decode_uint(buf: bytes) -> int:
    return int.from_bytes(buf, "big") if buf else 0


def _read_extended(nibble: int, buf: bytes, i: int):
    if nibble < 13:
        return nibble, i
    if nibble == 13:
        if i >= len(buf):
            raise CodecError("Truncated option header")
        return buf[i] + 13, i + 1
    if nibble == 14:
        if i + 2 > len(buf):
            raise CodecError("Truncated option header")
        return struct.unpack_from("!H", buf, i)[0] + 269, i + 2
    raise CodecError("Reserved option nibble 15")


def _write_extended(value: int):
    if value < 13:
        return value, b""
    if value < 269:
        return 13, bytes([value - 13])
    return 14, struct.pack("!H", value - 269)


def decode(datagram: bytes) -> CoapMessage:
    if len(datagram) < 4:
        raise CodecError("Datagram shorter than CoAP header")

    first, code, message_id = struct.unpack_from("!BBH", datagram, 0)
    version = first >> 6
    mtype = (first >> 4) & 0x03
    tkl = first & 0x0F
    if version != VERSION:
        raise CodecError(f"Unsupported CoAP version {version}")
    if tkl > 8:
        raise CodecError(f"Invalid token length {tkl}")
    if len(datagram) < 4 + tkl:
        raise CodecError("Truncated token")

    i = 4
    token = bytes(datagram[i:i + tkl])
    i += tkl

    options = []
    number = 0
    payload = b""
    while i < len(datagram):
        byte = datagram[i]
        i += 1
        if byte == PAYLOAD_MARKER:
            payload = bytes(datagram[i:])
            if not payload:
                raise CodecError("Payload marker without payload")
            break

        delta, i = _read_extended(byte >> 4, datagram, i)
        length, i = _read_extended(byte & 0x0F, datagram, i)
        if i + length > len(datagram):
            raise CodecError("Truncated option value")
        number += delta
        options.append((number, bytes(datagram[i:i + length])))
        i += length

    return CoapMessage(mtype, code, message_id, token, options, payload)


def encode(msg: CoapMessage) -> bytes:
    if len(msg.token) > 8:
        raise CodecError("Token longer than 8 bytes")

    out = bytearray()
    out.append((VERSION << 6) | ((msg.type & 0x03) << 4) | len(msg.token))
    out += struct.pack("!BH", msg.code, msg.message_id & 0xFFFF)
    out += msg.token

    last = 0
    # stable sort keeps repeated options (Uri-Path) in order
    for number, value in sorted(msg.options, key=lambda o: o[0]):
        d_nib, d_ext = _write_extended(number - last)
        l_nib, l_ext = _write_extended(len(value))
        out.append((d_nib << 4) | l_nib)
        out += d_ext + l_ext + value
        last = number

    if msg.payload:
        out.append(PAYLOAD_MARKER)
        out += msg.payload
    return bytes(out)


def to_command(msg: CoapMessage, sender: ClientIdentity) -> Command:
    try:
        path = tuple(s.decode("utf-8") for s in msg.raw_path)
    except UnicodeDecodeError:
        # distinct undecodable names must not collapse into one topic
        path = ()
    verb = path[0] if path else ""
    topic = path[1] if len(path) > 1 and path[1] else None
    return Command(
        verb=verb,
        topic=topic,
        payload=msg.payload,
        sender=sender,
        correlation_id=msg.message_id,
        token=msg.token,
        path=path,
        confirmable=msg.type == CON,
    )


def build_ack(cmd: Command, message_id: int = None) -> bytes:
    """
    Response for a recognized command. A CON request gets a piggybacked ACK
    carrying its own Message ID, a NON request gets a NON reply with
    `message_id`.
    """
    if cmd.confirmable:
        mtype, mid = ACK, cmd.correlation_id
    else:
        mtype, mid = NON, message_id
    msg = CoapMessage(type=mtype, code=CONTENT, message_id=mid or 0, token=cmd.token, payload=cmd.payload)
    msg.set_path(cmd.path)
    msg.set_content_format(LINK_FORMAT)
    return encode(msg)


def build_delivery(topic: str, payload: bytes, message_id: int) -> bytes:
    msg = CoapMessage(type=NON, code=POST, message_id=message_id, payload=payload)
    msg.set_path([PUB, topic])
    msg.set_content_format(TEXT_PLAIN)
    return encode(msg)


def build_reset(message_id: int) -> bytes:
    return encode(CoapMessage(type=RST, code=EMPTY, message_id=message_id))
