class CoapMQError(Exception):
    pass


class CodecError(CoapMQError):
    """Datagram is not a well-formed CoAP message."""


class MalformedCommand(CoapMQError):
    """Recognized verb without its required topic segment."""


class UnknownVerb(CoapMQError):
    pass


class TransmitFailure(CoapMQError):
    pass


class ListenerBindFailure(CoapMQError):
    pass
