from unittest.mock import patch

from coapmq import msgid
from coapmq.msgid import MessageIdGenerator


def test_monotonic():
    gen = MessageIdGenerator(seed=100)
    assert gen.current == 100
    assert [gen.next() for _ in range(3)] == [101, 102, 103]


def test_wraps_silently():
    gen = MessageIdGenerator(seed=0xFFFE)
    assert gen.next() == 0xFFFF
    assert gen.next() == 0
    assert gen.next() == 1


def test_seed_masked():
    assert MessageIdGenerator(seed=0x1FFFF).current == 0xFFFF


def test_seed_from_host_and_random():
    with patch.object(msgid, "host_ipv4_int16", return_value=0x0102), \
         patch.object(msgid, "random_int16", return_value=0xFFFF):
        gen = MessageIdGenerator()
    assert gen.current == (0x0102 + 0xFFFF) & 0xFFFF


def test_host_part_in_range():
    value = msgid.host_ipv4_int16()
    assert 0 <= value <= 0xFFFF
