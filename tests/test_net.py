import socket

import pytest

from uefi_xtask.net import EchoService, reverse_payload


def test_reverse_payload():
    assert reverse_payload(bytes([4, 1, 2, 3, 4])) == bytes([4, 4, 3, 2, 1])


def test_reverse_empty_payload():
    assert reverse_payload(b"\x00") == b"\x00"


def test_reverse_twice_is_identity():
    packet = bytes([3]) + b"abc"
    assert reverse_payload(reverse_payload(packet)) == packet


def test_length_mismatch_rejected():
    with pytest.raises(ValueError):
        reverse_payload(bytes([5, 1, 2]))


def test_empty_packet_rejected():
    with pytest.raises(ValueError):
        reverse_payload(b"")


def test_service_echoes_reversed():
    with EchoService.start(port=0) as service:
        client = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        client.settimeout(5)
        try:
            client.sendto(bytes([4, 1, 2, 3, 4]), service.address)
            reply, _ = client.recvfrom(257)
        finally:
            client.close()
    assert reply == bytes([4, 4, 3, 2, 1])