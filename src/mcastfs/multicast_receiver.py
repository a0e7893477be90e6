#!/usr/bin/env python3
"""
Multicast Datagram Receiver

Joins the firmware broadcast group and hands out raw datagrams one at a
time. Reception is blocking with a fixed timeout; an expired timeout is
reported as ReceiveTimeout rather than retried, so the caller decides
whether silence means the broadcast is over.
"""

import ipaddress
import logging
import socket
import struct
from typing import Iterator, Optional

from .errors import ReceiveTimeout

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0
RECEIVE_BUFFER_SIZE = 8192


def parse_group(value: str) -> tuple:
    """
    Parse 'group:port' into (group, port).

    Raises:
        ValueError: malformed value, non-multicast address or bad port
    """
    host, sep, port_text = value.rpartition(':')
    if not sep or not host:
        raise ValueError(f"Expected GROUP:PORT, got '{value}'")
    if not ipaddress.ip_address(host).is_multicast:
        raise ValueError(f"{host} is not a multicast address")
    port = int(port_text)
    if not 0 < port <= 65535:
        raise ValueError(f"Port {port} out of range")
    return host, port


class MulticastReceiver:
    """
    Blocking multicast datagram source.

    Example:
        with MulticastReceiver('239.255.0.1', 5000) as receiver:
            datagram = receiver.receive()
    """

    def __init__(self, multicast_address: str, port: int,
                 timeout: float = DEFAULT_TIMEOUT, interface: str = '0.0.0.0'):
        """
        Initialize receiver.

        Args:
            multicast_address: Multicast group to join
            port: UDP port of the broadcast
            timeout: Seconds to wait for each datagram
            interface: Local interface address for the group membership
        """
        self.multicast_address = multicast_address
        self.port = port
        self.timeout = timeout
        self.interface = interface
        self.socket: Optional[socket.socket] = None
        self.packet_count = 0

    def start(self):
        """Open the socket and join the group"""
        if self.socket is not None:
            logger.warning("Multicast receiver already running")
            return

        self.socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        self.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.socket.bind(('', self.port))

        mreq = struct.pack("4s4s",
                           socket.inet_aton(self.multicast_address),
                           socket.inet_aton(self.interface))
        self.socket.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
        self.socket.settimeout(self.timeout)
        logger.info(f"Joined multicast {self.multicast_address}:{self.port} on {self.interface}")

    def stop(self):
        """Leave the group and close the socket"""
        if self.socket is not None:
            self.socket.close()
            self.socket = None
            logger.info(f"Multicast receiver stopped after {self.packet_count} datagrams")

    def receive(self) -> bytes:
        """
        Block for the next datagram.

        Raises:
            ReceiveTimeout: nothing arrived within the timeout
        """
        if self.socket is None:
            self.start()
        try:
            data, _addr = self.socket.recvfrom(RECEIVE_BUFFER_SIZE)
        except socket.timeout:
            raise ReceiveTimeout(self.timeout) from None
        self.packet_count += 1
        return data

    def __iter__(self) -> Iterator[bytes]:
        while True:
            yield self.receive()

    def __enter__(self) -> 'MulticastReceiver':
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
