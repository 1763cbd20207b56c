# -*- coding: utf-8 -*-
#
# Copyright (C) 2021-2022 by The Linux Foundation
# SPDX-License-Identifier: MIT-0
#
"""Packet stream reader.

Splits a binary keyring encoding into framed packets without interpreting
their bodies. Every packet keeps the exact bytes it was read from, header
included, so that output built from these packets is byte-identical to the
input and packets can be compared by raw-byte equality.
"""
import logging

from typing import Iterator, Optional, Tuple, List

from keycanon.errors import FramingError, UnsupportedFeatureError

logger: logging.Logger = logging.getLogger(__name__)

TAG_SIGNATURE = 2
TAG_SECRET_KEY = 5
TAG_PUBLIC_KEY = 6
TAG_SECRET_SUBKEY = 7
TAG_MARKER = 10
TAG_TRUST = 12
TAG_USER_ID = 13
TAG_PUBLIC_SUBKEY = 14
TAG_USER_ATTRIBUTE = 17

MASTER_KEY_TAGS = (TAG_PUBLIC_KEY, TAG_SECRET_KEY)
SUBKEY_TAGS = (TAG_PUBLIC_SUBKEY, TAG_SECRET_SUBKEY)
SECRET_TAGS = (TAG_SECRET_KEY, TAG_SECRET_SUBKEY)

TAG_NAMES = {
    TAG_SIGNATURE: 'signature',
    TAG_SECRET_KEY: 'secret-key',
    TAG_PUBLIC_KEY: 'public-key',
    TAG_SECRET_SUBKEY: 'secret-subkey',
    TAG_MARKER: 'marker',
    TAG_TRUST: 'trust',
    TAG_USER_ID: 'user-id',
    TAG_PUBLIC_SUBKEY: 'public-subkey',
    TAG_USER_ATTRIBUTE: 'user-attribute',
}

# Closed set of packet kinds a keyring may be made of
KIND_MASTER_KEY = 'master-key'
KIND_SUBKEY = 'subkey'
KIND_USER_ID = 'user-id'
KIND_USER_ATTRIBUTE = 'user-attribute'
KIND_SIGNATURE = 'signature'


class RawPacket:
    """One framed packet, exactly as it appeared in the stream.

    Equality and hashing look at the raw bytes only; the stream position is
    carried along for reporting.

    Attributes:
        tag: Packet type.
        length: Body length.
        header_length: Number of header bytes preceding the body.
        buf: Header and body bytes, verbatim.
        position: Index of the packet in its stream.
    """

    __slots__ = ('tag', 'length', 'header_length', 'buf', 'position', 'new_format')

    tag: int
    length: int
    header_length: int
    buf: bytes
    position: int
    new_format: bool

    def __init__(self, tag: int, length: int, header_length: int, buf: bytes,
                 position: int = 0, new_format: bool = True):
        object.__setattr__(self, 'tag', tag)
        object.__setattr__(self, 'length', length)
        object.__setattr__(self, 'header_length', header_length)
        object.__setattr__(self, 'buf', bytes(buf))
        object.__setattr__(self, 'position', position)
        object.__setattr__(self, 'new_format', new_format)

    def __setattr__(self, name: str, value: object) -> None:
        raise AttributeError('RawPacket is immutable')

    @property
    def body(self) -> bytes:
        return self.buf[self.header_length:]

    @property
    def kind(self) -> Optional[str]:
        """Return the keyring packet kind, or None for anything else."""
        if self.tag in MASTER_KEY_TAGS:
            return KIND_MASTER_KEY
        if self.tag in SUBKEY_TAGS:
            return KIND_SUBKEY
        if self.tag == TAG_USER_ID:
            return KIND_USER_ID
        if self.tag == TAG_USER_ATTRIBUTE:
            return KIND_USER_ATTRIBUTE
        if self.tag == TAG_SIGNATURE:
            return KIND_SIGNATURE
        return None

    @property
    def tag_name(self) -> str:
        return TAG_NAMES.get(self.tag, 'tag-%d' % self.tag)

    def with_position(self, position: int) -> 'RawPacket':
        return RawPacket(self.tag, self.length, self.header_length, self.buf,
                         position=position, new_format=self.new_format)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RawPacket):
            return NotImplemented
        return self.buf == other.buf

    def __hash__(self) -> int:
        return hash(self.buf)

    def __repr__(self) -> str:
        return 'RawPacket(%s, len=%d, pos=%d)' % (self.tag_name, self.length, self.position)


def _partial_resume(data: bytes, first: int, at: int) -> Optional[int]:
    # Walk the remaining partial chunks, return the offset past the packet
    chunk = 1 << (first & 0x1f)
    while True:
        at += chunk
        if at >= len(data):
            return None
        l = data[at]
        if 224 <= l < 255:
            chunk = 1 << (l & 0x1f)
            at += 1
            continue
        if l < 192:
            end = at + 1 + l
        elif l < 224:
            if at + 1 >= len(data):
                return None
            end = at + 2 + ((l - 192) << 8) + data[at + 1] + 192
        else:
            if at + 5 > len(data):
                return None
            end = at + 5 + int.from_bytes(data[at + 1:at + 5], 'big')
        if end > len(data):
            return None
        return end


def read_packet(data: bytes, offset: int = 0, position: int = 0) -> Tuple[Optional[RawPacket], int]:
    """Read a single packet starting at offset.

    Args:
        data: The whole encoded stream.
        offset: Where the packet header begins.
        position: Stream position to record on the packet.

    Returns:
        Tuple of (packet, next_offset). The packet is None at a clean end of
        the stream.

    Raises:
        FramingError: If the header is invalid or the stream is truncated.
        UnsupportedFeatureError: If the packet uses a partial body length.
    """
    if offset >= len(data):
        return None, offset

    hdr = data[offset]
    if not hdr & 0x80:
        raise FramingError('Invalid packet header 0x%02x' % hdr, offset=offset)

    at = offset + 1
    new_format = bool(hdr & 0x40)
    if new_format:
        tag = hdr & 0x3f
        if at >= len(data):
            raise FramingError('Truncated packet header', offset=offset)
        l = data[at]
        at += 1
        if l < 192:
            body_len = l
        elif l < 224:
            if at >= len(data):
                raise FramingError('Truncated packet header', offset=offset)
            body_len = ((l - 192) << 8) + data[at] + 192
            at += 1
        elif l == 255:
            if at + 4 > len(data):
                raise FramingError('Truncated packet header', offset=offset)
            body_len = int.from_bytes(data[at:at + 4], 'big')
            at += 4
        else:
            raise UnsupportedFeatureError('Partial body lengths are not supported (tag %d)' % tag,
                                          offset=offset, resume_offset=_partial_resume(data, l, at))
    else:
        tag = (hdr & 0x3f) >> 2
        length_type = hdr & 0x03
        if length_type == 3:
            raise UnsupportedFeatureError('Indeterminate body lengths are not supported (tag %d)' % tag,
                                          offset=offset)
        nbytes = (1, 2, 4)[length_type]
        if at + nbytes > len(data):
            raise FramingError('Truncated packet header', offset=offset)
        body_len = int.from_bytes(data[at:at + nbytes], 'big')
        at += nbytes

    end = at + body_len
    if end > len(data):
        raise FramingError('Truncated packet body (tag %d, want %d bytes, have %d)'
                           % (tag, body_len, len(data) - at), offset=offset)

    packet = RawPacket(tag, body_len, at - offset, data[offset:end], position=position, new_format=new_format)
    return packet, end


class PacketStream:
    """Lazy, restartable sequence of packets over an in-memory buffer.

    Each iteration starts again from the beginning of the buffer.

    Args:
        data: Binary keyring encoding.
        offset: Where reading starts.
    """

    data: bytes
    offset: int

    def __init__(self, data: bytes, offset: int = 0):
        self.data = bytes(data)
        self.offset = offset

    def __iter__(self) -> Iterator[RawPacket]:
        at = self.offset
        position = 0
        while True:
            packet, at = read_packet(self.data, at, position)
            if packet is None:
                return
            position += 1
            yield packet


def read_packets(data: bytes) -> List[RawPacket]:
    """Read every packet in data, failing on the first framing error."""
    return list(PacketStream(data))


def encode_packets(packets: List[RawPacket]) -> bytes:
    """Concatenate the verbatim bytes of packets."""
    return b''.join(packet.buf for packet in packets)
