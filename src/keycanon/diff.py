# -*- coding: utf-8 -*-
#
# Copyright (C) 2021-2022 by The Linux Foundation
# SPDX-License-Identifier: MIT-0
#
import logging

from typing import List, Tuple

from keycanon.packets import RawPacket, read_packets

logger: logging.Logger = logging.getLogger(__name__)


def _only_in(packets: List[RawPacket], other: List[RawPacket]) -> List[RawPacket]:
    exclude = set(packet.buf for packet in other)
    found: List[RawPacket] = list()
    for packet in packets:
        if packet.buf in exclude:
            continue
        # Report each distinct packet once, at its first position
        exclude.add(packet.buf)
        found.append(packet)
    return found


def diff_packets(a: List[RawPacket], b: List[RawPacket]) -> Tuple[List[RawPacket], List[RawPacket]]:
    """Compare two packet lists by raw bytes, ignoring position."""
    only_a = sorted(_only_in(a, b), key=lambda p: p.position)
    only_b = sorted(_only_in(b, a), key=lambda p: p.position)
    return only_a, only_b


def diff_keyrings(a: bytes, b: bytes) -> Tuple[List[RawPacket], List[RawPacket]]:
    """Find packets present in only one of two binary keyring encodings.

    Args:
        a: First binary encoding.
        b: Second binary encoding.

    Returns:
        Tuple of (packets only in a, packets only in b), each ordered by
        position in its own stream.

    Raises:
        FramingError: If either encoding cannot be read.
    """
    only_a, only_b = diff_packets(read_packets(a), read_packets(b))
    logger.debug('diff: %d packets only in first, %d only in second', len(only_a), len(only_b))
    return only_a, only_b
