# -*- coding: utf-8 -*-
#
# Copyright (C) 2021-2022 by The Linux Foundation
# SPDX-License-Identifier: MIT-0
#
import base64
import binascii
import logging
import re

from typing import List

from keycanon.errors import FramingError

logger: logging.Logger = logging.getLogger(__name__)

CRC24_INIT = 0xB704CE
CRC24_POLY = 0x1864CFB

ARMOR_BEGIN = re.compile(rb'^-----BEGIN PGP ([A-Z ,0-9/]+)-----\s*$')
ARMOR_END = re.compile(rb'^-----END PGP ([A-Z ,0-9/]+)-----\s*$')


def crc24(data: bytes) -> int:
    crc = CRC24_INIT
    for octet in data:
        crc ^= octet << 16
        for _ in range(8):
            crc <<= 1
            if crc & 0x1000000:
                crc ^= CRC24_POLY
    return crc & 0xFFFFFF


def is_armored(data: bytes) -> bool:
    """Check whether data looks like an ASCII-armored block."""
    return b'-----BEGIN PGP ' in data[:4096]


def dearmor(data: bytes) -> bytes:
    """Decode every armored block in data and concatenate the results.

    Args:
        data: ASCII-armored input, possibly holding several blocks.

    Returns:
        The binary packet stream.

    Raises:
        FramingError: If a block is malformed or its checksum does not match.
    """
    blocks: List[bytes] = list()
    inblock = False
    inheaders = False
    b64lines: List[bytes] = list()
    checksum = None
    for line in data.splitlines():
        line = line.strip()
        if not inblock:
            if ARMOR_BEGIN.match(line):
                inblock = True
                inheaders = True
                b64lines = list()
                checksum = None
            continue
        if ARMOR_END.match(line):
            try:
                decoded = base64.b64decode(b''.join(b64lines), validate=True)
            except binascii.Error as ex:
                raise FramingError('Invalid base64 in armored block: %s' % ex)
            if checksum is not None and crc24(decoded) != checksum:
                raise FramingError('Armor checksum mismatch')
            blocks.append(decoded)
            inblock = False
            continue
        if inheaders:
            # Armor headers end at the first blank line
            if not line:
                inheaders = False
                continue
            if b':' in line:
                logger.debug('Armor header: %s', line.decode(errors='replace'))
                continue
            inheaders = False
        if line.startswith(b'=') and len(line) == 5:
            try:
                checksum = int.from_bytes(base64.b64decode(line[1:]), 'big')
            except binascii.Error:
                raise FramingError('Invalid armor checksum line')
            continue
        if line:
            b64lines.append(line)

    if inblock:
        raise FramingError('Armored block is not terminated')
    if not blocks:
        raise FramingError('No armored blocks found')
    return b''.join(blocks)


def decode_keyring_data(data: bytes) -> bytes:
    """Return the binary form of data, dearmoring it first if necessary."""
    if data and not data[0] & 0x80 and is_armored(data):
        return dearmor(data)
    return data
