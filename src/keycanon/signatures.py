# -*- coding: utf-8 -*-
#
# Copyright (C) 2021-2022 by The Linux Foundation
# SPDX-License-Identifier: MIT-0
#
import logging

from typing import Optional, List, Tuple

from keycanon.errors import ParseError
from keycanon.keys import KeyPacket, read_mpi, format_key_id, ALGO_RSA, ALGO_RSA_E, ALGO_RSA_S
from keycanon.packets import RawPacket, TAG_SIGNATURE, TAG_USER_ATTRIBUTE

logger: logging.Logger = logging.getLogger(__name__)

SIG_BINARY = 0x00
SIG_TEXT = 0x01
SIG_CERT_GENERIC = 0x10
SIG_CERT_PERSONA = 0x11
SIG_CERT_CASUAL = 0x12
SIG_CERT_POSITIVE = 0x13
SIG_SUBKEY_BINDING = 0x18
SIG_PRIMARY_KEY_BINDING = 0x19
SIG_DIRECT_KEY = 0x1f
SIG_KEY_REVOCATION = 0x20
SIG_SUBKEY_REVOCATION = 0x28
SIG_CERT_REVOCATION = 0x30

CERTIFICATION_TYPES = (SIG_CERT_GENERIC, SIG_CERT_PERSONA, SIG_CERT_CASUAL, SIG_CERT_POSITIVE)

SUB_CREATION_TIME = 2
SUB_SIG_EXPIRATION = 3
SUB_EXPORTABLE = 4
SUB_TRUST = 5
SUB_REGEX = 6
SUB_REVOCABLE = 7
SUB_KEY_EXPIRATION = 9
SUB_PREF_SYM = 11
SUB_REVOCATION_KEY = 12
SUB_ISSUER = 16
SUB_NOTATION = 20
SUB_PREF_HASH = 21
SUB_PREF_COMPRESSION = 22
SUB_KEYSERVER_PREFS = 23
SUB_PREF_KEYSERVER = 24
SUB_PRIMARY_UID = 25
SUB_POLICY_URI = 26
SUB_KEY_FLAGS = 27
SUB_SIGNER_UID = 28
SUB_REVOCATION_REASON = 29
SUB_FEATURES = 30
SUB_SIGNATURE_TARGET = 31
SUB_EMBEDDED_SIGNATURE = 32
SUB_ISSUER_FINGERPRINT = 33

# Subpackets we understand well enough to honour the critical bit
KNOWN_SUBPACKETS = (
    SUB_CREATION_TIME, SUB_SIG_EXPIRATION, SUB_EXPORTABLE, SUB_TRUST, SUB_REVOCABLE,
    SUB_KEY_EXPIRATION, SUB_PREF_SYM, SUB_REVOCATION_KEY, SUB_ISSUER, SUB_NOTATION,
    SUB_PREF_HASH, SUB_PREF_COMPRESSION, SUB_KEYSERVER_PREFS, SUB_PREF_KEYSERVER,
    SUB_PRIMARY_UID, SUB_POLICY_URI, SUB_KEY_FLAGS, SUB_SIGNER_UID, SUB_REVOCATION_REASON,
    SUB_FEATURES, SUB_SIGNATURE_TARGET, SUB_EMBEDDED_SIGNATURE, SUB_ISSUER_FINGERPRINT,
)

KEY_FLAG_CERTIFY = 0x01
KEY_FLAG_SIGN = 0x02
KEY_FLAG_ENCRYPT_COMMS = 0x04
KEY_FLAG_ENCRYPT_STORAGE = 0x08
KEY_FLAG_SPLIT = 0x10
KEY_FLAG_AUTHENTICATE = 0x20
KEY_FLAG_SHARED = 0x80
KEY_FLAG_ENCRYPT = KEY_FLAG_ENCRYPT_COMMS | KEY_FLAG_ENCRYPT_STORAGE

# Revocation reasons that do not imply key compromise
SOFT_REVOCATION_REASONS = (0x01, 0x03, 0x20)

SIG_TYPE_NAMES = {
    SIG_BINARY: 'binary',
    SIG_TEXT: 'text',
    SIG_CERT_GENERIC: 'generic-certification',
    SIG_CERT_PERSONA: 'persona-certification',
    SIG_CERT_CASUAL: 'casual-certification',
    SIG_CERT_POSITIVE: 'positive-certification',
    SIG_SUBKEY_BINDING: 'subkey-binding',
    SIG_PRIMARY_KEY_BINDING: 'primary-key-binding',
    SIG_DIRECT_KEY: 'direct-key',
    SIG_KEY_REVOCATION: 'key-revocation',
    SIG_SUBKEY_REVOCATION: 'subkey-revocation',
    SIG_CERT_REVOCATION: 'certification-revocation',
}


def sig_type_name(sig_type: int) -> str:
    return SIG_TYPE_NAMES.get(sig_type, '0x%02x' % sig_type)


class Subpacket:
    """A signature subpacket.

    Attributes:
        type: Subpacket type with the critical bit cleared.
        critical: Whether the critical bit was set.
        hashed: Whether it came from the hashed area.
        data: Subpacket payload.
    """

    type: int
    critical: bool
    hashed: bool
    data: bytes

    def __init__(self, sptype: int, critical: bool, hashed: bool, data: bytes):
        self.type = sptype
        self.critical = critical
        self.hashed = hashed
        self.data = data

    def __repr__(self) -> str:
        return 'Subpacket(%d%s%s, %d bytes)' % (self.type, ', critical' if self.critical else '',
                                               ', hashed' if self.hashed else '', len(self.data))


def parse_subpackets(area: bytes, hashed: bool) -> List[Subpacket]:
    """Split a subpacket area into subpackets.

    Raises:
        ParseError: On malformed lengths.
    """
    subpackets: List[Subpacket] = list()
    at = 0
    while at < len(area):
        l = area[at]
        if l < 192:
            splen = l
            at += 1
        elif l < 255:
            if at + 2 > len(area):
                raise ParseError('Truncated subpacket length')
            splen = ((l - 192) << 8) + area[at + 1] + 192
            at += 2
        else:
            if at + 5 > len(area):
                raise ParseError('Truncated subpacket length')
            splen = int.from_bytes(area[at + 1:at + 5], 'big')
            at += 5
        if splen == 0 or at + splen > len(area):
            raise ParseError('Invalid subpacket length')
        sptype = area[at]
        subpackets.append(Subpacket(sptype & 0x7f, bool(sptype & 0x80), hashed, area[at + 1:at + splen]))
        at += splen
    return subpackets


def _mpi_count(pub_algo: int) -> int:
    if pub_algo in (ALGO_RSA, ALGO_RSA_E, ALGO_RSA_S):
        return 1
    return 2


class Signature:
    """Parsed v3 or v4 signature packet.

    Only subpackets from the hashed area are trusted for anything that affects
    validity (flags, expiration, primary marker). Issuer information is
    accepted from either area since it is only a hint for picking the key to
    verify with.

    Args:
        body: Signature packet body.
        raw: The packet the body came from, if any. Embedded signatures have
            no packet of their own.
    """

    raw: Optional[RawPacket]
    body: bytes
    version: int
    sig_type: int
    pub_algo: int
    hash_algo: int
    hashed_portion: bytes
    subpackets: List[Subpacket]
    left16: bytes
    mpis: Tuple[int, ...]
    creation_time: int
    issuer: Optional[int]

    def __init__(self, body: bytes, raw: Optional[RawPacket] = None):
        self.raw = raw
        self.body = body
        self.subpackets = list()
        self.issuer = None
        if not body:
            raise ParseError('Empty signature packet')
        self.version = body[0]
        if self.version in (2, 3):
            at = self._parse_v3(body)
        elif self.version == 4:
            at = self._parse_v4(body)
        else:
            raise ParseError('Unsupported signature version %d' % self.version)

        if at + 2 > len(body):
            raise ParseError('Truncated signature')
        self.left16 = body[at:at + 2]
        at += 2
        mpis: List[int] = list()
        for _ in range(_mpi_count(self.pub_algo)):
            value, at = read_mpi(body, at)
            mpis.append(value)
        if at != len(body):
            raise ParseError('Trailing data after signature MPIs')
        self.mpis = tuple(mpis)

    @classmethod
    def from_packet(cls, packet: RawPacket) -> 'Signature':
        if packet.tag != TAG_SIGNATURE:
            raise ParseError('Not a signature packet: %s' % packet.tag_name)
        return cls(packet.body, raw=packet)

    def _parse_v3(self, body: bytes) -> int:
        if len(body) < 19 or body[1] != 5:
            raise ParseError('Malformed v3 signature')
        self.sig_type = body[2]
        self.creation_time = int.from_bytes(body[3:7], 'big')
        self.issuer = int.from_bytes(body[7:15], 'big')
        self.pub_algo = body[15]
        self.hash_algo = body[16]
        self.hashed_portion = body[2:7]
        return 17

    def _parse_v4(self, body: bytes) -> int:
        if len(body) < 10:
            raise ParseError('Malformed v4 signature')
        self.sig_type = body[1]
        self.pub_algo = body[2]
        self.hash_algo = body[3]
        hlen = int.from_bytes(body[4:6], 'big')
        at = 6 + hlen
        if at + 2 > len(body):
            raise ParseError('Truncated hashed subpacket area')
        self.hashed_portion = body[:at]
        self.subpackets = parse_subpackets(body[6:at], hashed=True)
        ulen = int.from_bytes(body[at:at + 2], 'big')
        at += 2
        if at + ulen > len(body):
            raise ParseError('Truncated unhashed subpacket area')
        self.subpackets += parse_subpackets(body[at:at + ulen], hashed=False)
        at += ulen

        for sp in self.subpackets:
            if sp.hashed and sp.critical and sp.type not in KNOWN_SUBPACKETS:
                raise ParseError('Unknown critical subpacket %d' % sp.type)

        created = self.get_subpacket(SUB_CREATION_TIME)
        if created is None or len(created) != 4:
            raise ParseError('Signature has no hashed creation time')
        self.creation_time = int.from_bytes(created, 'big')

        issuer = self.get_subpacket(SUB_ISSUER, hashed_only=False)
        if issuer is not None and len(issuer) == 8:
            self.issuer = int.from_bytes(issuer, 'big')
        else:
            issuer_fpr = self.get_subpacket(SUB_ISSUER_FINGERPRINT, hashed_only=False)
            if issuer_fpr is not None and len(issuer_fpr) == 21 and issuer_fpr[0] == 4:
                self.issuer = int.from_bytes(issuer_fpr[-8:], 'big')
        return at

    def get_subpacket(self, sptype: int, hashed_only: bool = True) -> Optional[bytes]:
        """Return the data of the first matching subpacket, or None.

        Hashed subpackets always take precedence over unhashed ones.
        """
        for sp in self.subpackets:
            if sp.type == sptype and sp.hashed:
                return sp.data
        if hashed_only:
            return None
        for sp in self.subpackets:
            if sp.type == sptype:
                return sp.data
        return None

    @property
    def type_name(self) -> str:
        return sig_type_name(self.sig_type)

    @property
    def issuer_hex(self) -> str:
        if self.issuer is None:
            return '(unknown)'
        return format_key_id(self.issuer)

    @property
    def is_local(self) -> bool:
        exportable = self.get_subpacket(SUB_EXPORTABLE)
        return exportable is not None and len(exportable) == 1 and exportable[0] == 0

    @property
    def expiration_seconds(self) -> Optional[int]:
        data = self.get_subpacket(SUB_SIG_EXPIRATION)
        if data is None or len(data) != 4:
            return None
        return int.from_bytes(data, 'big') or None

    def is_expired(self, now: int) -> bool:
        secs = self.expiration_seconds
        return secs is not None and self.creation_time + secs <= now

    @property
    def key_expiration_seconds(self) -> Optional[int]:
        data = self.get_subpacket(SUB_KEY_EXPIRATION)
        if data is None or len(data) != 4:
            return None
        return int.from_bytes(data, 'big') or None

    @property
    def key_flags(self) -> Optional[int]:
        data = self.get_subpacket(SUB_KEY_FLAGS)
        if not data:
            return None
        return data[0]

    @property
    def is_primary_uid(self) -> bool:
        data = self.get_subpacket(SUB_PRIMARY_UID)
        return bool(data) and data[0] != 0

    @property
    def revocation_reason(self) -> Optional[Tuple[int, str]]:
        data = self.get_subpacket(SUB_REVOCATION_REASON)
        if not data:
            return None
        return data[0], data[1:].decode('utf-8', errors='replace')

    @property
    def is_hard_revocation(self) -> bool:
        reason = self.revocation_reason
        return reason is None or reason[0] not in SOFT_REVOCATION_REASONS

    def _preferences(self, sptype: int) -> Tuple[int, ...]:
        data = self.get_subpacket(sptype)
        if data is None:
            return tuple()
        return tuple(data)

    @property
    def preferred_symmetric(self) -> Tuple[int, ...]:
        return self._preferences(SUB_PREF_SYM)

    @property
    def preferred_hashes(self) -> Tuple[int, ...]:
        return self._preferences(SUB_PREF_HASH)

    @property
    def preferred_compression(self) -> Tuple[int, ...]:
        return self._preferences(SUB_PREF_COMPRESSION)

    def embedded_signatures(self) -> List['Signature']:
        """Parse embedded signatures (back-signatures) from either area.

        Raises:
            ParseError: If an embedded signature is malformed.
        """
        embedded: List[Signature] = list()
        for sp in self.subpackets:
            if sp.type == SUB_EMBEDDED_SIGNATURE:
                embedded.append(Signature(sp.data))
        return embedded

    def hashed_trailer(self) -> bytes:
        if self.version == 4:
            return self.hashed_portion + b'\x04\xff' + len(self.hashed_portion).to_bytes(4, 'big')
        return self.hashed_portion

    def sort_key(self) -> Tuple[int, bytes]:
        """Newest first; equal creation times fall back to raw bytes."""
        return -self.creation_time, self.raw.buf if self.raw is not None else self.body

    def __repr__(self) -> str:
        return 'Signature(%s, by %s, at %d)' % (self.type_name, self.issuer_hex, self.creation_time)


def user_id_material(sig: Signature, uid_packet: RawPacket) -> bytes:
    body = uid_packet.body
    if sig.version != 4:
        return body
    prefix = b'\xd1' if uid_packet.tag == TAG_USER_ATTRIBUTE else b'\xb4'
    return prefix + len(body).to_bytes(4, 'big') + body


def certification_data(sig: Signature, master: KeyPacket, uid_packet: RawPacket) -> bytes:
    """Build the data covered by a user id or user attribute certification."""
    return master.hashed_material() + user_id_material(sig, uid_packet) + sig.hashed_trailer()


def key_signature_data(sig: Signature, master: KeyPacket) -> bytes:
    """Build the data covered by a direct-key signature or key revocation."""
    return master.hashed_material() + sig.hashed_trailer()


def subkey_signature_data(sig: Signature, master: KeyPacket, subkey: KeyPacket) -> bytes:
    """Build the data covered by binding, back-signature and subkey revocation."""
    return master.hashed_material() + subkey.hashed_material() + sig.hashed_trailer()
