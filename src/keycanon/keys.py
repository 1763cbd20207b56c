# -*- coding: utf-8 -*-
#
# Copyright (C) 2021-2022 by The Linux Foundation
# SPDX-License-Identifier: MIT-0
#
import enum
import hashlib
import logging

from typing import Optional, Tuple, List, Dict

from keycanon.errors import ParseError
from keycanon.packets import RawPacket, MASTER_KEY_TAGS, SUBKEY_TAGS, SECRET_TAGS

logger: logging.Logger = logging.getLogger(__name__)

ALGO_RSA = 1
ALGO_RSA_E = 2
ALGO_RSA_S = 3
ALGO_ELGAMAL = 16
ALGO_DSA = 17
ALGO_ECDH = 18
ALGO_ECDSA = 19
ALGO_EDDSA = 22

ALGO_NAMES = {
    ALGO_RSA: 'rsa',
    ALGO_RSA_E: 'rsa-e',
    ALGO_RSA_S: 'rsa-s',
    ALGO_ELGAMAL: 'elgamal',
    ALGO_DSA: 'dsa',
    ALGO_ECDH: 'ecdh',
    ALGO_ECDSA: 'ecdsa',
    ALGO_EDDSA: 'eddsa',
}

SIGNING_ALGOS = (ALGO_RSA, ALGO_RSA_S, ALGO_DSA, ALGO_ECDSA, ALGO_EDDSA)
ENCRYPTION_ALGOS = (ALGO_RSA, ALGO_RSA_E, ALGO_ELGAMAL, ALGO_ECDH)

OID_NIST_P256 = bytes.fromhex('2a8648ce3d030107')
OID_NIST_P384 = bytes.fromhex('2b81040022')
OID_NIST_P521 = bytes.fromhex('2b81040023')
OID_ED25519 = bytes.fromhex('2b06010401da470f01')
OID_CURVE25519 = bytes.fromhex('2b060104019755010501')

CURVE_NAMES = {
    OID_NIST_P256: 'nistp256',
    OID_NIST_P384: 'nistp384',
    OID_NIST_P521: 'nistp521',
    OID_ED25519: 'ed25519',
    OID_CURVE25519: 'curve25519',
}

# S2K usage and specifier values found in secret key packets
S2K_USAGE_NONE = 0
S2K_USAGE_SHA1 = 254
S2K_USAGE_CHECKSUM = 255
S2K_SIMPLE = 0
S2K_SALTED = 1
S2K_ITERATED = 3
S2K_GNU = 101
GNU_MODE_DUMMY = 1
GNU_MODE_DIVERT = 2


class SecretKeyType(enum.IntEnum):
    """Classification of the secret material attached to a key packet."""
    UNAVAILABLE = 0
    GNU_DUMMY = 1
    PASSPHRASE = 2
    PASSPHRASE_EMPTY = 3
    DIVERT_TO_CARD = 4

    @property
    def fidelity(self) -> int:
        """How much usable secret material this represents, higher is better."""
        return _FIDELITY[self]

    @property
    def is_usable(self) -> bool:
        return self not in (SecretKeyType.UNAVAILABLE, SecretKeyType.GNU_DUMMY)


_FIDELITY: Dict[SecretKeyType, int] = {
    SecretKeyType.UNAVAILABLE: 0,
    SecretKeyType.GNU_DUMMY: 1,
    SecretKeyType.DIVERT_TO_CARD: 2,
    SecretKeyType.PASSPHRASE: 3,
    SecretKeyType.PASSPHRASE_EMPTY: 3,
}


def read_mpi(buf: bytes, at: int) -> Tuple[int, int]:
    """Read a multiprecision integer.

    Returns:
        Tuple of (value, offset past the MPI).

    Raises:
        ParseError: If the MPI runs past the end of buf.
    """
    if at + 2 > len(buf):
        raise ParseError('Truncated MPI header')
    bits = int.from_bytes(buf[at:at + 2], 'big')
    nbytes = (bits + 7) // 8
    at += 2
    if at + nbytes > len(buf):
        raise ParseError('Truncated MPI body')
    return int.from_bytes(buf[at:at + nbytes], 'big'), at + nbytes


def _read_oid(buf: bytes, at: int) -> Tuple[bytes, int]:
    if at >= len(buf):
        raise ParseError('Truncated curve OID')
    oidlen = buf[at]
    if oidlen in (0, 0xff) or at + 1 + oidlen > len(buf):
        raise ParseError('Invalid curve OID length')
    return buf[at + 1:at + 1 + oidlen], at + 1 + oidlen


def format_key_id(key_id: int) -> str:
    return '%016X' % key_id


def classify_secret(body: bytes, at: int) -> SecretKeyType:
    """Classify the secret part of a secret key packet body starting at at."""
    if at >= len(body):
        raise ParseError('Missing secret key material')
    usage = body[at]
    if usage == S2K_USAGE_NONE:
        return SecretKeyType.PASSPHRASE_EMPTY
    if usage not in (S2K_USAGE_SHA1, S2K_USAGE_CHECKSUM):
        # Legacy form: usage octet is the symmetric algorithm itself
        return SecretKeyType.PASSPHRASE
    if at + 3 > len(body):
        raise ParseError('Truncated S2K specifier')
    s2k_type = body[at + 2]
    if s2k_type != S2K_GNU:
        if s2k_type not in (S2K_SIMPLE, S2K_SALTED, S2K_ITERATED):
            raise ParseError('Unknown S2K type %d' % s2k_type)
        return SecretKeyType.PASSPHRASE
    # usage, symalgo, type, hash, 'GNU', mode
    ext = body[at + 4:at + 8]
    if len(ext) < 4 or ext[:3] != b'GNU':
        raise ParseError('Invalid GNU S2K extension')
    mode = ext[3]
    if mode == GNU_MODE_DUMMY:
        return SecretKeyType.GNU_DUMMY
    if mode == GNU_MODE_DIVERT:
        return SecretKeyType.DIVERT_TO_CARD
    raise ParseError('Unknown GNU S2K mode %d' % mode)


class KeyPacket:
    """Parsed public or secret (sub)key packet.

    Only the public key material is interpreted; for secret packets the
    secret part is classified but never decrypted.

    Args:
        packet: The raw key packet.

    Attributes:
        raw: The packet this key was parsed from.
        version: Key packet version.
        created: Creation time, seconds since epoch.
        algorithm: Public key algorithm id.
        public_body: The public portion of the body, used for hashing.
        material: Algorithm-specific public parameters.
        curve: Curve OID for elliptic curve keys.
        fingerprint: v4 fingerprint bytes.
        key_id: Low 64 bits of the fingerprint.
        secret_type: Secret material classification.
    """

    raw: RawPacket
    version: int
    created: int
    algorithm: int
    public_body: bytes
    material: Tuple[int, ...]
    curve: Optional[bytes]
    fingerprint: bytes
    key_id: int
    secret_type: SecretKeyType

    def __init__(self, packet: RawPacket):
        if packet.tag not in MASTER_KEY_TAGS and packet.tag not in SUBKEY_TAGS:
            raise ParseError('Not a key packet: %s' % packet.tag_name)
        self.raw = packet
        self.curve = None
        self.material = tuple()
        body = packet.body
        if len(body) < 6:
            raise ParseError('Key packet too short')
        self.version = body[0]
        if self.version != 4:
            raise ParseError('Unsupported key packet version %d' % self.version)
        self.created = int.from_bytes(body[1:5], 'big')
        self.algorithm = body[5]
        end = self._parse_material(body, 6)
        if end is None:
            # Unknown algorithm, the whole body is public
            if self.is_secret:
                raise ParseError('Cannot split secret key with unknown algorithm %d' % self.algorithm)
            end = len(body)
        self.public_body = body[:end]
        if self.is_secret:
            self.secret_type = classify_secret(body, end)
        else:
            if end != len(body):
                raise ParseError('Trailing data in public key packet')
            self.secret_type = SecretKeyType.UNAVAILABLE
        self.fingerprint = hashlib.sha1(self.hashed_material()).digest()
        self.key_id = int.from_bytes(self.fingerprint[-8:], 'big')

    def _parse_material(self, body: bytes, at: int) -> Optional[int]:
        values: List[int] = list()
        if self.algorithm in (ALGO_RSA, ALGO_RSA_E, ALGO_RSA_S):
            count = 2
        elif self.algorithm == ALGO_DSA:
            count = 4
        elif self.algorithm == ALGO_ELGAMAL:
            count = 3
        elif self.algorithm in (ALGO_ECDSA, ALGO_EDDSA, ALGO_ECDH):
            self.curve, at = _read_oid(body, at)
            count = 1
        else:
            return None
        for _ in range(count):
            value, at = read_mpi(body, at)
            values.append(value)
        if self.algorithm == ALGO_ECDH:
            # KDF parameters: length, reserved, hash, cipher
            if at >= len(body) or at + 1 + body[at] > len(body) or body[at] < 3:
                raise ParseError('Invalid ECDH KDF parameters')
            at += 1 + body[at]
        self.material = tuple(values)
        return at

    @property
    def is_secret(self) -> bool:
        return self.raw.tag in SECRET_TAGS

    @property
    def is_master(self) -> bool:
        return self.raw.tag in MASTER_KEY_TAGS

    @property
    def can_sign(self) -> bool:
        return self.algorithm in SIGNING_ALGOS

    @property
    def can_encrypt(self) -> bool:
        return self.algorithm in ENCRYPTION_ALGOS

    @property
    def algorithm_name(self) -> str:
        return ALGO_NAMES.get(self.algorithm, 'algo-%d' % self.algorithm)

    @property
    def fingerprint_hex(self) -> str:
        return self.fingerprint.hex().upper()

    @property
    def key_id_hex(self) -> str:
        return format_key_id(self.key_id)

    def hashed_material(self) -> bytes:
        """Return the key as it is fed into fingerprints and signature hashes."""
        return b'\x99' + len(self.public_body).to_bytes(2, 'big') + self.public_body

    def __repr__(self) -> str:
        return 'KeyPacket(%s, %s, %s)' % (self.key_id_hex, self.algorithm_name, self.secret_type.name)
