# -*- coding: utf-8 -*-
#
# Copyright (C) 2021-2022 by The Linux Foundation
# SPDX-License-Identifier: MIT-0
#
import logging

from typing import Optional, List, Tuple

from keycanon.errors import StructuralError
from keycanon.keys import KeyPacket, SecretKeyType, format_key_id
from keycanon.packets import (RawPacket, encode_packets, KIND_MASTER_KEY, KIND_SUBKEY, KIND_USER_ID,
                              KIND_USER_ATTRIBUTE, KIND_SIGNATURE, TAG_USER_ATTRIBUTE)
from keycanon.signatures import (Signature, KEY_FLAG_CERTIFY, KEY_FLAG_SIGN, KEY_FLAG_ENCRYPT,
                                 KEY_FLAG_AUTHENTICATE)

logger: logging.Logger = logging.getLogger(__name__)


class PacketGroup:
    """An owning packet and the signature packets that follow it."""

    owner: RawPacket
    signatures: List[RawPacket]

    def __init__(self, owner: RawPacket):
        self.owner = owner
        self.signatures = list()

    def __repr__(self) -> str:
        return 'PacketGroup(%r, %d signatures)' % (self.owner, len(self.signatures))


class UncachedKeyring:
    """Packets of one keyring partitioned by adjacency, nothing validated yet.

    Attributes:
        master: The master key packet.
        master_signatures: Signatures directly following the master key.
        identities: User ids and user attributes, in stream order.
        subkeys: Subkeys, in stream order.
        unknown: Packets of kinds a keyring cannot contain.
    """

    master: RawPacket
    master_signatures: List[RawPacket]
    identities: List[PacketGroup]
    subkeys: List[PacketGroup]
    unknown: List[RawPacket]

    def __init__(self, master: RawPacket):
        self.master = master
        self.master_signatures = list()
        self.identities = list()
        self.subkeys = list()
        self.unknown = list()

    @classmethod
    def from_packets(cls, packets: List[RawPacket]) -> 'UncachedKeyring':
        """Partition a packet sequence that holds exactly one keyring.

        Raises:
            StructuralError: If the sequence does not start with a master key
                or holds more than one.
        """
        if not packets:
            raise StructuralError('Empty keyring')
        if packets[0].kind != KIND_MASTER_KEY:
            raise StructuralError('Keyring does not start with a master key (found %s)' % packets[0].tag_name)
        tree = cls(packets[0])
        current: Optional[PacketGroup] = None
        for packet in packets[1:]:
            kind = packet.kind
            if kind == KIND_SIGNATURE:
                if current is None:
                    tree.master_signatures.append(packet)
                else:
                    current.signatures.append(packet)
            elif kind in (KIND_USER_ID, KIND_USER_ATTRIBUTE):
                current = PacketGroup(packet)
                tree.identities.append(current)
            elif kind == KIND_SUBKEY:
                current = PacketGroup(packet)
                tree.subkeys.append(current)
            elif kind == KIND_MASTER_KEY:
                raise StructuralError('Second master key at position %d' % packet.position)
            else:
                tree.unknown.append(packet)
        return tree


class CanonicalUserId:
    """A user id or user attribute that survived canonicalization.

    Attributes:
        packet: The user id or user attribute packet.
        self_cert: The authoritative self-certification.
        revocation: The authoritative revocation, if any.
        rank: Position among identities of the same kind, 0 is first.
        primary: Whether this is the primary user id.
        expired: Whether the self-certification has expired.
    """

    packet: RawPacket
    self_cert: Signature
    revocation: Optional[Signature]
    rank: int
    primary: bool
    expired: bool

    def __init__(self, packet: RawPacket, self_cert: Signature, revocation: Optional[Signature],
                 rank: int, primary: bool, expired: bool):
        self.packet = packet
        self.self_cert = self_cert
        self.revocation = revocation
        self.rank = rank
        self.primary = primary
        self.expired = expired

    @property
    def is_attribute(self) -> bool:
        return self.packet.tag == TAG_USER_ATTRIBUTE

    @property
    def revoked(self) -> bool:
        return self.revocation is not None

    @property
    def text(self) -> str:
        if self.is_attribute:
            return '[user attribute, %d bytes]' % self.packet.length
        return self.packet.body.decode('utf-8', errors='replace')

    def packets(self) -> List[RawPacket]:
        packets = [self.packet, self.self_cert.raw]
        if self.revocation is not None:
            packets.append(self.revocation.raw)
        return packets

    def __repr__(self) -> str:
        return 'CanonicalUserId(%r, rank=%d%s)' % (self.text, self.rank, ', primary' if self.primary else '')


class CanonicalSubkey:
    """A subkey that survived canonicalization.

    Attributes:
        key: The parsed subkey packet.
        binding: The authoritative binding signature.
        revocation: The authoritative revocation, if any.
        flags: Capability flags after back-signature checks.
        expires: Expiration time, None if the subkey never expires.
        expired: Whether the subkey had expired at canonicalization time.
    """

    key: KeyPacket
    binding: Signature
    revocation: Optional[Signature]
    flags: int
    expires: Optional[int]
    expired: bool

    def __init__(self, key: KeyPacket, binding: Signature, revocation: Optional[Signature],
                 flags: int, expires: Optional[int], expired: bool):
        self.key = key
        self.binding = binding
        self.revocation = revocation
        self.flags = flags
        self.expires = expires
        self.expired = expired

    @property
    def revoked(self) -> bool:
        return self.revocation is not None

    @property
    def key_id(self) -> int:
        return self.key.key_id

    @property
    def can_certify(self) -> bool:
        return bool(self.flags & KEY_FLAG_CERTIFY)

    @property
    def can_sign(self) -> bool:
        return bool(self.flags & KEY_FLAG_SIGN)

    @property
    def can_encrypt(self) -> bool:
        return bool(self.flags & KEY_FLAG_ENCRYPT)

    @property
    def can_authenticate(self) -> bool:
        return bool(self.flags & KEY_FLAG_AUTHENTICATE)

    @property
    def is_usable(self) -> bool:
        return not self.revoked and not self.expired

    def packets(self) -> List[RawPacket]:
        packets = [self.key.raw, self.binding.raw]
        if self.revocation is not None:
            packets.append(self.revocation.raw)
        return packets

    def __repr__(self) -> str:
        return 'CanonicalSubkey(%s, flags=0x%02x)' % (self.key.key_id_hex, self.flags)


class CanonicalKeyring:
    """Validated keyring. Instances are never modified once built.

    Attributes:
        master: The parsed master key packet.
        revocation: Authoritative key revocation, if any.
        direct_signature: Authoritative direct-key signature, if any.
        user_ids: User ids in rank order.
        user_attributes: User attributes in rank order.
        subkeys: Subkeys ordered by creation time.
        expires: Master key expiration time, if any.
        expired: Whether the master key had expired at canonicalization time.
    """

    master: KeyPacket
    revocation: Optional[Signature]
    direct_signature: Optional[Signature]
    user_ids: Tuple[CanonicalUserId, ...]
    user_attributes: Tuple[CanonicalUserId, ...]
    subkeys: Tuple[CanonicalSubkey, ...]
    expires: Optional[int]
    expired: bool

    def __init__(self, master: KeyPacket, revocation: Optional[Signature], direct_signature: Optional[Signature],
                 user_ids: List[CanonicalUserId], user_attributes: List[CanonicalUserId],
                 subkeys: List[CanonicalSubkey], expires: Optional[int] = None, expired: bool = False):
        self.master = master
        self.revocation = revocation
        self.direct_signature = direct_signature
        self.user_ids = tuple(user_ids)
        self.user_attributes = tuple(user_attributes)
        self.subkeys = tuple(subkeys)
        self.expires = expires
        self.expired = expired
        self._encoded: Optional[bytes] = None

    @property
    def fingerprint(self) -> bytes:
        return self.master.fingerprint

    @property
    def fingerprint_hex(self) -> str:
        return self.master.fingerprint_hex

    @property
    def key_id(self) -> int:
        return self.master.key_id

    @property
    def key_id_hex(self) -> str:
        return format_key_id(self.master.key_id)

    @property
    def is_secret(self) -> bool:
        return self.master.is_secret

    @property
    def revoked(self) -> bool:
        return self.revocation is not None

    @property
    def hard_revoked(self) -> bool:
        return self.revocation is not None and self.revocation.is_hard_revocation

    @property
    def primary_user_id(self) -> Optional[str]:
        if not self.user_ids:
            return None
        return self.user_ids[0].text

    def master_signature_packets(self) -> List[RawPacket]:
        packets: List[RawPacket] = list()
        if self.revocation is not None:
            packets.append(self.revocation.raw)
        if self.direct_signature is not None:
            packets.append(self.direct_signature.raw)
        return packets

    def packets(self) -> List[RawPacket]:
        """Return every packet in canonical order."""
        packets = [self.master.raw] + self.master_signature_packets()
        for uid in self.user_ids + self.user_attributes:
            packets += uid.packets()
        for subkey in self.subkeys:
            packets += subkey.packets()
        return packets

    def encode(self) -> bytes:
        if self._encoded is None:
            self._encoded = encode_packets(self.packets())
        return self._encoded

    def shape(self) -> List[bytes]:
        """Fingerprints of master key and subkeys, in order."""
        return [self.master.fingerprint] + [subkey.key.fingerprint for subkey in self.subkeys]

    def secret_types(self) -> List[Tuple[int, SecretKeyType]]:
        types = [(self.master.key_id, self.master.secret_type)]
        for subkey in self.subkeys:
            types.append((subkey.key_id, subkey.key.secret_type))
        return types

    def available_subkeys(self) -> List[int]:
        """Key ids whose secret material is usable."""
        available: List[int] = list()
        for key_id, secret_type in self.secret_types():
            if secret_type.is_usable:
                available.append(key_id)
        return available

    def get_subkey(self, key_id: int) -> Optional[CanonicalSubkey]:
        for subkey in self.subkeys:
            if subkey.key_id == key_id:
                return subkey
        return None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CanonicalKeyring):
            return NotImplemented
        return self.encode() == other.encode()

    def __hash__(self) -> int:
        return hash(self.encode())

    def __repr__(self) -> str:
        return 'CanonicalKeyring(%s, %s, %d subkeys)' % (self.key_id_hex, 'secret' if self.is_secret else 'public',
                                                          len(self.subkeys))
