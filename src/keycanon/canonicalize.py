# -*- coding: utf-8 -*-
#
# Copyright (C) 2021-2022 by The Linux Foundation
# SPDX-License-Identifier: MIT-0
#
"""Keyring canonicalization.

Reduces the packets of one keyring to the subset that is authoritative:
every signature kept has been verified against a key of the same keyring,
only the newest self-certification, binding and revocation of each element
survives, and the result is laid out in a fixed order so that the same input
always encodes to the same bytes.

The current time is always passed in by the caller. It is used to reject
signatures created in the future and to flag expired elements.
"""
import logging

from typing import Optional, List, Tuple, Dict, Union, Callable, Any

from keycanon.crypto import verify
from keycanon.errors import ParseError, CryptoError, FramingError, StructuralError
from keycanon.keyring import (UncachedKeyring, PacketGroup, CanonicalKeyring, CanonicalUserId,
                              CanonicalSubkey)
from keycanon.keys import KeyPacket, ALGO_NAMES
from keycanon.oplog import LogLevel, LogType, OperationLog, OperationResult, ResultStatus, status_from_log
from keycanon.packets import RawPacket, read_packets, SECRET_TAGS, TAG_USER_ATTRIBUTE
from keycanon.signatures import (Signature, certification_data, key_signature_data, subkey_signature_data,
                                 CERTIFICATION_TYPES, SIG_CERT_REVOCATION, SIG_DIRECT_KEY, SIG_KEY_REVOCATION,
                                 SIG_SUBKEY_BINDING, SIG_SUBKEY_REVOCATION, SIG_PRIMARY_KEY_BINDING,
                                 KEY_FLAG_SIGN, KEY_FLAG_ENCRYPT)

logger: logging.Logger = logging.getLogger(__name__)

KeySource = Union[bytes, List[RawPacket], UncachedKeyring]

# (packet, self-cert, revocation, expired)
_IdentityEntry = Tuple[RawPacket, Signature, Optional[Signature], bool]


class CanonicalizeResult(OperationResult):
    """Outcome of canonicalizing one keyring.

    Attributes:
        keyring: The canonical keyring, None on failure.
        bad: Number of signatures dropped as bad.
        redundant: Number of signatures dropped as redundant.
    """

    keyring: Optional[CanonicalKeyring]
    bad: int
    redundant: int

    def __init__(self, status: ResultStatus, log: OperationLog, keyring: Optional[CanonicalKeyring] = None,
                 bad: int = 0, redundant: int = 0):
        super().__init__(status, log)
        self.keyring = keyring
        self.bad = bad
        self.redundant = redundant


def default_flags(key: KeyPacket) -> int:
    flags = 0
    if key.can_sign:
        flags |= KEY_FLAG_SIGN
    if key.can_encrypt:
        flags |= KEY_FLAG_ENCRYPT
    return flags


class Canonicalizer:
    """Runs the canonicalization rules over a partitioned keyring.

    Args:
        now: Current time in seconds since epoch.
        log: Log to record every decision in.
    """

    now: int
    log: OperationLog
    bad: int
    redundant: int

    def __init__(self, now: int, log: OperationLog):
        self.now = now
        self.log = log
        self.bad = 0
        self.redundant = 0

    def _bad(self, ctx: str, reason: str, *params: Any, indent: int = 2) -> None:
        self.bad += 1
        self.log.add(LogLevel.WARN, LogType['KC_%s_%s' % (ctx, reason)], *params, indent=indent)

    def _drop_redundant(self, logtype: LogType, indent: int = 2) -> None:
        self.redundant += 1
        self.log.add(LogLevel.DEBUG, logtype, indent=indent)

    def _dedupe(self, packets: List[RawPacket], logtype: LogType) -> List[RawPacket]:
        seen = set()
        unique: List[RawPacket] = list()
        for packet in packets:
            if packet.buf in seen:
                self._drop_redundant(logtype)
                continue
            seen.add(packet.buf)
            unique.append(packet)
        return unique

    def _newest(self, sigs: List[Signature], logtype: LogType) -> Optional[Signature]:
        if not sigs:
            return None
        ordered = sorted(sigs, key=Signature.sort_key)
        for _ in ordered[1:]:
            self._drop_redundant(logtype)
        return ordered[0]

    def _check_signature(self, packet: RawPacket, ctx: str, allowed: Tuple[int, ...], signer: KeyPacket,
                         signed_data: Callable[[Signature], bytes]) -> Optional[Signature]:
        """Run policy checks then verify, return the signature if it is acceptable."""
        try:
            sig = Signature.from_packet(packet)
        except ParseError as ex:
            self._bad(ctx, 'BAD_ERR', str(ex))
            return None
        if sig.sig_type not in allowed:
            self._bad(ctx, 'BAD_TYPE', sig.type_name)
            return None
        if sig.creation_time > self.now:
            self._bad(ctx, 'BAD_TIME')
            return None
        if sig.is_local:
            self._bad(ctx, 'BAD_LOCAL')
            return None
        if sig.issuer != signer.key_id:
            if ctx == 'SUB':
                self._bad(ctx, 'BAD_KEYID', sig.issuer_hex)
            else:
                self.log.add(LogLevel.INFO, LogType['KC_%s_FOREIGN' % ctx], sig.issuer_hex, indent=2)
            return None
        try:
            valid = verify(sig, signed_data(sig), signer)
        except CryptoError as ex:
            self._bad(ctx, 'BAD_ERR', str(ex))
            return None
        if not valid:
            self._bad(ctx, 'BAD')
            return None
        return sig

    def _master(self, tree: UncachedKeyring) -> Optional[KeyPacket]:
        body = tree.master.body
        if body and body[0] in (2, 3):
            self.log.add(LogLevel.ERROR, LogType.KC_ERROR_V3, body[0])
            return None
        try:
            master = KeyPacket(tree.master)
        except ParseError as ex:
            self.log.add(LogLevel.ERROR, LogType.KC_ERROR_MASTER_BAD, str(ex))
            return None
        self.log.add(LogLevel.DEBUG, LogType.KC_SECRET if master.is_secret else LogType.KC_PUBLIC,
                     master.key_id_hex)
        if not master.can_sign:
            self.log.add(LogLevel.ERROR, LogType.KC_ERROR_MASTER_ALGO, master.algorithm_name)
            return None
        for group in tree.subkeys:
            if (group.owner.tag in SECRET_TAGS) != master.is_secret:
                self.log.add(LogLevel.ERROR, LogType.KC_ERROR_MIXED)
                return None
        self.log.add(LogLevel.DEBUG, LogType.KC_MASTER, master.fingerprint_hex, indent=1)
        return master

    def _master_signatures(self, master: KeyPacket,
                           packets: List[RawPacket]) -> Tuple[Optional[Signature], Optional[Signature]]:
        revocations: List[Signature] = list()
        directs: List[Signature] = list()
        for packet in self._dedupe(packets, LogType.KC_MASTER_SIG_DUP):
            sig = self._check_signature(packet, 'MASTER_SIG', (SIG_KEY_REVOCATION, SIG_DIRECT_KEY), master,
                                        lambda s: key_signature_data(s, master))
            if sig is None:
                continue
            if sig.sig_type == SIG_KEY_REVOCATION:
                revocations.append(sig)
            else:
                directs.append(sig)
        revocation = self._newest(revocations, LogType.KC_MASTER_SIG_DUP)
        direct = self._newest(directs, LogType.KC_MASTER_SIG_DUP)
        if revocation is not None:
            self.log.add(LogLevel.INFO, LogType.KC_REVOKED, indent=1)
        return revocation, direct

    def _identity(self, master: KeyPacket, members: List[PacketGroup]) -> Optional[_IdentityEntry]:
        packet = min((group.owner for group in members), key=lambda p: p.buf)
        if packet.tag == TAG_USER_ATTRIBUTE:
            self.log.add(LogLevel.DEBUG, LogType.KC_UATTR, '%d bytes' % packet.length, indent=1)
        else:
            try:
                text = packet.body.decode('utf-8')
            except UnicodeDecodeError:
                text = packet.body.decode('utf-8', errors='replace')
                self.log.add(LogLevel.WARN, LogType.KC_UID_WARN_ENCODING, indent=2)
            self.log.add(LogLevel.DEBUG, LogType.KC_UID, text, indent=1)
        if len(members) > 1:
            self.log.add(LogLevel.DEBUG, LogType.KC_UID_MERGED, indent=2)

        sig_packets = self._dedupe([sp for group in members for sp in group.signatures], LogType.KC_UID_CERT_DUP)
        certs: List[Signature] = list()
        revocations: List[Signature] = list()
        for sp in sig_packets:
            sig = self._check_signature(sp, 'UID', CERTIFICATION_TYPES + (SIG_CERT_REVOCATION,), master,
                                        lambda s: certification_data(s, master, packet))
            if sig is None:
                continue
            if sig.sig_type == SIG_CERT_REVOCATION:
                revocations.append(sig)
            else:
                certs.append(sig)

        cert = self._newest(certs, LogType.KC_UID_DUP)
        if cert is None:
            self.log.add(LogLevel.WARN, LogType.KC_UID_NO_CERT, indent=2)
            return None
        revocation = self._newest(revocations, LogType.KC_UID_REVOKE_DUP)
        if revocation is not None and revocation.creation_time < cert.creation_time:
            self._drop_redundant(LogType.KC_UID_REVOKE_OLD)
            revocation = None
        if revocation is not None:
            self.log.add(LogLevel.INFO, LogType.KC_UID_REVOKED, indent=2)
        return packet, cert, revocation, cert.is_expired(self.now)

    @staticmethod
    def _rank(entries: List[_IdentityEntry]) -> List[CanonicalUserId]:
        def claims_primary(entry: _IdentityEntry) -> bool:
            _, cert, revocation, expired = entry
            return cert.is_primary_uid and revocation is None and not expired

        def rank_key(entry: _IdentityEntry) -> Tuple[int, int, bytes]:
            # equal times fall back to the raw encoding
            return 0 if claims_primary(entry) else 1, -entry[1].creation_time, entry[0].buf

        ranked: List[CanonicalUserId] = list()
        for rank, entry in enumerate(sorted(entries, key=rank_key)):
            packet, cert, revocation, expired = entry
            primary = rank == 0 and claims_primary(entry)
            ranked.append(CanonicalUserId(packet, cert, revocation, rank, primary, expired))
        return ranked

    def _identities(self, master: KeyPacket,
                    tree: UncachedKeyring) -> Tuple[List[CanonicalUserId], List[CanonicalUserId]]:
        groups: Dict[Tuple[int, bytes], List[PacketGroup]] = dict()
        for group in tree.identities:
            groups.setdefault((group.owner.tag, group.owner.body), list()).append(group)

        uids: List[_IdentityEntry] = list()
        attrs: List[_IdentityEntry] = list()
        for (tag, _), members in groups.items():
            entry = self._identity(master, members)
            if entry is None:
                continue
            if tag == TAG_USER_ATTRIBUTE:
                attrs.append(entry)
            else:
                uids.append(entry)
        return self._rank(uids), self._rank(attrs)

    @staticmethod
    def _back_signature_problem(master: KeyPacket, subkey: KeyPacket,
                                binding: Signature) -> Optional[Tuple[LogType, Tuple[Any, ...]]]:
        try:
            embedded = [s for s in binding.embedded_signatures() if s.sig_type == SIG_PRIMARY_KEY_BINDING]
        except ParseError as ex:
            return LogType.KC_SUB_PRIMARY_BAD_ERR, (str(ex),)
        if not embedded:
            return LogType.KC_SUB_PRIMARY_NONE, tuple()
        for back in embedded:
            try:
                if verify(back, subkey_signature_data(back, master, subkey), subkey):
                    return None
            except CryptoError as ex:
                return LogType.KC_SUB_PRIMARY_BAD_ERR, (str(ex),)
        return LogType.KC_SUB_PRIMARY_BAD, tuple()

    def _subkey(self, master: KeyPacket, members: List[Tuple[KeyPacket, PacketGroup]]) -> Optional[CanonicalSubkey]:
        # Prefer the most usable secret material, then the smallest encoding
        key = sorted((k for k, _ in members), key=lambda k: (-k.secret_type.fidelity, k.raw.buf))[0]
        self.log.add(LogLevel.DEBUG, LogType.KC_SUB, key.key_id_hex, indent=1)
        if len(members) > 1:
            self.log.add(LogLevel.DEBUG, LogType.KC_SUB_MERGED, len(members), key.key_id_hex, indent=2)

        sig_packets = self._dedupe([sp for _, group in members for sp in group.signatures],
                                   LogType.KC_SUB_CERT_DUP)
        bindings: List[Signature] = list()
        revocations: List[Signature] = list()
        for sp in sig_packets:
            sig = self._check_signature(sp, 'SUB', (SIG_SUBKEY_BINDING, SIG_SUBKEY_REVOCATION), master,
                                        lambda s: subkey_signature_data(s, master, key))
            if sig is None:
                continue
            if sig.sig_type == SIG_SUBKEY_REVOCATION:
                revocations.append(sig)
            else:
                bindings.append(sig)

        binding = self._newest(bindings, LogType.KC_SUB_DUP)
        if binding is None:
            self.log.add(LogLevel.WARN, LogType.KC_SUB_NO_CERT, indent=2)
            return None

        flags = binding.key_flags
        if flags is None:
            flags = default_flags(key)
        if flags & KEY_FLAG_SIGN:
            problem = self._back_signature_problem(master, key, binding)
            if problem is not None:
                logtype, params = problem
                self.log.add(LogLevel.WARN, logtype, *params, indent=2)
                flags &= ~KEY_FLAG_SIGN
        if not flags:
            self.log.add(LogLevel.WARN, LogType.KC_SUB_NO_FLAGS, indent=2)
            return None

        revocation = self._newest(revocations, LogType.KC_SUB_REVOKE_DUP)
        if revocation is not None and revocation.creation_time < binding.creation_time:
            self._drop_redundant(LogType.KC_SUB_REVOKE_OLD)
            revocation = None
        if revocation is not None:
            self.log.add(LogLevel.INFO, LogType.KC_SUB_REVOKED, indent=2)

        expires = None
        expired = False
        lifetime = binding.key_expiration_seconds
        if lifetime:
            expires = key.created + lifetime
            expired = expires <= self.now
            if expired:
                self.log.add(LogLevel.INFO, LogType.KC_SUB_EXPIRED, expires, indent=2)
        return CanonicalSubkey(key, binding, revocation, flags, expires, expired)

    def _subkeys(self, master: KeyPacket, tree: UncachedKeyring) -> List[CanonicalSubkey]:
        groups: Dict[bytes, List[Tuple[KeyPacket, PacketGroup]]] = dict()
        for group in tree.subkeys:
            try:
                key = KeyPacket(group.owner)
            except ParseError as ex:
                self.log.add(LogLevel.WARN, LogType.KC_SUB_BAD_PACKET, str(ex), indent=1)
                continue
            if key.algorithm not in ALGO_NAMES:
                self.log.add(LogLevel.WARN, LogType.KC_SUB_UNKNOWN_ALGO, key.algorithm, indent=1)
                continue
            if key.fingerprint == master.fingerprint:
                self.log.add(LogLevel.WARN, LogType.KC_SUB_BAD_PACKET, 'subkey is the master key', indent=1)
                continue
            groups.setdefault(key.fingerprint, list()).append((key, group))

        subkeys: List[CanonicalSubkey] = list()
        for members in groups.values():
            subkey = self._subkey(master, members)
            if subkey is not None:
                subkeys.append(subkey)
        subkeys.sort(key=lambda s: (s.key.created, s.key.fingerprint))
        return subkeys

    def _summarize(self) -> None:
        if self.bad and self.redundant:
            self.log.add(LogLevel.INFO, LogType.KC_SUCCESS_BAD_AND_RED, self.bad, self.redundant)
        elif self.bad:
            self.log.add(LogLevel.INFO, LogType.KC_SUCCESS_BAD, self.bad)
        elif self.redundant:
            self.log.add(LogLevel.INFO, LogType.KC_SUCCESS_REDUNDANT, self.redundant)
        else:
            self.log.add(LogLevel.INFO, LogType.KC_SUCCESS)

    def run(self, tree: UncachedKeyring, public_ring: Optional[CanonicalKeyring] = None) -> Optional[CanonicalKeyring]:
        master = self._master(tree)
        if master is None:
            return None

        for packet in tree.unknown:
            self.log.add(LogLevel.WARN, LogType.KC_PACKET_UNKNOWN, packet.tag_name, packet.position, indent=1)

        revocation, direct = self._master_signatures(master, tree.master_signatures)
        user_ids, user_attributes = self._identities(master, tree)
        subkeys = self._subkeys(master, tree)

        if not user_ids:
            self.log.add(LogLevel.ERROR, LogType.KC_ERROR_NO_UID)
            return None

        expires = None
        lifetime = user_ids[0].self_cert.key_expiration_seconds
        if not lifetime and direct is not None:
            lifetime = direct.key_expiration_seconds
        if lifetime:
            expires = master.created + lifetime

        ring = CanonicalKeyring(master, revocation, direct, user_ids, user_attributes, subkeys,
                                expires=expires, expired=expires is not None and expires <= self.now)

        if public_ring is not None and master.is_secret and ring.shape() != public_ring.shape():
            self.log.add(LogLevel.ERROR, LogType.KC_ERROR_SECRET_SHAPE, public_ring.key_id_hex)
            return None

        self._summarize()
        return ring


def canonicalize(source: KeySource, now: int, public_ring: Optional[CanonicalKeyring] = None) -> CanonicalizeResult:
    """Canonicalize a single keyring.

    Args:
        source: Binary encoding, packet list, or an already partitioned keyring.
        now: Current time in seconds since epoch.
        public_ring: For secret keyrings, the canonical public keyring the
            result must match in shape.

    Returns:
        A CanonicalizeResult. Framing and structural problems are reported
        through its status and log, never raised.
    """
    log = OperationLog(__name__)
    try:
        if isinstance(source, UncachedKeyring):
            tree = source
        else:
            if isinstance(source, (bytes, bytearray)):
                packets = read_packets(source)
            else:
                packets = list(source)
            tree = UncachedKeyring.from_packets(packets)
    except FramingError as ex:
        log.add(LogLevel.ERROR, LogType.KC_ERROR_FRAMING, str(ex))
        return CanonicalizeResult(ResultStatus.ERROR, log)
    except StructuralError as ex:
        log.add(LogLevel.ERROR, LogType.KC_ERROR_STRUCTURE, str(ex))
        return CanonicalizeResult(ResultStatus.ERROR, log)

    canonicalizer = Canonicalizer(now, log)
    ring = canonicalizer.run(tree, public_ring=public_ring)
    return CanonicalizeResult(status_from_log(log, ring is not None), log, keyring=ring,
                              bad=canonicalizer.bad, redundant=canonicalizer.redundant)
