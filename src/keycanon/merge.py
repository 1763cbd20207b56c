# -*- coding: utf-8 -*-
#
# Copyright (C) 2021-2022 by The Linux Foundation
# SPDX-License-Identifier: MIT-0
#
"""Merging two canonical versions of the same keyring.

The merge forms the packet union of both inputs and canonicalizes it again,
so the result satisfies every rule a freshly canonicalized keyring does.
"""
import enum
import logging

from typing import Optional, List, Tuple, Dict

from keycanon.canonicalize import canonicalize
from keycanon.keyring import CanonicalKeyring
from keycanon.keys import KeyPacket
from keycanon.oplog import LogLevel, LogType, OperationLog, OperationResult, ResultStatus, status_from_log
from keycanon.packets import RawPacket

logger: logging.Logger = logging.getLogger(__name__)


class MergeOutcome(enum.Enum):
    NO_NEW = 'no-new'
    NEW_MATERIAL = 'new-material'
    REVALIDATED = 'revalidated'


class MergeResult(OperationResult):
    """Outcome of a merge.

    Attributes:
        keyring: The merged canonical keyring, None on failure.
        outcome: How the result relates to the first input.
        new_packets: Packets in the result that the first input lacked.
    """

    keyring: Optional[CanonicalKeyring]
    outcome: Optional[MergeOutcome]
    new_packets: List[RawPacket]

    def __init__(self, status: ResultStatus, log: OperationLog, keyring: Optional[CanonicalKeyring] = None,
                 outcome: Optional[MergeOutcome] = None, new_packets: Optional[List[RawPacket]] = None):
        super().__init__(status, log)
        self.keyring = keyring
        self.outcome = outcome
        self.new_packets = new_packets if new_packets is not None else list()


def _best_key(candidates: List[KeyPacket]) -> KeyPacket:
    return sorted(candidates, key=lambda k: (-k.secret_type.fidelity, k.raw.buf))[0]


def _note_secret_choice(log: OperationLog, candidates: List[KeyPacket], chosen: KeyPacket) -> None:
    weaker = [k.secret_type for k in candidates if k.secret_type.fidelity < chosen.secret_type.fidelity]
    if weaker:
        log.add(LogLevel.INFO, LogType.MG_SECRET_KEEP, chosen.secret_type.name, chosen.key_id_hex,
                weaker[0].name, indent=1)


def _add_unique(target: List[RawPacket], packets: List[RawPacket]) -> None:
    for packet in packets:
        if packet not in target:
            target.append(packet)


def union(a: CanonicalKeyring, b: CanonicalKeyring, log: OperationLog) -> List[RawPacket]:
    """Build the packet union of two keyrings sharing a master key.

    Owning packets are keyed by content (user ids) or fingerprint (subkeys)
    and signatures are collected under their owner, deduplicated by raw
    bytes. Where both sides carry a key with different secret material the
    more usable one is taken.
    """
    master = _best_key([a.master, b.master])
    _note_secret_choice(log, [a.master, b.master], master)

    master_sigs: List[RawPacket] = list()
    identities: Dict[Tuple[int, bytes], Tuple[List[RawPacket], List[RawPacket]]] = dict()
    subkeys: Dict[bytes, Tuple[List[KeyPacket], List[RawPacket]]] = dict()

    for ring in (a, b):
        _add_unique(master_sigs, ring.master_signature_packets())
        for uid in ring.user_ids + ring.user_attributes:
            owners, sigs = identities.setdefault((uid.packet.tag, uid.packet.body), (list(), list()))
            owners.append(uid.packet)
            _add_unique(sigs, uid.packets()[1:])
        for subkey in ring.subkeys:
            if ring is b and a.get_subkey(subkey.key_id) is None:
                log.add(LogLevel.DEBUG, LogType.MG_NEW_SUBKEY, subkey.key.key_id_hex, indent=1)
            keys, sigs = subkeys.setdefault(subkey.key.fingerprint, (list(), list()))
            keys.append(subkey.key)
            _add_unique(sigs, subkey.packets()[1:])

    packets = [master.raw] + master_sigs
    for owners, sigs in identities.values():
        packets.append(min(owners, key=lambda p: p.buf))
        packets += sigs
    for keys, sigs in subkeys.values():
        key = _best_key(keys)
        _note_secret_choice(log, keys, key)
        packets.append(key.raw)
        packets += sigs
    return [packet.with_position(position) for position, packet in enumerate(packets)]


def merge(a: CanonicalKeyring, b: CanonicalKeyring, now: int) -> MergeResult:
    """Merge b into a.

    Args:
        a: Typically the stored keyring.
        b: Typically the freshly imported keyring.
        now: Current time in seconds since epoch.

    Returns:
        A MergeResult. Heterogeneous inputs yield an ERROR status and no
        keyring.
    """
    log = OperationLog(__name__)
    if a.fingerprint != b.fingerprint:
        log.add(LogLevel.ERROR, LogType.MG_ERROR_HETEROGENEOUS, a.fingerprint_hex, b.fingerprint_hex)
        return MergeResult(ResultStatus.ERROR, log)
    if a.is_secret != b.is_secret:
        log.add(LogLevel.ERROR, LogType.MG_ERROR_TYPE)
        return MergeResult(ResultStatus.ERROR, log)

    log.add(LogLevel.DEBUG, LogType.MG_SECRET if a.is_secret else LogType.MG_PUBLIC, a.key_id_hex)
    packets = union(a, b, log)
    result = canonicalize(packets, now)
    log.extend(result.log, indent=1)
    if result.keyring is None:
        log.add(LogLevel.ERROR, LogType.MG_ERROR_CANONICALIZE)
        return MergeResult(ResultStatus.ERROR, log)

    merged = result.keyring
    known = set(a.packets())
    new_packets = [packet for packet in merged.packets() if packet not in known]
    if merged.encode() == a.encode():
        outcome = MergeOutcome.NO_NEW
        log.add(LogLevel.DEBUG, LogType.MG_UNCHANGED)
    elif new_packets:
        outcome = MergeOutcome.NEW_MATERIAL
        log.add(LogLevel.INFO, LogType.MG_FOUND_NEW, len(new_packets))
    else:
        outcome = MergeOutcome.REVALIDATED
        log.add(LogLevel.INFO, LogType.MG_REVALIDATED)

    return MergeResult(status_from_log(log, True), log, keyring=merged, outcome=outcome, new_packets=new_packets)

