# -*- coding: utf-8 -*-
#
# Copyright (C) 2021-2022 by The Linux Foundation
# SPDX-License-Identifier: MIT-0
#
"""Import orchestration.

Splits incoming data into keyrings, canonicalizes each one, merges it with
whatever the store already holds for the same master key and hands the
result back to the store. Cancellation is honoured between keyrings only.
"""
import logging

from typing import Optional, List, Dict, Union, Iterable, Any

from keycanon.armor import decode_keyring_data
from keycanon.canonicalize import canonicalize
from keycanon.errors import ParseError, FramingError, UnsupportedFeatureError, StoreError
from keycanon.keyring import CanonicalKeyring
from keycanon.keys import KeyPacket, format_key_id
from keycanon.merge import merge, MergeOutcome
from keycanon.oplog import LogLevel, LogType, OperationLog, OperationResult, ResultStatus, status_from_log
from keycanon.packets import RawPacket, read_packet, KIND_MASTER_KEY
from keycanon.store import KeyringStore

logger: logging.Logger = logging.getLogger(__name__)

OUTCOME_NEW = 'new'
OUTCOME_UPDATED = 'updated'
OUTCOME_IDENTICAL = 'identical'
OUTCOME_BAD = 'bad'


def normalize_fingerprint(fpr: Union[str, bytes]) -> str:
    if isinstance(fpr, bytes):
        return fpr.hex().upper()
    return fpr.replace(' ', '').upper()


class ImportEntry:
    """Data to import, with the fingerprint the caller expects it to carry."""

    data: bytes
    expected_fingerprint: Optional[str]

    def __init__(self, data: bytes, expected_fingerprint: Union[str, bytes, None] = None):
        self.data = data
        self.expected_fingerprint = None
        if expected_fingerprint:
            self.expected_fingerprint = normalize_fingerprint(expected_fingerprint)


class KeyringSegment:
    """Packets of one keyring as found in the input stream.

    Attributes:
        packets: Packets from the master key up to the next master key.
        error: Set when the stream could not be read through this keyring.
        expected_fingerprint: Carried over from the import entry.
    """

    packets: List[RawPacket]
    error: Optional[FramingError]
    expected_fingerprint: Optional[str]

    def __init__(self, packets: List[RawPacket], expected_fingerprint: Optional[str] = None):
        self.packets = packets
        self.error = None
        self.expected_fingerprint = expected_fingerprint

    @property
    def key_id(self) -> Optional[int]:
        if self.error is not None or not self.packets:
            return None
        try:
            return KeyPacket(self.packets[0]).key_id
        except ParseError:
            return None


def split_keyrings(data: bytes, log: OperationLog, expected_fingerprint: Optional[str] = None) -> List[KeyringSegment]:
    """Split a packet stream into per-keyring segments.

    A partial body length marks the keyring it occurs in as failed. When the
    partial chunks can be walked the stream is resumed right after the
    packet and everything up to the next master key is skipped.
    """
    segments: List[KeyringSegment] = list()
    current: Optional[KeyringSegment] = None
    orphans = 0
    skipping = False
    at = 0
    position = 0
    while True:
        try:
            packet, at = read_packet(data, at, position)
        except FramingError as ex:
            log.add(LogLevel.ERROR, LogType.IP_ERROR_FRAMING, ex.offset, str(ex))
            if current is None and not skipping:
                current = KeyringSegment(list(), expected_fingerprint)
                segments.append(current)
            if current is not None:
                current.error = ex
            current = None
            skipping = True
            if isinstance(ex, UnsupportedFeatureError) and ex.resume_offset is not None:
                log.add(LogLevel.INFO, LogType.IP_RESUME, ex.resume_offset, indent=1)
                at = ex.resume_offset
                position += 1
                continue
            break
        if packet is None:
            break
        position += 1
        if packet.kind == KIND_MASTER_KEY:
            current = KeyringSegment([packet], expected_fingerprint)
            segments.append(current)
            skipping = False
        elif current is not None:
            current.packets.append(packet)
        elif skipping:
            # Remainder of a keyring that failed to read
            continue
        else:
            orphans += 1
    if orphans:
        log.add(LogLevel.WARN, LogType.IP_ERROR_NO_MASTER, orphans)
    return segments


class ImportResult(OperationResult):
    """Outcome of an import batch.

    Attributes:
        new_keys: Keyrings stored for the first time.
        updated_keys: Stored keyrings that changed.
        identical_keys: Keyrings identical to what was stored.
        bad_keys: Keyrings rejected.
        secret_keys: Secret keyrings imported.
        imported_ids: Master key ids of every keyring imported.
    """

    new_keys: int
    updated_keys: int
    identical_keys: int
    bad_keys: int
    secret_keys: int
    imported_ids: List[int]

    def __init__(self, status: ResultStatus, log: OperationLog):
        super().__init__(status, log)
        self.new_keys = 0
        self.updated_keys = 0
        self.identical_keys = 0
        self.bad_keys = 0
        self.secret_keys = 0
        self.imported_ids = list()

    @property
    def imported(self) -> int:
        return self.new_keys + self.updated_keys + self.identical_keys

    @property
    def cancelled(self) -> bool:
        return self.status == ResultStatus.CANCELLED

    def __repr__(self) -> str:
        return 'ImportResult(%s, new=%d, updated=%d, identical=%d, bad=%d)' % (
            self.status.name, self.new_keys, self.updated_keys, self.identical_keys, self.bad_keys)


class KeyringImporter:
    """Imports keyrings into a store.

    Args:
        store: Persistence collaborator.
        now: Current time in seconds since epoch.
        secret: Whether secret keyrings are expected.
    """

    store: KeyringStore
    now: int
    secret: bool
    log: OperationLog

    def __init__(self, store: KeyringStore, now: int, secret: bool = False):
        self.store = store
        self.now = now
        self.secret = secret
        self.log = OperationLog(__name__)

    def _accept(self, segment: KeyringSegment,
                public_ring: Optional[CanonicalKeyring]) -> Optional[CanonicalKeyring]:
        result = canonicalize(segment.packets, self.now, public_ring=public_ring)
        self.log.extend(result.log, indent=1)
        ring = result.keyring
        if ring is None:
            return None
        if ring.is_secret != self.secret:
            if ring.is_secret:
                self.log.add(LogLevel.ERROR, LogType.IP_BAD_TYPE_SECRET, ring.key_id_hex, indent=1)
            else:
                self.log.add(LogLevel.ERROR, LogType.IP_BAD_TYPE_PUBLIC, ring.key_id_hex, indent=1)
            return None
        if segment.expected_fingerprint and ring.fingerprint_hex != segment.expected_fingerprint:
            self.log.add(LogLevel.ERROR, LogType.IP_FINGERPRINT_MISMATCH, ring.fingerprint_hex,
                         segment.expected_fingerprint, indent=1)
            return None
        return ring

    def import_group(self, key_id: Optional[int], segments: List[KeyringSegment]) -> str:
        """Import every segment sharing one master key id, storing at most once."""
        label = format_key_id(key_id) if key_id is not None else '(unreadable)'
        self.log.add(LogLevel.DEBUG, LogType.IP_MASTER, label)
        if key_id is None or any(segment.error is not None for segment in segments):
            self.log.add(LogLevel.ERROR, LogType.IP_BAD_KEY, label, indent=1)
            return OUTCOME_BAD

        try:
            existing, public_ring = self.store.load_canonical_keyrings(key_id, secret=self.secret)
        except StoreError as ex:
            self.log.add(LogLevel.ERROR, LogType.IP_FAIL_LOAD, label, str(ex), indent=1)
            return OUTCOME_BAD

        ring = None
        for segment in segments:
            candidate = self._accept(segment, public_ring)
            if candidate is None:
                continue
            if ring is None:
                ring = candidate
                continue
            merged = merge(ring, candidate, self.now)
            self.log.extend(merged.log, indent=1)
            if merged.keyring is not None:
                ring = merged.keyring
        if ring is None:
            self.log.add(LogLevel.ERROR, LogType.IP_BAD_KEY, label, indent=1)
            return OUTCOME_BAD

        outcome = OUTCOME_NEW
        if existing is not None:
            self.log.add(LogLevel.DEBUG, LogType.IP_MERGE_EXISTING, existing.key_id_hex, indent=1)
            merged = merge(existing, ring, self.now)
            self.log.extend(merged.log, indent=1)
            if merged.keyring is None:
                self.log.add(LogLevel.ERROR, LogType.IP_BAD_KEY, label, indent=1)
                return OUTCOME_BAD
            if merged.outcome == MergeOutcome.NO_NEW:
                self.log.add(LogLevel.INFO, LogType.IP_SUCCESS_IDENTICAL, label, indent=1)
                return OUTCOME_IDENTICAL
            ring = merged.keyring
            outcome = OUTCOME_UPDATED

        try:
            self.store.store_canonical_keyring(ring)
        except StoreError as ex:
            self.log.add(LogLevel.ERROR, LogType.IP_FAIL_STORE, label, str(ex), indent=1)
            return OUTCOME_BAD

        if outcome == OUTCOME_NEW:
            self.log.add(LogLevel.INFO, LogType.IP_SUCCESS, label, indent=1)
        else:
            self.log.add(LogLevel.INFO, LogType.IP_SUCCESS_UPDATED, label, indent=1)
        return outcome

    def run(self, entries: Iterable[ImportEntry], cancel: Optional[Any] = None) -> ImportResult:
        segments: List[KeyringSegment] = list()
        bad_inputs = 0
        for entry in entries:
            try:
                data = decode_keyring_data(entry.data)
            except FramingError as ex:
                self.log.add(LogLevel.ERROR, LogType.IP_ERROR_ARMOR, str(ex))
                bad_inputs += 1
                continue
            segments += split_keyrings(data, self.log, entry.expected_fingerprint)

        result = ImportResult(ResultStatus.OK, self.log)
        result.bad_keys = bad_inputs
        if not segments and not bad_inputs:
            self.log.add(LogLevel.ERROR, LogType.IP_NOTHING)
            result.status = ResultStatus.ERROR
            return result

        # Group by master key id, keeping the order of first appearance
        groups: Dict[Any, List[KeyringSegment]] = dict()
        for index, segment in enumerate(segments):
            key_id = segment.key_id
            groups.setdefault(key_id if key_id is not None else ('unreadable', index), list()).append(segment)

        cancelled = False
        for group_key, members in groups.items():
            if cancel is not None and cancel.is_set():
                self.log.add(LogLevel.INFO, LogType.OPERATION_CANCELLED)
                cancelled = True
                break
            key_id = group_key if isinstance(group_key, int) else None
            outcome = self.import_group(key_id, members)
            if outcome == OUTCOME_BAD:
                result.bad_keys += 1
                continue
            if outcome == OUTCOME_NEW:
                result.new_keys += 1
            elif outcome == OUTCOME_UPDATED:
                result.updated_keys += 1
            else:
                result.identical_keys += 1
            if self.secret:
                result.secret_keys += 1
            result.imported_ids.append(key_id)

        if cancelled:
            result.status = ResultStatus.CANCELLED
        else:
            result.status = status_from_log(self.log, result.imported > 0)
        logger.info('Import finished: %r', result)
        return result


def import_keyrings(source: Union[bytes, ImportEntry, Iterable[Union[bytes, ImportEntry]]], store: KeyringStore,
                    now: int, secret: bool = False, cancel: Optional[Any] = None) -> ImportResult:
    """Import one or more keyrings into store.

    Args:
        source: Binary or armored data, an ImportEntry, or an iterable of
            either. Each may hold several concatenated keyrings.
        store: Persistence collaborator.
        now: Current time in seconds since epoch.
        secret: Import secret keyrings instead of public ones.
        cancel: Object with an ``is_set()`` method, e.g. threading.Event,
            checked before each keyring.

    Returns:
        An ImportResult with per-batch counts and the operation log.
    """
    if isinstance(source, (bytes, bytearray)):
        entries = [ImportEntry(bytes(source))]
    elif isinstance(source, ImportEntry):
        entries = [source]
    else:
        entries = [item if isinstance(item, ImportEntry) else ImportEntry(item) for item in source]
    importer = KeyringImporter(store, now, secret=secret)
    return importer.run(entries, cancel=cancel)
