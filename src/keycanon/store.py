# -*- coding: utf-8 -*-
#
# Copyright (C) 2021-2022 by The Linux Foundation
# SPDX-License-Identifier: MIT-0
#
import logging
import os
import tempfile
import time

from pathlib import Path
from typing import Optional, Dict, Tuple, Union

from keycanon.canonicalize import canonicalize
from keycanon.errors import StoreError
from keycanon.keyring import CanonicalKeyring
from keycanon.keys import format_key_id
from keycanon.oplog import LogLevel

logger: logging.Logger = logging.getLogger(__name__)


class StoreStats:
    """What a store call did.

    Attributes:
        key_id: Master key id of the stored keyring.
        inserted: True if no keyring with this id was stored before.
        user_ids: Number of user ids stored.
        subkeys: Number of subkeys stored.
    """

    key_id: int
    inserted: bool
    user_ids: int
    subkeys: int

    def __init__(self, key_id: int, inserted: bool, user_ids: int, subkeys: int):
        self.key_id = key_id
        self.inserted = inserted
        self.user_ids = user_ids
        self.subkeys = subkeys

    def __repr__(self) -> str:
        return 'StoreStats(%s, inserted=%s)' % (format_key_id(self.key_id), self.inserted)


class KeyringStore:
    """Persistence collaborator used by the importer.

    Implementations own atomicity: a store call either replaces the stored
    keyring completely or leaves it untouched.
    """

    def load_canonical_keyring(self, master_key_id: int, secret: bool = False) -> Optional[CanonicalKeyring]:
        raise NotImplementedError

    def load_canonical_keyrings(self, master_key_id: int,
                                secret: bool = False) -> Tuple[Optional[CanonicalKeyring], Optional[CanonicalKeyring]]:
        """Load what an import of one master key id needs, in one call.

        Returns:
            The stored keyring of the imported kind, and the stored public
            keyring when secret material is imported (None otherwise).
        """
        existing = self.load_canonical_keyring(master_key_id, secret=secret)
        public_ring = self.load_canonical_keyring(master_key_id) if secret else None
        return existing, public_ring

    def store_canonical_keyring(self, ring: CanonicalKeyring) -> StoreStats:
        raise NotImplementedError


class MemoryKeyringStore(KeyringStore):
    """Keeps keyrings in a dict, counting calls per key id."""

    keyrings: Dict[Tuple[int, bool], CanonicalKeyring]
    store_calls: Dict[int, int]
    load_calls: Dict[int, int]

    def __init__(self) -> None:
        self.keyrings = dict()
        self.store_calls = dict()
        self.load_calls = dict()

    def load_canonical_keyring(self, master_key_id: int, secret: bool = False) -> Optional[CanonicalKeyring]:
        return self.keyrings.get((master_key_id, secret))

    def load_canonical_keyrings(self, master_key_id: int,
                                secret: bool = False) -> Tuple[Optional[CanonicalKeyring], Optional[CanonicalKeyring]]:
        self.load_calls[master_key_id] = self.load_calls.get(master_key_id, 0) + 1
        return super().load_canonical_keyrings(master_key_id, secret=secret)

    def store_canonical_keyring(self, ring: CanonicalKeyring) -> StoreStats:
        key = (ring.key_id, ring.is_secret)
        inserted = key not in self.keyrings
        self.keyrings[key] = ring
        self.store_calls[ring.key_id] = self.store_calls.get(ring.key_id, 0) + 1
        return StoreStats(ring.key_id, inserted, len(ring.user_ids), len(ring.subkeys))


class FileKeyringStore(KeyringStore):
    """Stores each keyring as a binary file under a directory.

    Layout is ``<topdir>/<public|secret>/<first two hex digits>/<key id>``.
    Stored files are canonicalized again when loaded.

    Args:
        topdir: Root directory, created on first store.
        now: Time to canonicalize loaded keyrings at, defaults to the
            current time on every load.
    """

    topdir: Path
    now: Optional[int]

    def __init__(self, topdir: Union[str, Path], now: Optional[int] = None):
        self.topdir = Path(topdir)
        self.now = now

    def make_keyring_path(self, master_key_id: int, secret: bool = False) -> Path:
        keyid = format_key_id(master_key_id)
        return self.topdir / ('secret' if secret else 'public') / keyid[:2] / keyid

    def load_canonical_keyring(self, master_key_id: int, secret: bool = False) -> Optional[CanonicalKeyring]:
        fullpath = self.make_keyring_path(master_key_id, secret=secret)
        if not fullpath.exists():
            logger.debug('No stored keyring at %s', fullpath)
            return None
        try:
            with open(fullpath, 'rb') as fh:
                data = fh.read()
        except IOError as ex:
            raise StoreError('Unable to read %s: %s' % (fullpath, ex))

        now = self.now if self.now is not None else int(time.time())
        result = canonicalize(data, now)
        if result.keyring is None:
            raise StoreError('Stored keyring %s is not valid' % fullpath,
                             errors=[entry.type.name for entry in result.log if entry.level >= LogLevel.ERROR])
        if result.keyring.key_id != master_key_id:
            raise StoreError('Stored keyring %s has the wrong key id %s' % (fullpath, result.keyring.key_id_hex))
        logger.debug('Loaded %s from %s', result.keyring.key_id_hex, fullpath)
        return result.keyring

    def store_canonical_keyring(self, ring: CanonicalKeyring) -> StoreStats:
        fullpath = self.make_keyring_path(ring.key_id, secret=ring.is_secret)
        inserted = not fullpath.exists()
        try:
            fullpath.parent.mkdir(parents=True, exist_ok=True)
            fd, tmppath = tempfile.mkstemp(dir=fullpath.parent, prefix='.%s.' % fullpath.name)
            try:
                with os.fdopen(fd, 'wb') as fh:
                    fh.write(ring.encode())
                os.replace(tmppath, fullpath)
            except OSError:
                os.unlink(tmppath)
                raise
        except OSError as ex:
            raise StoreError('Unable to write %s: %s' % (fullpath, ex))
        logger.info('Wrote %s', fullpath)
        return StoreStats(ring.key_id, inserted, len(ring.user_ids), len(ring.subkeys))
