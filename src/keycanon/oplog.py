# -*- coding: utf-8 -*-
#
# Copyright (C) 2021-2022 by The Linux Foundation
# SPDX-License-Identifier: MIT-0
#
"""Structured operation log.

Every decision taken while canonicalizing, merging or importing is recorded
as a leveled entry carrying a machine-readable reason code and its
parameters. Entries are mirrored to the standard logging module as they are
added, so running with debug logging shows the same trail the result
object carries.
"""
import enum
import logging

from typing import List, Tuple, Any, Optional, Iterator

logger: logging.Logger = logging.getLogger(__name__)


class LogLevel(enum.IntEnum):
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARN = logging.WARNING
    ERROR = logging.ERROR


class LogType(enum.Enum):
    """Reason codes, each with the template used to render it."""
    # Canonicalization
    KC_PUBLIC = 'Canonicalizing public keyring %s'
    KC_SECRET = 'Canonicalizing secret keyring %s'
    KC_ERROR_FRAMING = 'Cannot read packet stream: %s'
    KC_ERROR_STRUCTURE = 'Keyring is structurally invalid: %s'
    KC_ERROR_V3 = 'Master key uses unsupported version %d'
    KC_ERROR_MASTER_BAD = 'Cannot parse master key: %s'
    KC_ERROR_MASTER_ALGO = 'Master key algorithm %s cannot sign'
    KC_ERROR_MIXED = 'Keyring mixes public and secret key packets'
    KC_ERROR_SECRET_SHAPE = 'Secret keyring does not match the shape of public keyring %s'
    KC_ERROR_NO_UID = 'No valid user ids left, rejecting keyring'
    KC_MASTER = 'Processing master key %s'
    KC_PACKET_UNKNOWN = 'Removing unsupported %s packet at position %d'
    KC_MASTER_SIG_BAD_ERR = 'Removing unparseable master key signature: %s'
    KC_MASTER_SIG_BAD_TYPE = 'Removing master key signature of inapplicable type %s'
    KC_MASTER_SIG_BAD_TIME = 'Removing master key signature with a creation time in the future'
    KC_MASTER_SIG_BAD_LOCAL = 'Removing non-exportable master key signature'
    KC_MASTER_SIG_BAD = 'Removing master key signature that fails verification'
    KC_MASTER_SIG_FOREIGN = 'Removing master key signature issued by %s'
    KC_MASTER_SIG_DUP = 'Removing redundant master key signature'
    KC_REVOKED = 'Master key is revoked'
    KC_UID = 'Processing user id %s'
    KC_UATTR = 'Processing user attribute %s'
    KC_UID_MERGED = 'Merging duplicate user id packets'
    KC_UID_WARN_ENCODING = 'User id is not valid UTF-8'
    KC_UID_BAD_ERR = 'Removing unparseable certificate: %s'
    KC_UID_BAD_TYPE = 'Removing certificate of inapplicable type %s'
    KC_UID_BAD_TIME = 'Removing certificate with a creation time in the future'
    KC_UID_BAD_LOCAL = 'Removing non-exportable certificate'
    KC_UID_BAD = 'Removing self-certificate that fails verification'
    KC_UID_FOREIGN = 'Removing third-party certificate by %s'
    KC_UID_CERT_DUP = 'Removing duplicate certificate'
    KC_UID_DUP = 'Removing outdated self-certificate'
    KC_UID_REVOKE_DUP = 'Removing outdated revocation'
    KC_UID_REVOKE_OLD = 'Removing revocation older than the self-certificate'
    KC_UID_REVOKED = 'User id is revoked'
    KC_UID_NO_CERT = 'Removing user id without a valid self-certificate'
    KC_SUB = 'Processing subkey %s'
    KC_SUB_BAD_PACKET = 'Removing unparseable subkey: %s'
    KC_SUB_UNKNOWN_ALGO = 'Removing subkey with unknown algorithm %d'
    KC_SUB_MERGED = 'Merging %d packets for subkey %s'
    KC_SUB_BAD_ERR = 'Removing unparseable subkey signature: %s'
    KC_SUB_BAD_TYPE = 'Removing subkey signature of inapplicable type %s'
    KC_SUB_BAD_TIME = 'Removing subkey signature with a creation time in the future'
    KC_SUB_BAD_LOCAL = 'Removing non-exportable subkey signature'
    KC_SUB_BAD = 'Removing subkey signature that fails verification'
    KC_SUB_BAD_KEYID = 'Removing subkey signature issued by %s'
    KC_SUB_CERT_DUP = 'Removing duplicate subkey signature'
    KC_SUB_DUP = 'Removing outdated subkey binding'
    KC_SUB_PRIMARY_NONE = 'Signing subkey has no back-signature, dropping sign capability'
    KC_SUB_PRIMARY_BAD = 'Signing subkey back-signature fails verification, dropping sign capability'
    KC_SUB_PRIMARY_BAD_ERR = 'Cannot parse subkey back-signature (%s), dropping sign capability'
    KC_SUB_NO_CERT = 'Removing subkey without a valid binding'
    KC_SUB_NO_FLAGS = 'Removing subkey without any usable capability'
    KC_SUB_REVOKE_DUP = 'Removing outdated subkey revocation'
    KC_SUB_REVOKE_OLD = 'Removing subkey revocation older than the binding'
    KC_SUB_REVOKED = 'Subkey is revoked'
    KC_SUB_EXPIRED = 'Subkey expired at %d'
    KC_SUCCESS = 'Keyring canonicalized'
    KC_SUCCESS_BAD = 'Keyring canonicalized, removed %d bad certificates'
    KC_SUCCESS_REDUNDANT = 'Keyring canonicalized, removed %d redundant certificates'
    KC_SUCCESS_BAD_AND_RED = 'Keyring canonicalized, removed %d bad and %d redundant certificates'
    # Merge
    MG_PUBLIC = 'Merging public keyring %s'
    MG_SECRET = 'Merging secret keyring %s'
    MG_ERROR_HETEROGENEOUS = 'Cannot merge keyrings %s and %s with different master keys'
    MG_ERROR_TYPE = 'Cannot merge a public keyring with a secret keyring'
    MG_ERROR_CANONICALIZE = 'Merged keyring failed to canonicalize'
    MG_SECRET_KEEP = 'Keeping %s secret material for key %s over %s'
    MG_NEW_SUBKEY = 'Found new subkey %s'
    MG_UNCHANGED = 'No new material found'
    MG_FOUND_NEW = 'Found %d new packets'
    MG_REVALIDATED = 'Keyring revalidated without new material'
    # Import
    IP_NOTHING = 'Nothing to import'
    IP_ERROR_ARMOR = 'Cannot decode armored input: %s'
    IP_ERROR_FRAMING = 'Cannot read packet at offset %d: %s'
    IP_RESUME = 'Resuming at offset %d'
    IP_ERROR_NO_MASTER = 'Skipping %d packets not preceded by a master key'
    IP_MASTER = 'Importing keyring %s'
    IP_BAD_TYPE_SECRET = 'Refusing to import secret keyring %s as public'
    IP_BAD_TYPE_PUBLIC = 'Refusing to import public keyring %s as secret'
    IP_FINGERPRINT_MISMATCH = 'Fingerprint %s does not match expected %s'
    IP_MERGE_EXISTING = 'Merging with stored keyring %s'
    IP_FAIL_STORE = 'Failed to store keyring %s: %s'
    IP_FAIL_LOAD = 'Failed to load stored keyring %s: %s'
    IP_BAD_KEY = 'Keyring %s rejected'
    IP_SUCCESS = 'Imported new keyring %s'
    IP_SUCCESS_UPDATED = 'Updated keyring %s'
    IP_SUCCESS_IDENTICAL = 'Keyring %s is unchanged'
    OPERATION_CANCELLED = 'Operation cancelled'


class ResultStatus(enum.Enum):
    OK = 'ok'
    OK_WARNINGS = 'ok-warnings'
    ERROR = 'error'
    CANCELLED = 'cancelled'


class LogEntry:
    """A single leveled, parameterized decision."""

    level: LogLevel
    type: LogType
    params: Tuple[Any, ...]
    indent: int

    def __init__(self, level: LogLevel, logtype: LogType, params: Tuple[Any, ...], indent: int = 0):
        self.level = level
        self.type = logtype
        self.params = params
        self.indent = indent

    @property
    def message(self) -> str:
        if self.params:
            return self.type.value % self.params
        return self.type.value

    def __repr__(self) -> str:
        return 'LogEntry(%s, %s, %r)' % (self.level.name, self.type.name, self.params)


class OperationLog:
    """Ordered list of log entries.

    Args:
        name: Logger to mirror entries to.
    """

    entries: List[LogEntry]
    indent: int

    def __init__(self, name: Optional[str] = None):
        self.entries = list()
        self.indent = 0
        self._logger = logging.getLogger(name) if name else logger

    def add(self, level: LogLevel, logtype: LogType, *params: Any, indent: int = 0) -> LogEntry:
        entry = LogEntry(level, logtype, params, self.indent + indent)
        self.entries.append(entry)
        self._logger.log(int(level), '%s%s: %s', '  ' * entry.indent, logtype.name, entry.message)
        return entry

    def extend(self, other: 'OperationLog', indent: int = 0) -> None:
        """Append entries of another log, already mirrored when first added."""
        for entry in other.entries:
            self.entries.append(LogEntry(entry.level, entry.type, entry.params, entry.indent + indent))

    def types(self) -> List[LogType]:
        return [entry.type for entry in self.entries]

    def contains(self, logtype: LogType) -> bool:
        return logtype in self.types()

    def has_level(self, level: LogLevel) -> bool:
        for entry in self.entries:
            if entry.level >= level:
                return True
        return False

    def __iter__(self) -> Iterator[LogEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)


class OperationResult:
    """Status plus the log of how it was reached."""

    status: ResultStatus
    log: OperationLog

    def __init__(self, status: ResultStatus, log: OperationLog):
        self.status = status
        self.log = log

    @property
    def success(self) -> bool:
        return self.status in (ResultStatus.OK, ResultStatus.OK_WARNINGS)


def status_from_log(log: OperationLog, success: bool) -> ResultStatus:
    if not success:
        return ResultStatus.ERROR
    if log.has_level(LogLevel.WARN):
        return ResultStatus.OK_WARNINGS
    return ResultStatus.OK
