# -*- coding: utf-8 -*-
#
# Copyright (C) 2021-2022 by The Linux Foundation
# SPDX-License-Identifier: MIT-0
#
import sys
import os

import argparse
import subprocess
import logging
import time
import datetime

from pathlib import Path
from typing import Optional, List, Tuple, Dict

from keycanon.armor import decode_keyring_data
from keycanon.canonicalize import canonicalize, CanonicalizeResult
from keycanon.diff import diff_keyrings
from keycanon.errors import Error, ConfigurationError
from keycanon.importer import import_keyrings, ImportEntry, ImportResult
from keycanon.keyring import CanonicalKeyring
from keycanon.merge import merge
from keycanon.oplog import LogLevel, OperationLog
from keycanon.signatures import KEY_FLAG_CERTIFY, KEY_FLAG_SIGN, KEY_FLAG_ENCRYPT, KEY_FLAG_AUTHENTICATE
from keycanon.store import FileKeyringStore

GitConfigType = Dict[str, str]

logger: logging.Logger = logging.getLogger(__name__)

# Quick cache for config settings
CONFIGCACHE: Dict[str, GitConfigType] = dict()

# My version
__VERSION__ = '0.1.0-dev'


def get_data_dir() -> Path:
    """Get the keycanon data directory, creating it if necessary.

    Returns:
        Path to $XDG_DATA_HOME/keycanon or ~/.local/share/keycanon.
    """
    if 'XDG_DATA_HOME' in os.environ:
        datahome = Path(os.environ['XDG_DATA_HOME'])
    else:
        datahome = Path.home() / '.local' / 'share'
    datadir = datahome / 'keycanon'
    datadir.mkdir(parents=True, exist_ok=True)
    return datadir


def _run_command(cmdargs: List[str], stdin: Optional[bytes] = None) -> Tuple[int, bytes, bytes]:
    logger.debug('Running %s', ' '.join(cmdargs))
    cp = subprocess.run(cmdargs, input=stdin, capture_output=True, text=False)
    logger.debug('Completed %s', repr(cp))
    return cp.returncode, cp.stdout, cp.stderr


def git_run_command(gitdir: Optional[str], args: List[str]) -> Tuple[int, bytes, bytes]:
    if gitdir:
        args = ['git', '--git-dir', gitdir, '--no-pager'] + args
    else:
        args = ['git', '--no-pager'] + args
    try:
        return _run_command(args)
    except FileNotFoundError:
        logger.debug('git is not available, using default configuration')
        return 1, b'', b''


def get_config_from_git(regexp: str, section: Optional[str] = None,
                        defaults: Optional[GitConfigType] = None) -> GitConfigType:
    """Read matching git config entries into a dict keyed by the last name part.

    Entries inside a subsection are only used when that subsection is
    requested, and top-level entries are skipped when one is.
    """
    gitconfig: GitConfigType = dict(defaults) if defaults else dict()
    _, bout, _ = git_run_command(None, ['config', '-z', '--get-regexp', regexp])
    for line in bout.decode(errors='replace').split('\x00'):
        if not line or '\n' not in line:
            continue
        key, value = line.split('\n', 1)
        chunks = key.split('.')[1:]
        cfgkey = chunks.pop(-1).lower()
        sname = '.'.join(chunks) if chunks else None
        if sname != section:
            continue
        gitconfig[cfgkey] = value
    return gitconfig


def get_main_config(section: Optional[str] = None) -> GitConfigType:
    """Load keycanon configuration from git config.

    Args:
        section: Optional subsection name, as in [keycanon "sectionname"].

    Returns:
        Configuration dictionary. Results are cached per section.
    """
    global CONFIGCACHE
    csection = section if section else 'default'
    if csection in CONFIGCACHE:
        return CONFIGCACHE[csection]
    config = get_config_from_git(r'keycanon\..*', section=section, defaults={'secret': 'no'})
    logger.debug('config: %s', config)
    CONFIGCACHE[csection] = config
    return config


def get_store(cmdargs: argparse.Namespace, config: GitConfigType) -> FileKeyringStore:
    keyringdir = cmdargs.keyringdir or config.get('keyringdir')
    if keyringdir:
        topdir = Path(os.path.expanduser(os.path.expandvars(keyringdir)))
    else:
        topdir = get_data_dir() / 'keyring'
    if topdir.exists() and not topdir.is_dir():
        raise ConfigurationError('Keyring location %s is not a directory' % topdir)
    return FileKeyringStore(topdir, now=cmdargs.now)


def _read_file(fn: str) -> bytes:
    if fn == '-':
        return sys.stdin.buffer.read()
    with open(fn, 'rb') as fh:
        return fh.read()


def _write_output(fn: Optional[str], data: bytes) -> None:
    if not fn or fn == '-':
        sys.stdout.buffer.write(data)
        return
    with open(fn, 'wb') as fh:
        fh.write(data)


def _report_errors(log: OperationLog) -> None:
    for entry in log:
        if entry.level >= LogLevel.ERROR:
            logger.critical('       | %s: %s', entry.type.name, entry.message)


def _now(cmdargs: argparse.Namespace) -> int:
    if cmdargs.now is not None:
        return cmdargs.now
    return int(time.time())


def _load_canonical(fn: str, now: int) -> CanonicalizeResult:
    data = decode_keyring_data(_read_file(fn))
    return canonicalize(data, now)


def _flags_str(flags: int) -> str:
    out = ''
    for flag, letter in ((KEY_FLAG_CERTIFY, 'C'), (KEY_FLAG_SIGN, 'S'), (KEY_FLAG_ENCRYPT, 'E'),
                         (KEY_FLAG_AUTHENTICATE, 'A')):
        if flags & flag:
            out += letter
    return out


def _date_str(ts: Optional[int]) -> str:
    if ts is None:
        return 'never'
    return datetime.datetime.fromtimestamp(ts, tz=datetime.timezone.utc).strftime('%Y-%m-%d')


def cmd_import(cmdargs: argparse.Namespace, config: GitConfigType) -> None:
    secret = cmdargs.secret or config.get('secret', 'no') == 'yes'
    entries: List[ImportEntry] = list()
    for fn in cmdargs.keyfile:
        try:
            entries.append(ImportEntry(_read_file(fn), expected_fingerprint=cmdargs.fingerprint))
        except IOError as ex:
            logger.critical('E: %s', ex)
            sys.exit(1)

    store = get_store(cmdargs, config)
    result: ImportResult = import_keyrings(entries, store, _now(cmdargs), secret=secret)
    for key_id in result.imported_ids:
        logger.info('IMPORTED | %016X', key_id)
    logger.critical('%s | new: %d, updated: %d, unchanged: %d, bad: %d', result.status.name,
                    result.new_keys, result.updated_keys, result.identical_keys, result.bad_keys)
    if not result.success:
        _report_errors(result.log)
        sys.exit(1)


def cmd_canonicalize(cmdargs: argparse.Namespace, config: GitConfigType) -> None:
    result = _load_canonical(cmdargs.keyfile, _now(cmdargs))
    if result.keyring is None:
        logger.critical(' ERROR | %s', cmdargs.keyfile)
        _report_errors(result.log)
        sys.exit(1)
    logger.critical('%s | %s (%d bad, %d redundant)', result.status.name, result.keyring.key_id_hex,
                    result.bad, result.redundant)
    _write_output(cmdargs.output, result.keyring.encode())


def cmd_merge(cmdargs: argparse.Namespace, config: GitConfigType) -> None:
    now = _now(cmdargs)
    rings: List[CanonicalKeyring] = list()
    for fn in (cmdargs.first, cmdargs.second):
        result = _load_canonical(fn, now)
        if result.keyring is None:
            logger.critical(' ERROR | %s', fn)
            _report_errors(result.log)
            sys.exit(1)
        rings.append(result.keyring)

    merged = merge(rings[0], rings[1], now)
    if merged.keyring is None:
        logger.critical(' ERROR | cannot merge %s and %s', cmdargs.first, cmdargs.second)
        _report_errors(merged.log)
        sys.exit(1)
    logger.critical('%s | %s', merged.outcome.name if merged.outcome else merged.status.name,
                    merged.keyring.key_id_hex)
    _write_output(cmdargs.output, merged.keyring.encode())


def cmd_diff(cmdargs: argparse.Namespace, config: GitConfigType) -> None:
    first = decode_keyring_data(_read_file(cmdargs.first))
    second = decode_keyring_data(_read_file(cmdargs.second))
    only_a, only_b = diff_keyrings(first, second)
    for prefix, packets in (('-', only_a), ('+', only_b)):
        for packet in packets:
            logger.critical('%s %4d %-16s %d bytes', prefix, packet.position, packet.tag_name, packet.length)
    if only_a or only_b:
        sys.exit(1)


def cmd_show(cmdargs: argparse.Namespace, config: GitConfigType) -> None:
    result = _load_canonical(cmdargs.keyfile, _now(cmdargs))
    ring = result.keyring
    if ring is None:
        logger.critical(' ERROR | %s', cmdargs.keyfile)
        _report_errors(result.log)
        sys.exit(1)

    state = ''
    if ring.revoked:
        state = ' [revoked]'
    elif ring.expired:
        state = ' [expired]'
    logger.critical('%s %s/%s%s', 'sec' if ring.is_secret else 'pub', ring.master.algorithm_name,
                    ring.fingerprint_hex, state)
    logger.critical('      created: %s, expires: %s', _date_str(ring.master.created), _date_str(ring.expires))
    for uid in ring.user_ids + ring.user_attributes:
        marks = list()
        if uid.primary:
            marks.append('primary')
        if uid.revoked:
            marks.append('revoked')
        if uid.expired:
            marks.append('expired')
        logger.critical('uid   %d %s%s', uid.rank, uid.text, ' [%s]' % ', '.join(marks) if marks else '')
    for subkey in ring.subkeys:
        marks = list()
        if subkey.revoked:
            marks.append('revoked')
        if subkey.expired:
            marks.append('expired')
        if ring.is_secret:
            marks.append(subkey.key.secret_type.name.lower())
        logger.critical('sub   %s/%s [%s] expires: %s%s', subkey.key.algorithm_name, subkey.key.key_id_hex,
                        _flags_str(subkey.flags), _date_str(subkey.expires),
                        ' [%s]' % ', '.join(marks) if marks else '')


def command() -> None:
    parser = argparse.ArgumentParser(
        prog='keycanon',
        description='Canonicalize, merge and import OpenPGP keyrings',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    parser.add_argument('-v', '--verbose', action='store_true', default=False,
                        help='Be a bit more verbose')
    parser.add_argument('-d', '--debug', action='store_true', default=False,
                        help='Show debugging output')
    parser.add_argument('-s', '--section', dest='section', default=None,
                        help='Use config section [keycanon "sectionname"]')
    parser.add_argument('--now', dest='now', type=int, default=None,
                        help='Evaluate expiration at this unix timestamp instead of the current time')
    parser.add_argument('--version', action='version', version=__VERSION__)

    subparsers = parser.add_subparsers(help='sub-command help', dest='subcmd')

    sp_imp = subparsers.add_parser('import', help='Import keyrings into the local keyring directory')
    sp_imp.add_argument('--secret', action='store_true', default=False,
                        help='Import secret keyrings')
    sp_imp.add_argument('-k', '--keyringdir', default=None,
                        help='Keyring directory to import into')
    sp_imp.add_argument('-f', '--fingerprint', default=None,
                        help='Reject keyrings that do not have this fingerprint')
    sp_imp.add_argument('keyfile', nargs='+', help='Binary or armored keyring files, or - for stdin')
    sp_imp.set_defaults(func=cmd_import)

    sp_can = subparsers.add_parser('canonicalize', help='Canonicalize a single keyring')
    sp_can.add_argument('-o', '--output', default=None, help='Write the canonical keyring here')
    sp_can.add_argument('keyfile', help='Binary or armored keyring file, or - for stdin')
    sp_can.set_defaults(func=cmd_canonicalize)

    sp_mrg = subparsers.add_parser('merge', help='Merge two versions of the same keyring')
    sp_mrg.add_argument('-o', '--output', default=None, help='Write the merged keyring here')
    sp_mrg.add_argument('first', help='First keyring file')
    sp_mrg.add_argument('second', help='Second keyring file')
    sp_mrg.set_defaults(func=cmd_merge)

    sp_dif = subparsers.add_parser('diff', help='Show packets present in only one of two keyrings')
    sp_dif.add_argument('first', help='First keyring file')
    sp_dif.add_argument('second', help='Second keyring file')
    sp_dif.set_defaults(func=cmd_diff)

    sp_show = subparsers.add_parser('show', help='Show the canonical form of a keyring')
    sp_show.add_argument('keyfile', help='Binary or armored keyring file, or - for stdin')
    sp_show.set_defaults(func=cmd_show)

    _args = parser.parse_args()

    logger.setLevel(logging.DEBUG)

    ch = logging.StreamHandler()
    formatter = logging.Formatter('%(message)s')
    ch.setFormatter(formatter)

    if _args.verbose:
        ch.setLevel(logging.INFO)
    elif _args.debug:
        ch.setLevel(logging.DEBUG)
    else:
        ch.setLevel(logging.CRITICAL)

    logger.addHandler(ch)
    config = get_main_config(section=_args.section)

    if 'func' not in _args:
        parser.print_help()
        sys.exit(1)

    if not hasattr(_args, 'keyringdir'):
        _args.keyringdir = None

    try:
        _args.func(_args, config)
    except (Error, IOError) as ex:
        logger.critical('E: %s', ex)
        sys.exit(1)
    except RuntimeError:
        sys.exit(1)


if __name__ == '__main__':
    command()
