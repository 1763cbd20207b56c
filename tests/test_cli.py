import sys
import pytest

from pathlib import Path
from typing import List

from keybuilder import KeyringBuilder, Ed25519Key, armor, T0, NOW

import keycanon
from keycanon.canonicalize import canonicalize


@pytest.fixture(autouse=True)
def no_git_config(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the user's git configuration out of the tests."""
    monkeypatch.setitem(keycanon.CONFIGCACHE, 'default', {'secret': 'no'})


def run(monkeypatch: pytest.MonkeyPatch, *args: str) -> None:
    argv: List[str] = ['keycanon', '--now', str(NOW)] + list(args)
    monkeypatch.setattr(sys, 'argv', argv)
    keycanon.command()


class TestCommands:

    def test_canonicalize(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path, basic_keyring_bytes: bytes) -> None:
        """Test canonicalizing an armored keyring file."""
        infile = tmp_path / 'alice.asc'
        infile.write_bytes(armor(basic_keyring_bytes))
        outfile = tmp_path / 'alice.gpg'

        run(monkeypatch, 'canonicalize', '-o', str(outfile), str(infile))

        assert outfile.read_bytes() == canonicalize(basic_keyring_bytes, NOW).keyring.encode()

    def test_canonicalize_rejected(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path,
                                   master_key: Ed25519Key, caplog: pytest.LogCaptureFixture) -> None:
        """Test that a keyring without user ids exits with an error."""
        infile = tmp_path / 'bare.gpg'
        infile.write_bytes(KeyringBuilder(master_key).build())

        with pytest.raises(SystemExit) as excinfo:
            run(monkeypatch, 'canonicalize', str(infile))
        assert excinfo.value.code == 1
        assert 'KC_ERROR_NO_UID' in caplog.text

    def test_import(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path, basic_keyring_bytes: bytes,
                    master_key: Ed25519Key, caplog: pytest.LogCaptureFixture) -> None:
        """Test importing into a keyring directory, twice."""
        infile = tmp_path / 'alice.gpg'
        infile.write_bytes(basic_keyring_bytes)
        keyringdir = tmp_path / 'keyring'

        run(monkeypatch, 'import', '-k', str(keyringdir), str(infile))
        keyid = master_key.key_id.hex().upper()
        assert (keyringdir / 'public' / keyid[:2] / keyid).exists()
        assert 'new: 1' in caplog.text

        run(monkeypatch, 'import', '-k', str(keyringdir), str(infile))
        assert 'unchanged: 1' in caplog.text

    def test_import_wrong_fingerprint(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path,
                                      basic_keyring_bytes: bytes, other_master_key: Ed25519Key) -> None:
        """Test that a fingerprint mismatch fails the import."""
        infile = tmp_path / 'alice.gpg'
        infile.write_bytes(basic_keyring_bytes)

        with pytest.raises(SystemExit):
            run(monkeypatch, 'import', '-k', str(tmp_path / 'keyring'), '-f', other_master_key.fingerprint.hex(),
                str(infile))

    def test_merge(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path, basic_builder: KeyringBuilder,
                   basic_keyring_bytes: bytes) -> None:
        """Test merging two versions of a keyring."""
        first = tmp_path / 'first.gpg'
        first.write_bytes(basic_keyring_bytes)
        second = tmp_path / 'second.gpg'
        second.write_bytes(basic_builder.user_id('Alice Work <alice@work.example>', T0 + 40).build())
        outfile = tmp_path / 'merged.gpg'

        run(monkeypatch, 'merge', '-o', str(outfile), str(first), str(second))

        merged = canonicalize(outfile.read_bytes(), NOW).keyring
        assert len(merged.user_ids) == 2

    def test_diff(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path, basic_builder: KeyringBuilder,
                  basic_keyring_bytes: bytes, caplog: pytest.LogCaptureFixture) -> None:
        """Test that diff exits non-zero only when the keyrings differ."""
        first = tmp_path / 'first.gpg'
        first.write_bytes(basic_keyring_bytes)
        run(monkeypatch, 'diff', str(first), str(first))

        second = tmp_path / 'second.gpg'
        second.write_bytes(basic_builder.user_id('Bob <bob@example.org>', T0 + 40).build())
        with pytest.raises(SystemExit) as excinfo:
            run(monkeypatch, 'diff', str(first), str(second))
        assert excinfo.value.code == 1
        assert '+    7 user-id' in caplog.text

    def test_show(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path, basic_keyring_bytes: bytes,
                  master_key: Ed25519Key, caplog: pytest.LogCaptureFixture) -> None:
        """Test the keyring summary."""
        infile = tmp_path / 'alice.gpg'
        infile.write_bytes(basic_keyring_bytes)

        run(monkeypatch, 'show', str(infile))

        assert 'pub eddsa/%s' % master_key.fingerprint.hex().upper() in caplog.text
        assert 'Alice Example <alice@example.org> [primary]' in caplog.text
        assert '[S]' in caplog.text
        assert '[E]' in caplog.text

    def test_missing_file(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        """Test that an unreadable file exits with an error."""
        with pytest.raises(SystemExit):
            run(monkeypatch, 'show', str(tmp_path / 'nope.gpg'))
