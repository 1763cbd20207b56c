import pytest

from keybuilder import Ed25519Key, Cv25519Key, basic_keyring

from keycanon.canonicalize import canonicalize
from keycanon.errors import StoreError
from keycanon.keyring import CanonicalKeyring
from keycanon.store import FileKeyringStore, MemoryKeyringStore


@pytest.fixture
def ring(basic_keyring_bytes: bytes, now: int) -> CanonicalKeyring:
    return canonicalize(basic_keyring_bytes, now).keyring


class TestFileKeyringStore:

    def test_path_layout(self, file_store: FileKeyringStore) -> None:
        """Test the on-disk layout for public and secret keyrings."""
        path = file_store.make_keyring_path(0xABCDEF0123456789)
        assert path == file_store.topdir / 'public' / 'AB' / 'ABCDEF0123456789'
        path = file_store.make_keyring_path(0x0123456789ABCDEF, secret=True)
        assert path == file_store.topdir / 'secret' / '01' / '0123456789ABCDEF'

    def test_store_and_load(self, file_store: FileKeyringStore, ring: CanonicalKeyring) -> None:
        """Test that a stored keyring loads back unchanged."""
        stats = file_store.store_canonical_keyring(ring)

        assert stats.inserted
        assert stats.user_ids == 1
        assert stats.subkeys == 2
        loaded = file_store.load_canonical_keyring(ring.key_id)
        assert loaded == ring
        assert file_store.load_canonical_keyring(ring.key_id, secret=True) is None

    def test_replace(self, file_store: FileKeyringStore, ring: CanonicalKeyring) -> None:
        """Test that storing again replaces the file without leftovers."""
        file_store.store_canonical_keyring(ring)
        stats = file_store.store_canonical_keyring(ring)
        path = file_store.make_keyring_path(ring.key_id)

        assert not stats.inserted
        assert [p.name for p in path.parent.iterdir()] == [path.name]

    def test_missing(self, file_store: FileKeyringStore) -> None:
        """Test that an unknown key id loads as None."""
        assert file_store.load_canonical_keyring(0x1122334455667788) is None

    def test_invalid_file(self, file_store: FileKeyringStore, ring: CanonicalKeyring) -> None:
        """Test that a corrupted stored file raises."""
        path = file_store.make_keyring_path(ring.key_id)
        path.parent.mkdir(parents=True)
        path.write_bytes(b'\x99garbage')
        with pytest.raises(StoreError):
            file_store.load_canonical_keyring(ring.key_id)

    def test_wrong_key_id(self, file_store: FileKeyringStore, ring: CanonicalKeyring) -> None:
        """Test that a file stored under the wrong key id raises."""
        path = file_store.make_keyring_path(0x1122334455667788)
        path.parent.mkdir(parents=True)
        path.write_bytes(ring.encode())
        with pytest.raises(StoreError):
            file_store.load_canonical_keyring(0x1122334455667788)

    def test_secret_stored_apart(self, file_store: FileKeyringStore, master_key: Ed25519Key,
                                 sign_subkey: Ed25519Key, enc_subkey: Cv25519Key, now: int) -> None:
        """Test that secret keyrings go to their own directory."""
        data = basic_keyring(master_key, sign_subkey, enc_subkey, secret='empty').build()
        secret = canonicalize(data, now).keyring
        file_store.store_canonical_keyring(secret)

        assert file_store.make_keyring_path(secret.key_id, secret=True).exists()
        assert file_store.load_canonical_keyring(secret.key_id) is None
        assert file_store.load_canonical_keyring(secret.key_id, secret=True).is_secret


class TestMemoryKeyringStore:

    def test_counts_calls(self, memory_store: MemoryKeyringStore, ring: CanonicalKeyring) -> None:
        """Test that store calls are counted per key id."""
        assert memory_store.store_canonical_keyring(ring).inserted
        assert not memory_store.store_canonical_keyring(ring).inserted
        assert memory_store.store_calls == {ring.key_id: 2}
        assert memory_store.load_canonical_keyring(ring.key_id) is ring

    def test_import_lookup(self, memory_store: MemoryKeyringStore, ring: CanonicalKeyring) -> None:
        """Test that the import lookup returns both keyrings from one call."""
        memory_store.store_canonical_keyring(ring)

        assert memory_store.load_canonical_keyrings(ring.key_id) == (ring, None)
        assert memory_store.load_canonical_keyrings(ring.key_id, secret=True) == (None, ring)
        assert memory_store.load_calls == {ring.key_id: 2}
