import sys
from pathlib import Path

import pytest

from typing import Generator

sys.path.insert(0, str(Path(__file__).parent))

from keybuilder import Ed25519Key, Cv25519Key, RSAKey, DSAKey, ECDSAKey, KeyringBuilder, basic_keyring, T0, NOW  # noqa: E402

from keycanon.store import MemoryKeyringStore, FileKeyringStore  # noqa: E402


@pytest.fixture
def now() -> int:
    """Fixed evaluation time, well after every key in the tests was made."""
    return NOW


@pytest.fixture
def master_key() -> Ed25519Key:
    """Ed25519 master key from a fixed seed."""
    return Ed25519Key(b'\x01' * 32, created=T0)


@pytest.fixture
def other_master_key() -> Ed25519Key:
    """A second, unrelated master key."""
    return Ed25519Key(b'\x09' * 32, created=T0)


@pytest.fixture
def sign_subkey() -> Ed25519Key:
    """Ed25519 signing subkey."""
    return Ed25519Key(b'\x02' * 32, created=T0 + 100)


@pytest.fixture
def enc_subkey() -> Cv25519Key:
    """Curve25519 encryption subkey."""
    return Cv25519Key(b'\x03' * 32, created=T0 + 200)


@pytest.fixture(scope='session')
def rsa_key() -> RSAKey:
    """RSA master key generated once per session."""
    from cryptography.hazmat.primitives.asymmetric import rsa
    return RSAKey(rsa.generate_private_key(public_exponent=65537, key_size=2048), created=T0)


@pytest.fixture(scope='session')
def dsa_key() -> DSAKey:
    """DSA-2048 master key generated once per session."""
    from cryptography.hazmat.primitives.asymmetric import dsa
    return DSAKey(dsa.generate_private_key(key_size=2048), created=T0)


@pytest.fixture(scope='session')
def ecdsa_key() -> ECDSAKey:
    """NIST P-256 ECDSA master key generated once per session."""
    from cryptography.hazmat.primitives.asymmetric import ec
    return ECDSAKey(ec.generate_private_key(ec.SECP256R1()), created=T0)


@pytest.fixture
def basic_builder(master_key: Ed25519Key, sign_subkey: Ed25519Key, enc_subkey: Cv25519Key) -> KeyringBuilder:
    """Builder for a keyring with one user id, a signing and an encrypting subkey."""
    return basic_keyring(master_key, sign_subkey, enc_subkey)


@pytest.fixture
def basic_keyring_bytes(basic_builder: KeyringBuilder) -> bytes:
    """Binary encoding of the basic keyring."""
    return basic_builder.build()


@pytest.fixture
def memory_store() -> MemoryKeyringStore:
    """Empty in-memory keyring store."""
    return MemoryKeyringStore()


@pytest.fixture
def file_store(tmp_path: Path) -> Generator[FileKeyringStore, None, None]:
    """Keyring store rooted in a temporary directory."""
    yield FileKeyringStore(tmp_path / 'keyring', now=NOW)
