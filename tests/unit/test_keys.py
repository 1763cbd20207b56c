import hashlib

import pytest

from keybuilder import Ed25519Key, Cv25519Key, packet, mpi, T0

from keycanon.errors import ParseError
from keycanon.keys import KeyPacket, SecretKeyType, read_mpi, ALGO_EDDSA, ALGO_ECDH
from keycanon.packets import read_packet


def _parse(data: bytes) -> KeyPacket:
    pkt, _ = read_packet(data)
    return KeyPacket(pkt)


class TestKeyPacket:

    def test_fingerprint_and_key_id(self, master_key: Ed25519Key) -> None:
        """Test that the fingerprint is the SHA-1 over the framed public body."""
        key = _parse(master_key.public_packet())
        body = master_key.public_body
        expected = hashlib.sha1(b'\x99' + len(body).to_bytes(2, 'big') + body).digest()

        assert key.fingerprint == expected
        assert key.key_id == int.from_bytes(expected[-8:], 'big')
        assert key.key_id_hex == expected[-8:].hex().upper()
        assert key.algorithm == ALGO_EDDSA
        assert key.created == T0
        assert key.can_sign
        assert key.is_master
        assert not key.is_secret

    def test_secret_key_shares_fingerprint(self, master_key: Ed25519Key) -> None:
        """Test that secret packets hash only their public part."""
        public = _parse(master_key.public_packet())
        secret = _parse(master_key.secret_packet())

        assert secret.is_secret
        assert secret.fingerprint == public.fingerprint

    @pytest.mark.parametrize('mode,expected', [
        ('empty', SecretKeyType.PASSPHRASE_EMPTY),
        ('dummy', SecretKeyType.GNU_DUMMY),
        ('divert', SecretKeyType.DIVERT_TO_CARD),
        ('passphrase', SecretKeyType.PASSPHRASE),
    ])
    def test_secret_classification(self, master_key: Ed25519Key, mode: str, expected: SecretKeyType) -> None:
        """Test that each secret material variant is recognised."""
        key = _parse(master_key.secret_packet(mode=mode))
        assert key.secret_type == expected

    def test_fidelity_order(self) -> None:
        """Test that usable material ranks above stubs."""
        assert SecretKeyType.PASSPHRASE.fidelity > SecretKeyType.DIVERT_TO_CARD.fidelity
        assert SecretKeyType.DIVERT_TO_CARD.fidelity > SecretKeyType.GNU_DUMMY.fidelity
        assert SecretKeyType.GNU_DUMMY.fidelity > SecretKeyType.UNAVAILABLE.fidelity
        assert not SecretKeyType.GNU_DUMMY.is_usable
        assert SecretKeyType.DIVERT_TO_CARD.is_usable

    def test_ecdh_subkey(self, enc_subkey: Cv25519Key) -> None:
        """Test that an ECDH subkey with KDF parameters parses."""
        key = _parse(enc_subkey.public_packet(subkey=True))
        assert key.algorithm == ALGO_ECDH
        assert key.can_encrypt
        assert not key.can_sign
        assert not key.is_master
        assert key.public_body == enc_subkey.public_body

    def test_v3_rejected(self) -> None:
        """Test that version 3 key packets are not parsed."""
        body = b'\x03' + T0.to_bytes(4, 'big') + b'\x00\x00' + b'\x01' + mpi(0xC0FFEE) + mpi(17)
        with pytest.raises(ParseError):
            _parse(packet(6, body))

    def test_unknown_algorithm_public(self) -> None:
        """Test that public keys of unknown algorithms keep their whole body."""
        body = b'\x04' + T0.to_bytes(4, 'big') + b'\x63' + b'opaque'
        key = _parse(packet(14, body))
        assert key.public_body == body
        assert key.algorithm_name == 'algo-99'

    def test_truncated_material(self, master_key: Ed25519Key) -> None:
        """Test that truncated key material fails to parse."""
        body = master_key.public_body[:-5]
        with pytest.raises(ParseError):
            _parse(packet(6, body))


class TestReadMpi:

    def test_read(self) -> None:
        """Test reading an MPI and the offset past it."""
        value, at = read_mpi(b'\x00' + mpi(0x1234), 1)
        assert value == 0x1234
        assert at == 5

    def test_truncated(self) -> None:
        """Test that an MPI running past the buffer fails."""
        with pytest.raises(ParseError):
            read_mpi(b'\x00\x20\x01\x02', 0)
