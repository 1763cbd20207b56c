from keybuilder import KeyringBuilder, Ed25519Key, Cv25519Key, basic_keyring, T0, NOW, FLAG_SIGN, FLAG_ENCRYPT

from keycanon.canonicalize import canonicalize
from keycanon.keyring import CanonicalKeyring
from keycanon.keys import SecretKeyType
from keycanon.merge import merge, MergeOutcome
from keycanon.oplog import LogType, ResultStatus

ALICE = 'Alice Example <alice@example.org>'


def _canon(data: bytes, now: int = NOW) -> CanonicalKeyring:
    result = canonicalize(data, now)
    assert result.keyring is not None
    return result.keyring


class TestMerge:

    def test_merge_with_itself(self, basic_keyring_bytes: bytes, now: int) -> None:
        """Test that merging a keyring with itself finds nothing new."""
        ring = _canon(basic_keyring_bytes)
        result = merge(ring, ring, now)

        assert result.status == ResultStatus.OK
        assert result.outcome == MergeOutcome.NO_NEW
        assert result.keyring == ring
        assert result.new_packets == []
        assert result.log.contains(LogType.MG_UNCHANGED)

    def test_new_user_id(self, basic_builder: KeyringBuilder, basic_keyring_bytes: bytes, now: int) -> None:
        """Test that a user id only present in the second input is added."""
        a = _canon(basic_keyring_bytes)
        b = _canon(basic_builder.user_id('Alice Work <alice@work.example>', T0 + 40).build())
        result = merge(a, b, now)

        assert result.outcome == MergeOutcome.NEW_MATERIAL
        assert len(result.keyring.user_ids) == 2
        assert len(result.new_packets) == 2
        assert result.log.contains(LogType.MG_FOUND_NEW)
        # the primary claim keeps the original user id first
        assert result.keyring.primary_user_id == ALICE

    def test_new_revocation(self, basic_builder: KeyringBuilder, basic_keyring_bytes: bytes,
                            enc_subkey: Cv25519Key, now: int) -> None:
        """Test that a revocation picked up in a merge is kept."""
        a = _canon(basic_keyring_bytes)
        b = _canon(basic_builder.revoke_subkey(enc_subkey, T0 + 300).build())
        result = merge(a, b, now)

        assert result.outcome == MergeOutcome.NEW_MATERIAL
        assert result.keyring.subkeys[1].revoked
        assert result.new_packets == [result.keyring.subkeys[1].revocation.raw]

    def test_new_subkey(self, master_key: Ed25519Key, enc_subkey: Cv25519Key, basic_keyring_bytes: bytes,
                        now: int) -> None:
        """Test that a subkey only the first input carries survives a merge."""
        a = _canon(KeyringBuilder(master_key).user_id(ALICE, T0 + 10, primary=True).build())
        b = _canon(basic_keyring_bytes)
        result = merge(a, b, now)

        assert result.outcome == MergeOutcome.NEW_MATERIAL
        assert len(result.keyring.subkeys) == 2
        assert result.log.contains(LogType.MG_NEW_SUBKEY)

    def test_commutative(self, master_key: Ed25519Key, enc_subkey: Cv25519Key, basic_keyring_bytes: bytes,
                         now: int) -> None:
        """Test that the merge order does not change the result."""
        a = _canon(basic_keyring_bytes)
        b = _canon(KeyringBuilder(master_key).user_id('Bob <bob@example.org>', T0 + 20)
                   .subkey(enc_subkey, flags=FLAG_ENCRYPT, created=T0 + 250).build())

        ab = merge(a, b, now).keyring
        ba = merge(b, a, now).keyring

        assert ab.encode() == ba.encode()
        assert [uid.text for uid in ab.user_ids] == [ALICE, 'Bob <bob@example.org>']
        # newest binding wins for the shared subkey
        assert ab.subkeys[1].binding.creation_time == T0 + 250

    def test_commutative_with_equal_times(self, master_key: Ed25519Key, enc_subkey: Cv25519Key, now: int) -> None:
        """Test that merge order does not matter when timestamps tie."""
        twin = Cv25519Key(b'\x04' * 32, created=enc_subkey.created)
        a = _canon(KeyringBuilder(master_key).user_id('Bob <bob@example.org>', T0 + 10)
                   .subkey(enc_subkey, flags=FLAG_ENCRYPT).build())
        b = _canon(KeyringBuilder(master_key).user_id('Carol <carol@example.org>', T0 + 10)
                   .subkey(twin, flags=FLAG_ENCRYPT).build())

        ab = merge(a, b, now).keyring
        ba = merge(b, a, now).keyring

        assert ab.encode() == ba.encode()
        assert [uid.text for uid in ab.user_ids] == ['Bob <bob@example.org>', 'Carol <carol@example.org>']
        assert len(ab.subkeys) == 2
        assert merge(ab, ab, now).keyring == ab

    def test_associative(self, master_key: Ed25519Key, sign_subkey: Ed25519Key, enc_subkey: Cv25519Key,
                         now: int) -> None:
        """Test that the grouping of merges does not change the result."""
        a = _canon(KeyringBuilder(master_key).user_id(ALICE, T0 + 10, primary=True).build())
        b = _canon(KeyringBuilder(master_key).user_id('Bob <bob@example.org>', T0 + 20)
                   .subkey(sign_subkey, flags=FLAG_SIGN).build())
        c = _canon(KeyringBuilder(master_key).user_id('Carol <carol@example.org>', T0 + 30)
                   .subkey(enc_subkey, flags=FLAG_ENCRYPT).build())

        left = merge(merge(a, b, now).keyring, c, now).keyring
        right = merge(a, merge(b, c, now).keyring, now).keyring

        assert left.encode() == right.encode()
        assert len(left.user_ids) == 3
        assert len(left.subkeys) == 2

    def test_revalidated(self, basic_builder: KeyringBuilder, now: int) -> None:
        """Test that material no longer valid at merge time is dropped."""
        later = now + 5000
        data = basic_builder.user_id('Future <future@example.org>', now + 1000).build()
        a = _canon(data, now=later)
        assert len(a.user_ids) == 2

        result = merge(a, a, now)

        assert result.outcome == MergeOutcome.REVALIDATED
        assert len(result.keyring.user_ids) == 1
        assert result.log.contains(LogType.MG_REVALIDATED)

    def test_different_master_keys(self, basic_keyring_bytes: bytes, other_master_key: Ed25519Key,
                                   now: int) -> None:
        """Test that keyrings of different master keys are not merged."""
        a = _canon(basic_keyring_bytes)
        b = _canon(KeyringBuilder(other_master_key).user_id('Bob <bob@example.org>', T0 + 10).build())
        result = merge(a, b, now)

        assert result.status == ResultStatus.ERROR
        assert result.keyring is None
        assert result.log.contains(LogType.MG_ERROR_HETEROGENEOUS)

    def test_public_with_secret(self, master_key: Ed25519Key, sign_subkey: Ed25519Key, enc_subkey: Cv25519Key,
                                basic_keyring_bytes: bytes, now: int) -> None:
        """Test that a public keyring is not merged with a secret one."""
        a = _canon(basic_keyring_bytes)
        b = _canon(basic_keyring(master_key, sign_subkey, enc_subkey, secret='empty').build())
        result = merge(a, b, now)

        assert result.status == ResultStatus.ERROR
        assert result.log.contains(LogType.MG_ERROR_TYPE)


class TestSecretMerge:

    def test_keeps_most_usable_material(self, master_key: Ed25519Key, sign_subkey: Ed25519Key,
                                        enc_subkey: Cv25519Key, now: int) -> None:
        """Test that usable secret material is preferred over a card stub."""
        card = _canon(basic_keyring(master_key, sign_subkey, enc_subkey, secret='divert').build())
        full = _canon(basic_keyring(master_key, sign_subkey, enc_subkey, secret='passphrase').build())

        for a, b in ((card, full), (full, card)):
            result = merge(a, b, now)
            assert result.success
            assert [t for _, t in result.keyring.secret_types()] == [SecretKeyType.PASSPHRASE] * 3
            assert result.log.contains(LogType.MG_SECRET_KEEP)

    def test_diverted_subkey(self, master_key: Ed25519Key, sign_subkey: Ed25519Key, enc_subkey: Cv25519Key,
                             now: int) -> None:
        """Test that full material for a card-diverted subkey is preserved in a merge."""
        diverted = _canon(KeyringBuilder(master_key, secret='passphrase').user_id(ALICE, T0 + 10, primary=True)
                          .subkey(sign_subkey, flags=FLAG_SIGN)
                          .subkey(enc_subkey, flags=FLAG_ENCRYPT, secret='divert').build())
        full = _canon(basic_keyring(master_key, sign_subkey, enc_subkey, secret='passphrase').build())
        assert diverted.subkeys[1].key.secret_type == SecretKeyType.DIVERT_TO_CARD

        result = merge(diverted, full, now)

        assert result.outcome == MergeOutcome.NEW_MATERIAL
        assert result.keyring.subkeys[1].key.secret_type == SecretKeyType.PASSPHRASE
        assert result.keyring == full

    def test_stub_does_not_downgrade(self, master_key: Ed25519Key, sign_subkey: Ed25519Key,
                                     enc_subkey: Cv25519Key, now: int) -> None:
        """Test that merging a stub into usable material changes nothing."""
        full = _canon(basic_keyring(master_key, sign_subkey, enc_subkey, secret='empty').build())
        stub = _canon(basic_keyring(master_key, sign_subkey, enc_subkey, secret='dummy').build())
        result = merge(full, stub, now)

        assert result.outcome == MergeOutcome.NO_NEW
        assert result.keyring == full
