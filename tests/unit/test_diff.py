import pytest

from keybuilder import KeyringBuilder, Cv25519Key, T0

from keycanon.diff import diff_keyrings, diff_packets
from keycanon.errors import FramingError
from keycanon.packets import read_packets


class TestDiff:

    def test_identical(self, basic_keyring_bytes: bytes) -> None:
        """Test that equal encodings have no differences."""
        assert diff_keyrings(basic_keyring_bytes, basic_keyring_bytes) == ([], [])

    def test_order_is_ignored(self, basic_builder: KeyringBuilder) -> None:
        """Test that reordered packets do not count as differences."""
        pkts = basic_builder.packets
        reordered = b''.join([pkts[0], pkts[5], pkts[6], pkts[1], pkts[2], pkts[3], pkts[4]])
        assert diff_keyrings(basic_builder.build(), reordered) == ([], [])

    def test_symmetric(self, basic_builder: KeyringBuilder, enc_subkey: Cv25519Key) -> None:
        """Test that swapping the inputs swaps the result."""
        before = basic_builder.build()
        after = basic_builder.revoke_subkey(enc_subkey, T0 + 300).user_id('Bob <bob@example.org>', T0 + 20).build()

        only_before, only_after = diff_keyrings(before, after)
        swapped = diff_keyrings(after, before)

        assert only_before == []
        assert [p.position for p in only_after] == [7, 8, 9]
        assert [p.tag for p in only_after] == [2, 13, 2]
        assert swapped == (only_after, only_before)

    def test_duplicates_reported_once(self, basic_keyring_bytes: bytes) -> None:
        """Test that a repeated packet is reported at its first position."""
        extra = read_packets(basic_keyring_bytes)[1]
        a = read_packets(basic_keyring_bytes + extra.buf + extra.buf)
        b = [p for p in read_packets(basic_keyring_bytes) if p != extra]

        only_a, only_b = diff_packets(a, b)

        assert [p.position for p in only_a] == [1]
        assert only_b == []

    def test_framing_error(self, basic_keyring_bytes: bytes) -> None:
        """Test that unreadable input raises."""
        with pytest.raises(FramingError):
            diff_keyrings(basic_keyring_bytes, basic_keyring_bytes[:-1])
