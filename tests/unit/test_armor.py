import pytest

from keybuilder import armor, packet

from keycanon.armor import crc24, dearmor, is_armored, decode_keyring_data
from keycanon.errors import FramingError


class TestArmor:

    def test_crc24_known_value(self) -> None:
        """Test the CRC-24 of an empty input is the initial value."""
        assert crc24(b'') == 0xB704CE

    def test_dearmor_round_trip(self) -> None:
        """Test that armored data decodes to the original bytes."""
        data = packet(13, b'Alice <alice@example.org>') * 5
        assert dearmor(armor(data)) == data

    def test_multiple_blocks(self) -> None:
        """Test that several armored blocks are concatenated."""
        first = packet(13, b'first')
        second = packet(13, b'second')
        assert dearmor(armor(first) + b'\n' + armor(second)) == first + second

    def test_checksum_mismatch(self) -> None:
        """Test that a wrong checksum is rejected."""
        armored = armor(packet(13, b'alice'))
        lines = armored.split(b'\n')
        for i, line in enumerate(lines):
            if line.startswith(b'='):
                lines[i] = b'=AAAA'
        with pytest.raises(FramingError):
            dearmor(b'\n'.join(lines))

    def test_unterminated(self) -> None:
        """Test that a block without an END line is rejected."""
        armored = armor(packet(13, b'alice'))
        with pytest.raises(FramingError):
            dearmor(armored.split(b'-----END')[0])

    def test_decode_passes_binary_through(self) -> None:
        """Test that binary data is returned unchanged."""
        data = packet(13, b'alice')
        assert not is_armored(data)
        assert decode_keyring_data(data) == data

    def test_decode_armored(self) -> None:
        """Test that armored data is detected and decoded."""
        data = packet(13, b'alice')
        assert decode_keyring_data(armor(data)) == data
