"""Tests for table-driven record decoding."""

from __future__ import annotations

from typing import Any

import pytest

from tests.support.fixtures.sample_frames import CELL_DATA_PAYLOAD, DEVICE_INFO_PAYLOAD
from ubmsc_driver.base.codec import Frame
from ubmsc_driver.base.decoder import Field, RecordTable, Rule
from ubmsc_driver.base.exceptions import DecodeError
from ubmsc_driver.base.records import CellData, DeviceInfo
from ubmsc_driver.jk import CELL_DATA_32S_TABLE, DEVICE_INFO_TABLE, JK02_32S


def patched(payload: bytes, offset: int, data: bytes) -> bytes:
    """Return ``payload`` with ``data`` written at ``offset``."""
    buf = bytearray(payload)
    buf[offset : offset + len(data)] = data
    return bytes(buf)


class TestDeviceInfo:
    """Test decoding of the device info record."""

    def setup_method(self) -> None:
        """Set up the JK decoder."""
        self.decoder = JK02_32S.decoder()

    def test_decode_sample(self, expected_device_info: dict[str, Any]) -> None:
        """Test the captured payload decodes to the known values."""
        info = self.decoder.decode_device_info(DEVICE_INFO_PAYLOAD)
        assert isinstance(info, DeviceInfo)
        assert info.to_dict() == expected_device_info

    def test_strings_are_trimmed(self) -> None:
        """Test NUL padding and surrounding spaces are removed."""
        payload = patched(DEVICE_INFO_PAYLOAD, 41, b"  pack 1  ".ljust(16, b"\x00"))
        info = self.decoder.decode_device_info(payload)
        assert info.device_name == "pack 1"

    def test_invalid_ascii(self) -> None:
        """Test non-ASCII bytes in a string field."""
        payload = patched(DEVICE_INFO_PAYLOAD, 1, b"\xff")
        with pytest.raises(DecodeError) as exc_info:
            self.decoder.decode_device_info(payload)
        assert exc_info.value.field == "device_model"

    def test_short_payload(self) -> None:
        """Test a payload that ends before the last field."""
        with pytest.raises(DecodeError) as exc_info:
            self.decoder.decode_device_info(DEVICE_INFO_PAYLOAD[:140])
        assert exc_info.value.field == "userdata2"


class TestCellData:
    """Test decoding of the cell data record."""

    def setup_method(self) -> None:
        """Set up the JK decoder."""
        self.decoder = JK02_32S.decoder()

    def test_decode_sample(self, expected_cell_data: dict[str, Any]) -> None:
        """Test the captured payload decodes to the known values."""
        cells = self.decoder.decode_cell_data(CELL_DATA_PAYLOAD)
        assert isinstance(cells, CellData)
        assert {name: getattr(cells, name) for name in expected_cell_data} == expected_cell_data
        assert cells.cell_count == 6

    def test_to_dict_uses_lists(self) -> None:
        """Test sequences become lists in the dictionary form."""
        data = self.decoder.decode_cell_data(CELL_DATA_PAYLOAD).to_dict()
        assert data["cell_voltage"] == [2.384, 2.384, 2.384, 2.384, 2.384, 2.383]
        assert data["battery_temperature"] == [23.8, 24.3]

    def test_cell_mask_selects_cells(self) -> None:
        """Test the presence mask decides which slots are reported."""
        payload = patched(CELL_DATA_PAYLOAD, 65, (0b101).to_bytes(4, "little"))
        cells = self.decoder.decode_cell_data(payload)
        assert cells.cell_voltage == (2.384, 2.384)
        assert cells.cell_resistance == (0.138, 0.14)

    def test_zero_mask_uses_populated_slots(self) -> None:
        """Test a zero mask falls back to non-zero voltage slots."""
        payload = patched(CELL_DATA_PAYLOAD, 65, bytes(4))
        cells = self.decoder.decode_cell_data(payload)
        assert cells.cell_count == 6

    def test_negative_values(self) -> None:
        """Test signed fields decode below zero."""
        payload = patched(CELL_DATA_PAYLOAD, 157, (-55).to_bytes(2, "little", signed=True))
        payload = patched(payload, 153, (-1500).to_bytes(4, "little", signed=True))
        cells = self.decoder.decode_cell_data(payload)
        assert cells.battery_temperature == (-5.5, 24.3)
        assert cells.battery_current == -1.5

    def test_primary_mosfet_temperature(self) -> None:
        """Test the primary MOSFET sensor wins when it reports a value."""
        payload = patched(CELL_DATA_PAYLOAD, 161, (312).to_bytes(2, "little"))
        assert self.decoder.decode_cell_data(payload).mosfet_temperature == 31.2

    def test_remain_percent_above_100(self) -> None:
        """Test an impossible state of charge is refused."""
        payload = patched(CELL_DATA_PAYLOAD, 168, bytes([101]))
        with pytest.raises(DecodeError) as exc_info:
            self.decoder.decode_cell_data(payload)
        assert exc_info.value.field == "remain_percent"

    def test_short_payload(self) -> None:
        """Test a truncated payload never yields a partial record."""
        with pytest.raises(DecodeError) as exc_info:
            self.decoder.decode_cell_data(CELL_DATA_PAYLOAD[:100])
        assert exc_info.value.field == "cell_resistance"
        assert "payload has 100" in exc_info.value.reason


class TestDecodeFrame:
    """Test dispatch on the response record type."""

    def setup_method(self) -> None:
        """Set up the JK decoder."""
        self.decoder = JK02_32S.decoder()

    def test_dispatch(self) -> None:
        """Test each record type reaches its decoder."""
        assert isinstance(self.decoder.decode_frame(Frame(0x03, DEVICE_INFO_PAYLOAD)), DeviceInfo)
        assert isinstance(self.decoder.decode_frame(Frame(0x02, CELL_DATA_PAYLOAD)), CellData)

    def test_unknown_record_type(self) -> None:
        """Test settings records are not decoded."""
        with pytest.raises(DecodeError) as exc_info:
            self.decoder.decode_frame(Frame(0x01, CELL_DATA_PAYLOAD))
        assert exc_info.value.field == "record_type"
        assert "0x01" in str(exc_info.value)


class TestRecordTable:
    """Test record table helpers."""

    def test_sizes(self) -> None:
        """Test the JK tables fit in the fixed payload."""
        assert DEVICE_INFO_TABLE.size == 145
        assert CELL_DATA_32S_TABLE.size == 251
        assert CELL_DATA_32S_TABLE.size <= len(CELL_DATA_PAYLOAD)

    def test_field_lookup(self) -> None:
        """Test fields are looked up by name."""
        assert CELL_DATA_32S_TABLE.field("cell_voltage").count == 32
        with pytest.raises(KeyError):
            CELL_DATA_32S_TABLE.field("missing")

    def test_custom_table(self) -> None:
        """Test a small table with every rule."""
        table = RecordTable(
            "custom",
            (
                Field("u", 0, 2),
                Field("i", 2, 1, Rule.INT, 10),
                Field("s", 3, 3, Rule.ASCII),
                Field("list", 6, 1, count=2),
            ),
        )
        values = table.decode(b"\x01\x02\xf6ab\x00\x07\x08")
        assert values == {"u": 0x0201, "i": -1.0, "s": "ab", "list": (7, 8)}
