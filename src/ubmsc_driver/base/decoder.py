"""
Table-driven decoding of validated payloads into telemetry records.

A device family describes each record as a :class:`RecordTable`: a tuple of
:class:`Field` entries giving the byte offset (relative to the payload, i.e.
after header and command byte), the width of one element, the decoding rule,
the fixed-point divisor and the number of consecutive elements. Adding a new
layout is a matter of adding a table.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from .exceptions import DecodeError
from .records import CellData, DeviceInfo

if TYPE_CHECKING:
    from .codec import Frame

MAX_PERCENT = 100


class Rule(Enum):
    """How the bytes of a field are interpreted."""

    UINT = "uint"
    INT = "int"
    ASCII = "ascii"


@dataclass(frozen=True)
class Field:
    """One field of a record table."""

    name: str
    offset: int
    width: int
    rule: Rule = Rule.UINT
    divisor: int | None = None
    count: int | None = None

    @property
    def end(self) -> int:
        """Return the offset one past the last byte of the field."""
        return self.offset + self.width * (self.count or 1)

    def read(self, payload: bytes) -> Any:
        """Decode this field from ``payload`` (bounds already checked)."""
        if self.count is None:
            return self._element(payload[self.offset : self.end])
        return tuple(
            self._element(payload[start : start + self.width])
            for start in range(self.offset, self.end, self.width)
        )

    def _element(self, raw: bytes) -> Any:
        if self.rule is Rule.ASCII:
            try:
                text = raw.decode("ascii")
            except UnicodeDecodeError as exc:
                raise DecodeError(self.name, f"invalid ASCII: {exc.reason}", raw_data=raw) from exc
            return text.strip("\x00 ")
        value = int.from_bytes(raw, "little", signed=self.rule is Rule.INT)
        if self.divisor is None:
            return value
        return value / self.divisor


@dataclass(frozen=True)
class RecordTable:
    """Ordered field table for one record kind."""

    name: str
    fields: tuple[Field, ...]

    @property
    def size(self) -> int:
        """Return the minimum payload size covering every field."""
        return max(f.end for f in self.fields)

    def field(self, name: str) -> Field:
        """Return the field called ``name``."""
        for f in self.fields:
            if f.name == name:
                return f
        raise KeyError(name)

    def decode(self, payload: bytes) -> dict[str, Any]:
        """
        Decode every field of the table.

        Bounds are checked for all fields before any value is produced, so a
        short payload never yields a partial result.

        Args:
            payload: Validated payload bytes.

        Returns:
            Mapping of field name to decoded value.

        Raises:
            DecodeError: If a field lies past the payload end or is invalid.
        """
        payload = bytes(payload)
        for f in self.fields:
            if f.end > len(payload):
                raise DecodeError(
                    f.name,
                    f"needs bytes {f.offset}..{f.end} but payload has {len(payload)}",
                )
        return {f.name: f.read(payload) for f in self.fields}


def decode_device_info(payload: bytes, table: RecordTable) -> DeviceInfo:
    """Decode a device info payload with the given table."""
    values = table.decode(payload)
    return DeviceInfo(
        device_model=values["device_model"],
        hardware_version=values["hardware_version"],
        software_version=values["software_version"],
        up_time=values["up_time"],
        poweron_times=values["poweron_times"],
        device_name=values["device_name"],
        device_passcode=values["device_passcode"],
        manufacturing_date=values["manufacturing_date"],
        serial_number=values["serial_number"],
        passcode=values["passcode"],
        userdata=values["userdata"],
        setup_passcode=values["setup_passcode"],
        userdata2=values["userdata2"],
    )


def decode_cell_data(payload: bytes, table: RecordTable) -> CellData:
    """
    Decode a cell data payload with the given table.

    The number of cells comes from the cell presence mask when the table has
    one and it is non-zero, otherwise from the populated voltage slots. The
    same cell indices are used for voltages and resistances.

    Raises:
        DecodeError: If a field is missing or out of range.
    """
    values = table.decode(payload)
    voltages = values["cell_voltage"]
    resistances = values["cell_resistance"]
    if len(voltages) != len(resistances):
        raise DecodeError("cell_resistance", "voltage and resistance slot counts differ")

    mask = values.get("cell_mask", 0)
    if mask:
        cells = [i for i in range(len(voltages)) if mask >> i & 1]
    else:
        cells = [i for i, v in enumerate(voltages) if v]

    remain_percent = values["remain_percent"]
    if remain_percent > MAX_PERCENT:
        raise DecodeError("remain_percent", f"{remain_percent} is above {MAX_PERCENT}")

    mosfet_temperature = values["mosfet_temperature"]
    if not mosfet_temperature and "mosfet_temperature2" in values:
        mosfet_temperature = values["mosfet_temperature2"]

    return CellData(
        cell_voltage=tuple(voltages[i] for i in cells),
        average_cell_voltage=values["average_cell_voltage"],
        delta_cell_voltage=values["delta_cell_voltage"],
        balance_current=values["balance_current"],
        cell_resistance=tuple(resistances[i] for i in cells),
        battery_voltage=values["battery_voltage"],
        battery_power=values["battery_power"],
        battery_current=values["battery_current"],
        battery_temperature=tuple(values["battery_temperature"]),
        mosfet_temperature=mosfet_temperature,
        remain_percent=remain_percent,
        remain_capacity=values["remain_capacity"],
        nominal_capacity=values["nominal_capacity"],
        cycle_count=values["cycle_count"],
        cycle_capacity=values["cycle_capacity"],
        up_time=values["up_time"],
    )


class RecordDecoder:
    """Decode response frames of one device family into records."""

    def __init__(
        self,
        device_info_table: RecordTable,
        cell_data_table: RecordTable,
        record_types: dict[int, str],
    ) -> None:
        """
        Initialize the decoder.

        Args:
            device_info_table: Field table for device info payloads.
            cell_data_table: Field table for cell data payloads.
            record_types: Response command id to record kind
                ("device_info" or "cell_data").
        """
        self.device_info_table = device_info_table
        self.cell_data_table = cell_data_table
        self.record_types = record_types

    def decode_device_info(self, payload: bytes) -> DeviceInfo:
        """Decode a device info payload."""
        return decode_device_info(payload, self.device_info_table)

    def decode_cell_data(self, payload: bytes) -> CellData:
        """Decode a cell data payload."""
        return decode_cell_data(payload, self.cell_data_table)

    def decode_frame(self, frame: Frame) -> DeviceInfo | CellData:
        """
        Decode a validated frame according to its response command.

        Raises:
            DecodeError: If the command is not a known record type or a field
                cannot be decoded.
        """
        kind = self.record_types.get(frame.command)
        if kind == "device_info":
            return self.decode_device_info(frame.payload)
        if kind == "cell_data":
            return self.decode_cell_data(frame.payload)
        raise DecodeError("record_type", f"unknown record type 0x{frame.command:02x}")
