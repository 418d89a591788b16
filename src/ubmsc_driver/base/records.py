"""Telemetry records produced by the decoder."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any


@dataclass(frozen=True)
class DeviceInfo:
    """Device identity and configuration strings."""

    device_model: str
    hardware_version: str
    software_version: str
    up_time: int
    poweron_times: int
    device_name: str
    device_passcode: str
    manufacturing_date: str
    serial_number: str
    passcode: str
    userdata: str
    setup_passcode: str
    userdata2: str

    def to_dict(self) -> dict[str, Any]:
        """Return the record as a plain dictionary."""
        return asdict(self)


@dataclass(frozen=True)
class CellData:
    """
    Live cell and battery measurements.

    Voltages are in volts, resistances in ohms, temperatures in degrees
    Celsius, capacities in ampere-hours and times in seconds. Currents and
    power are positive while charging.
    """

    cell_voltage: tuple[float, ...]
    average_cell_voltage: float
    delta_cell_voltage: float
    balance_current: float
    cell_resistance: tuple[float, ...]
    battery_voltage: float
    battery_power: float
    battery_current: float
    battery_temperature: tuple[float, ...]
    mosfet_temperature: float
    remain_percent: int
    remain_capacity: float
    nominal_capacity: float
    cycle_count: int
    cycle_capacity: float
    up_time: int

    @property
    def cell_count(self) -> int:
        """Return the number of cells present."""
        return len(self.cell_voltage)

    def to_dict(self) -> dict[str, Any]:
        """Return the record as a plain dictionary with lists for sequences."""
        data = asdict(self)
        for key in ("cell_voltage", "cell_resistance", "battery_temperature"):
            data[key] = list(data[key])
        return data
