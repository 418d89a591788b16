"""
JK02 record layouts.

Offsets are relative to the payload, which starts after the 4-byte header and
the record type byte. Payload byte 0 is the record counter.
"""

from ubmsc_driver.base.decoder import Field, RecordTable, Rule

MILLI = 1000
DECI = 10

DEVICE_INFO_TABLE = RecordTable(
    "device_info",
    (
        Field("device_model", 1, 16, Rule.ASCII),
        Field("hardware_version", 17, 8, Rule.ASCII),
        Field("software_version", 25, 8, Rule.ASCII),
        Field("up_time", 33, 4),
        Field("poweron_times", 37, 4),
        Field("device_name", 41, 16, Rule.ASCII),
        Field("device_passcode", 57, 16, Rule.ASCII),
        Field("manufacturing_date", 73, 8, Rule.ASCII),
        Field("serial_number", 81, 11, Rule.ASCII),
        Field("passcode", 92, 5, Rule.ASCII),
        Field("userdata", 97, 16, Rule.ASCII),
        Field("setup_passcode", 113, 16, Rule.ASCII),
        Field("userdata2", 129, 16, Rule.ASCII),
    ),
)

# 32 cell slots, two battery temperature sensors
CELL_DATA_32S_TABLE = RecordTable(
    "cell_data_32s",
    (
        Field("cell_voltage", 1, 2, Rule.UINT, MILLI, count=32),
        Field("cell_mask", 65, 4),
        Field("average_cell_voltage", 69, 2, Rule.UINT, MILLI),
        Field("delta_cell_voltage", 71, 2, Rule.UINT, MILLI),
        Field("balance_current", 73, 2, Rule.INT, MILLI),
        Field("cell_resistance", 75, 2, Rule.UINT, MILLI, count=32),
        Field("battery_voltage", 145, 4, Rule.UINT, MILLI),
        Field("battery_power", 149, 4, Rule.INT, MILLI),
        Field("battery_current", 153, 4, Rule.INT, MILLI),
        Field("battery_temperature", 157, 2, Rule.INT, DECI, count=2),
        Field("mosfet_temperature", 161, 2, Rule.INT, DECI),
        Field("remain_percent", 168, 1),
        Field("remain_capacity", 169, 4, Rule.UINT, MILLI),
        Field("nominal_capacity", 173, 4, Rule.UINT, MILLI),
        Field("cycle_count", 177, 4),
        Field("cycle_capacity", 181, 4, Rule.UINT, MILLI),
        Field("up_time", 189, 4),
        Field("mosfet_temperature2", 249, 2, Rule.INT, DECI),
    ),
)
