"""JK BMS (JK02 protocol) support for ubmsc."""

from ubmsc_driver.base.codec import ChecksumKind, FrameFormat, FrameLayout
from ubmsc_driver.base.family import DeviceFamily, GattRoles

from .constants import (
    CMD_CELL_DATA,
    CMD_DEVICE_INFO,
    HEARTBEAT,
    JK_NOTIFY_CHARACTERISTIC_UUID,
    JK_SERVICE_UUID,
    JK_WRITE_CHARACTERISTIC_UUID,
    RECORD_CELL_DATA,
    RECORD_DEVICE_INFO,
    REQUEST_DATA_SIZE,
    REQUEST_HEADER,
    RESPONSE_HEADER,
    RESPONSE_PAYLOAD_SIZE,
)
from .tables import CELL_DATA_32S_TABLE, DEVICE_INFO_TABLE

JK02_FRAME_FORMAT = FrameFormat(
    name="jk02",
    request=FrameLayout(REQUEST_HEADER, payload_size=REQUEST_DATA_SIZE),
    response=FrameLayout(RESPONSE_HEADER, payload_size=RESPONSE_PAYLOAD_SIZE),
    checksum=ChecksumKind.SUM8,
    heartbeat=HEARTBEAT,
)

JK02_32S = DeviceFamily(
    name="jk02-32s",
    roles=GattRoles(
        service_uuid=JK_SERVICE_UUID,
        write_uuid=JK_WRITE_CHARACTERISTIC_UUID,
        notify_uuid=JK_NOTIFY_CHARACTERISTIC_UUID,
    ),
    frame_format=JK02_FRAME_FORMAT,
    device_info_command=CMD_DEVICE_INFO,
    cell_data_command=CMD_CELL_DATA,
    response_commands={
        CMD_DEVICE_INFO: RECORD_DEVICE_INFO,
        CMD_CELL_DATA: RECORD_CELL_DATA,
    },
    device_info_table=DEVICE_INFO_TABLE,
    cell_data_table=CELL_DATA_32S_TABLE,
)

__all__ = [
    "CELL_DATA_32S_TABLE",
    "DEVICE_INFO_TABLE",
    "JK02_32S",
    "JK02_FRAME_FORMAT",
]
