"""JK BMS (JK02 protocol) constants and UUIDs."""

# Service UUIDs
JK_SERVICE_UUID = "0000ffe0-0000-1000-8000-00805f9b34fb"

# A single characteristic carries both commands and notifications
JK_CHARACTERISTIC_UUID = "0000ffe1-0000-1000-8000-00805f9b34fb"
JK_WRITE_CHARACTERISTIC_UUID = JK_CHARACTERISTIC_UUID
JK_NOTIFY_CHARACTERISTIC_UUID = JK_CHARACTERISTIC_UUID

# Frame headers
REQUEST_HEADER = bytes([0xAA, 0x55, 0x90, 0xEB])
RESPONSE_HEADER = bytes([0x55, 0xAA, 0xEB, 0x90])
HEARTBEAT = b"AT\r\n"

# Request: header(4) + command(1) + data(14) + checksum(1)
REQUEST_DATA_SIZE = 14
REQUEST_FRAME_SIZE = 20

# Response: header(4) + record type(1) + record number(1) + data(293) + checksum(1)
RESPONSE_PAYLOAD_SIZE = 294
RESPONSE_FRAME_SIZE = 300

# Commands
CMD_DEVICE_INFO = 0x97
CMD_CELL_DATA = 0x96

# Response record types
RECORD_SETTINGS = 0x01
RECORD_CELL_DATA = 0x02
RECORD_DEVICE_INFO = 0x03

# Tool defaults (seconds)
DEFAULT_SCAN_TIMEOUT = 30.0
DEFAULT_REQUEST_TIMEOUT = 5.0

# Notification size used by JK firmware when streaming frames
DEFAULT_NOTIFY_MTU = 128
