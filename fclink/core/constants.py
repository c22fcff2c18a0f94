"""Wire constants, timeouts, and thresholds for the HM-10 style serial bridge."""

from __future__ import annotations

# GATT identifiers exposed by HM-10 compatible UART bridges.
SERVICE_UUID = "FFE0"
CHARACTERISTIC_UUID = "FFE1"

# Text probes used to detect (and leave) the flight controller's CLI mode.
CLI_PROBE = "asdf\r"
CLI_EXIT = "exit\r"

AUTO_CONNECT_SIGNAL_THRESHOLD = -70.0
MISSING_SIGNAL_FLOOR = -100.0

CONNECT_TIMEOUT_S = 10.0
HANDSHAKE_STEP_S = 1.0
# Identity follow-up replies are optional; announce the link without them after this.
FOLLOW_UP_TIMEOUT_S = 2.0

# MSP command codes issued by the handshake and the post-verification follow-up.
MSP_API_VERSION = 1
MSP_FC_VARIANT = 2
MSP_FC_VERSION = 3
MSP_BOARD_INFO = 4
MSP_BUILD_INFO = 5
MSP_STATUS = 101
MSP_BOXNAMES = 116

IDENTITY_REQUESTS = (MSP_FC_VARIANT, MSP_FC_VERSION, MSP_BOARD_INFO, MSP_BUILD_INFO)
STATUS_REQUESTS = (MSP_BOXNAMES, MSP_STATUS)

# Supported MSP API window, minimum inclusive and maximum exclusive.
API_MIN_VERSION = (1, 7)
API_MAX_VERSION = (2, 0)

UNIDENTIFIED_DEVICE_NAME = "Unidentified"
