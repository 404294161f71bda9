# biolink/gatt.py

import math
import struct
from dataclasses import dataclass, field
from enum import IntFlag
from typing import Optional

# Bluetooth SIG assigned numbers, expanded to the 128-bit base UUID bleak expects
HEART_RATE_SERVICE_UUID = "0000180d-0000-1000-8000-00805f9b34fb"
HR_MEASUREMENT_CHAR_UUID = "00002a37-0000-1000-8000-00805f9b34fb"
BATTERY_SERVICE_UUID = "0000180f-0000-1000-8000-00805f9b34fb"
BATTERY_LEVEL_CHAR_UUID = "00002a19-0000-1000-8000-00805f9b34fb"

RR_RESOLUTION = 1024.0  # RR intervals are sent in 1/1024 s


class HrmFlags(IntFlag):
    NONE = 0
    HR_UINT16 = 1 << 0
    CONTACT_DETECTED = 1 << 1
    CONTACT_SUPPORTED = 1 << 2
    ENERGY_EXPENDED = 1 << 3
    RR_INTERVALS = 1 << 4


@dataclass
class HeartRateMeasurement:
    heart_rate: int
    sensor_contact: int = 0
    energy_expended: Optional[int] = None  # kJ, cumulative
    rr_intervals: list[float] = field(default_factory=list)  # seconds


def parse_hr_measurement(data: bytes) -> HeartRateMeasurement:
    """
    Parse a Heart Rate Measurement (0x2A37) notification.

    Layout: flags byte, heart rate (uint8 or uint16), optional energy
    expended (uint16, kJ), then zero or more RR intervals (uint16, 1/1024 s).
    """
    data = bytes(data)
    if len(data) < 2:
        raise ValueError(f"Heart rate measurement too short: {len(data)} bytes")

    flags = HrmFlags(data[0] & 0x1F)
    sensor_contact = (data[0] >> 1) & 0x03
    index = 1

    try:
        if HrmFlags.HR_UINT16 in flags:
            heart_rate = struct.unpack_from("<H", data, index)[0]
            index += 2
        else:
            heart_rate = data[index]
            index += 1

        energy_expended = None
        if HrmFlags.ENERGY_EXPENDED in flags:
            energy_expended = struct.unpack_from("<H", data, index)[0]
            index += 2
    except struct.error as e:
        raise ValueError(f"Truncated heart rate measurement: {data.hex()}") from e

    rr_intervals = []
    if HrmFlags.RR_INTERVALS in flags:
        remaining = data[index:]
        if len(remaining) % 2:
            raise ValueError(f"Odd RR interval payload length: {len(remaining)}")
        for (raw,) in struct.iter_unpack("<H", remaining):
            rr_intervals.append(raw / RR_RESOLUTION)

    return HeartRateMeasurement(
        heart_rate=heart_rate,
        sensor_contact=sensor_contact,
        energy_expended=energy_expended,
        rr_intervals=rr_intervals,
    )


def rmssd(rr_intervals: list[float]) -> Optional[float]:
    """Root mean square of successive RR differences, in milliseconds."""
    if len(rr_intervals) < 2:
        return None
    diffs = [(b - a) * 1000.0 for a, b in zip(rr_intervals, rr_intervals[1:])]
    return math.sqrt(sum(d * d for d in diffs) / len(diffs))
