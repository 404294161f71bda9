# biolink/protocol.py

import json
from dataclasses import dataclass

MESSAGE_TYPE_BIOMETRIC = "biometric_data"


@dataclass(frozen=True)
class Snapshot:
    heart_rate: float
    hrv: float
    activity: float
    battery_level: int


def build_message(snapshot: Snapshot) -> dict:
    # key order is part of the wire format
    return {
        "type": MESSAGE_TYPE_BIOMETRIC,
        "data": {
            "heart_rate": snapshot.heart_rate,
            "hrv": snapshot.hrv,
            "activity": snapshot.activity,
            "battery_level": snapshot.battery_level,
        },
    }


def encode_message(payload: dict) -> str:
    """
    Serialize a message to a compact JSON text frame.

    Raises TypeError or ValueError if the payload cannot be encoded
    (non-serializable values, NaN or infinite numbers).
    """
    return json.dumps(payload, separators=(",", ":"), allow_nan=False)
