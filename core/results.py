# core/results.py
from dataclasses import dataclass


# ==================================================
# KẾT QUẢ GIẢI MÃ (mỗi frame)
# ==================================================

@dataclass(frozen=True)
class Decoded:
    text: str


@dataclass(frozen=True)
class NotFound:
    pass


@dataclass(frozen=True)
class DecodeError:
    reason: str


NOT_FOUND = NotFound()


# ==================================================
# KẾT QUẢ CUỐI CÙNG CỦA PHIÊN QUÉT
# ==================================================

@dataclass(frozen=True)
class Success:
    text: str
    kind = "success"


@dataclass(frozen=True)
class Cancelled:
    kind = "cancelled"


@dataclass(frozen=True)
class DeviceUnavailableOutcome:
    reason: str = ""
    kind = "device_unavailable"


@dataclass(frozen=True)
class DeviceLostOutcome:
    reason: str = ""
    kind = "device_lost"


CANCELLED = Cancelled()


def outcome_to_json(outcome):
    """Chuyển outcome sang dict để trả về qua API / WS"""
    if outcome is None:
        return {"outcome": None}
    data = {"outcome": outcome.kind}
    if isinstance(outcome, Success):
        data["text"] = outcome.text
    elif isinstance(outcome, (DeviceUnavailableOutcome, DeviceLostOutcome)):
        data["reason"] = outcome.reason
    return data
