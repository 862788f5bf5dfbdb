# core/errors.py


class ScannerError(Exception):
    """Lỗi gốc của module quét QR"""


class DeviceUnavailable(ScannerError):
    """Không mở được camera (không có thiết bị, đang bận, hoặc không có quyền)"""


class DeviceLost(ScannerError):
    """Camera đang chạy thì mất kết nối / lỗi phần cứng"""


class FrameTimeout(ScannerError):
    """Hết thời gian chờ frame mới"""


class SessionUsageError(ScannerError):
    """Gọi sai thứ tự API của phiên quét (start 2 lần, await trước start, ...)"""
