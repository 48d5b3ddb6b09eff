"""Exceptions raised by the attendance submission pipeline."""


class AttendanceError(RuntimeError):
    pass


class ConfigurationError(AttendanceError):
    """Caller input or settings are unusable; raised before any remote call."""


class TransportFailure(AttendanceError):
    """The whole server-side batch call failed (no per-user results)."""
