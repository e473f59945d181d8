"""Error types for the alarm subsystem.

Every failure here is either a rejected operation or a skipped record;
none of them should take the process down.
"""


class AlarmError(Exception):
    """Base error for alarms."""


class UnparseableTimeError(AlarmError):
    """The phrase could not be resolved into a valid date/time."""

    def __init__(self, phrase: str, reason: str = "") -> None:
        self.phrase = phrase
        self.reason = reason
        message = f"Cannot resolve time from {phrase!r}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class PastTimeError(AlarmError, ValueError):
    """Alarm time is not strictly in the future."""


class AlarmNotFoundError(AlarmError):
    """No live alarm under the given key or index."""


class AlarmForbiddenError(AlarmError):
    """Requester is neither the alarm's setter nor privileged."""


class AlarmLifecycleError(AlarmError):
    """Manager used out of order (before or twice through recovery)."""
