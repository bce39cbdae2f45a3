"""
MedPlan — Error taxonomy shared by the planner and the reminder engine.
"""


class InvalidWindow(ValueError):
    """A dose window bound is outside [00:00, 24:00) or cannot be parsed."""


class InvalidCount(ValueError):
    """The requested number of doses is not a positive integer."""


class ReminderNotFound(LookupError):
    """A reminder id is no longer present. Callers treat this as a no-op."""


class PersistenceUnavailable(RuntimeError):
    """The reminder store could not be read or written."""


class AlertSurfaceDenied(RuntimeError):
    """The user has not granted permission to display alerts."""
