from __future__ import annotations


class KeytallyError(RuntimeError):
    """Base class for errors raised while running a sync pass."""


class AuthenticationError(KeytallyError):
    """No usable credential for the calendar source."""


class CalendarError(KeytallyError):
    """Raised when a calendar source request fails."""


class RemoteFetchError(KeytallyError):
    """Listing calendars failed; the pass cannot continue."""


class PerCalendarFetchError(KeytallyError):
    pass


class PersistenceLoadError(KeytallyError):
    """The tracking key registry could not be read."""


class PerRecordPersistenceError(KeytallyError):
    pass


class AggregateUpdateError(KeytallyError):
    pass
