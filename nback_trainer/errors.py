from __future__ import annotations


class NBackError(Exception):
    """Base class for trainer errors."""


class ConfigurationError(NBackError, ValueError):
    """Invalid session, sequence or level configuration.

    Raised before any session state exists; never retried.
    """


class StateError(NBackError):
    """Input that does not fit the current session state.

    Sessions log and ignore these unless constructed with ``strict=True``.
    """


class PersistenceError(NBackError):
    """A repository could not read or write.

    The in-memory session result stays valid and can be saved again later.
    """
