"""Exception types for claudehub."""


class HubError(Exception):
    """Base class for errors the CLI reports to the user."""


class ConfigError(HubError):
    """The configuration file is missing, malformed or unusable."""


class SpawnError(HubError):
    """A pseudo-terminal child could not be started.

    Raised instead of a normal exit so the caller can fall back to a plain
    passthrough launch.
    """


class NoAccountsAvailable(HubError):
    """No configured account is eligible for selection."""
