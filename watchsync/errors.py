from __future__ import annotations


class WatchSyncError(Exception):
    """Base class for recoverable sync failures."""


class NetworkError(WatchSyncError):
    """Transport failure or timeout talking to a provider."""


class ParseError(WatchSyncError):
    """Provider payload could not be mapped to a quote."""


class ConfigError(WatchSyncError):
    """Invalid configuration value; callers clamp or ignore it."""


class RateLimitError(WatchSyncError):
    """Provider signalled throttling; wait for the next scheduled tick."""
