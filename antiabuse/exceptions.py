"""Anti-abuse error hierarchy."""


class AntiAbuseError(Exception):
    """Base exception for all anti-abuse errors."""


class StorageError(AntiAbuseError):
    """A backend or audit-store operation failed (network, codec, timeout)."""


class InvalidPenaltyError(AntiAbuseError):
    """Penalty type is not one of rate_limit, temp_ban, perm_ban."""


class SettingsError(AntiAbuseError):
    """Settings file is missing, malformed, or has the wrong shape."""
