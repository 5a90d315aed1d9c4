"""
Error taxonomy for telemetry collection and history reads.

Tier and record failures are absorbed by the services and turned into
``source``/``warning`` fields or run-log columns. Only configuration and
malformed-input errors reach the caller.
"""


class TelemetryError(Exception):
    """Base class for every error raised by perfhistory."""


class TierUnavailable(TelemetryError):
    """A tier query failed: missing object, privilege denial or timeout."""

    def __init__(self, tier: str, reason: str):
        self.tier = tier
        self.reason = reason
        super().__init__(f"{tier} unavailable: {reason}")


class RecordPersistenceError(TelemetryError):
    def __init__(self, sql_id: str, reason: str):
        self.sql_id = sql_id
        self.reason = reason
        super().__init__(f"Insert failed for SQL_ID {sql_id}: {reason}")


class ConfigurationError(TelemetryError):
    """Missing or unknown connection."""


class InvalidRequest(TelemetryError, ValueError):
    """Caller input failed validation before any tier was touched."""


class InvalidIdentifier(InvalidRequest):
    pass


class StatementNotFound(TelemetryError):
    def __init__(self, sql_id: str):
        self.sql_id = sql_id
        super().__init__(f"SQL_ID {sql_id} not found in the cursor cache")
