"""
Error taxonomy for the fight card server
"""


class FightCardError(Exception):
    """Base error carrying the HTTP status the transports should answer with"""

    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class CommandValidationError(FightCardError):
    """Bad index, empty required field or malformed payload (no state change)"""

    status_code = 400

    def __init__(self, message: str, field: str = None):
        self.field = field
        super().__init__(message)


class Unauthorized(FightCardError):
    """Missing or mismatched admin token"""

    status_code = 401


class CardNotFound(FightCardError):
    """Unknown card slug"""

    status_code = 404


class CardGone(FightCardError):
    """Card slug exists but its TTL has passed"""

    status_code = 410


class PersistenceFailure(FightCardError):
    """Durable mirror write failed. Captured in a PersistResult, never raised to callers."""

    status_code = 500


class TransportFailure(FightCardError):
    """A single viewer session could not be written to"""

    status_code = 500
