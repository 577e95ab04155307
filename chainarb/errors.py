# chainarb/errors.py
from typing import Optional


class ChainArbError(Exception):
    """Root of every error raised by the engine."""


class ConfigError(ChainArbError):
    pass


class EncodingError(ChainArbError):
    pass


# --- Data layer: absorbed locally, never escape the aggregator/scorer boundary ---

class DataUnavailable(ChainArbError):
    def __init__(self, source: str, detail: str = ""):
        self.source = source
        self.detail = detail
        super().__init__(f"{source}: {detail}" if detail else source)


class DataInconsistent(ChainArbError):
    pass


# --- Decision layer ---

class OpportunityExpired(ChainArbError):
    def __init__(self, opportunity_id: str, expired_at: float):
        self.opportunity_id = opportunity_id
        self.expired_at = expired_at
        super().__init__(f"Opportunity {opportunity_id} expired at {expired_at:.0f}")


class RiskRejected(ChainArbError):
    """Risk-policy rejection. `reason` is safe to show to an operator."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class ExposureExceeded(RiskRejected):
    pass


class LiquidityInsufficient(RiskRejected):
    pass


class ProfitInsufficient(RiskRejected):
    pass


# --- Messaging layer ---

class SendFailure(ChainArbError):
    def __init__(self, message: str, message_id: Optional[str] = None):
        self.message_id = message_id
        super().__init__(message)


class SendFailureTransient(SendFailure):
    """Network did not accept the message; safe to retry."""


class SendFailureTerminal(SendFailure):
    """Rejected, retries exhausted, or failed after acceptance. Never resubmit."""


class StatusUnknown(ChainArbError):
    pass
