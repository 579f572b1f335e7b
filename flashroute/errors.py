"""
FlashRoute error taxonomy.

Every failure raised by the settlement engine or the decision pipeline derives
from ``ArbitrageError`` and carries a ``details`` dict with structured context
(venue, amounts, fee, ...) so callers can log it without string parsing.
"""

from typing import Any, Dict, Optional


class ArbitrageError(Exception):
    """Base class for all FlashRoute errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})

    def __str__(self) -> str:
        if not self.details:
            return self.message
        context = ", ".join(f"{k}={v}" for k, v in self.details.items())
        return f"{self.message} ({context})"


# ============================================
# Settlement (on-chain) failures - fatal, atomic rollback
# ============================================

class ValidationError(ArbitrageError):
    """Bad caller identity or malformed payload. Raised before any swap runs."""


class PayloadDecodeError(ValidationError):
    """Payload does not decode in the shape its discriminant declares."""


class SwapExecutionError(ArbitrageError):
    """A hop returned zero output or the venue reverted."""


class InsufficientRepaymentError(ArbitrageError):
    """Held balance after the swaps does not cover borrowed + fee."""


# ============================================
# Off-chain failures
# ============================================

class SimulationError(ArbitrageError):
    """Read-only quote failed. The opportunity is dropped for this cycle only."""


class ConfigurationError(ArbitrageError):
    """Missing or malformed static configuration."""


class ConfigValidationError(ConfigurationError):
    """Configuration file or environment failed validation."""


# ============================================
# Local ledger / venue primitives
# ============================================

class LedgerError(ArbitrageError):
    """Token ledger rejected a transfer or approval."""


class VenueRevert(ArbitrageError):
    """A local venue or router rejected a call (the equivalent of a revert)."""


class SubmissionError(ArbitrageError):
    """Settlement call was rejected by the backend (dry-run call, gas estimate or broadcast)."""

    @property
    def reason(self) -> str:
        return str(self.details.get("reason") or self.message)
