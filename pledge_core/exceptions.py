"""
Business error taxonomy for the pledge loan engine.

All errors derive from ValueError so callers that already treat invalid
input as ValueError keep working.
"""


class PledgeError(ValueError):
    """Base exception for all engine errors."""


class ConfigurationError(PledgeError):
    """Scheme rules are unknown or incomplete for the chosen interest method."""


class LoanNotFound(PledgeError):
    """Referenced loan or receipt does not exist."""


class AlreadySettled(PledgeError):
    """Till date is on or before the loan's paid-through date."""


class Overpayment(PledgeError):
    """Collection amount exceeds total outstanding interest and principal."""


class PaymentModeMismatch(PledgeError):
    """Payment mode breakdown does not sum to the collection amount."""


class LoanClosed(PledgeError):
    """Loan no longer accepts receipts (closed or auctioned)."""


class InvalidLoanState(PledgeError):
    """Requested status transition is not allowed."""


class NonTerminalReversal(PledgeError):
    """Attempt to cancel a receipt whose ledger period is not the last one."""
