"""
core/errors.py -- Classified failures raised by the auth, ledger and
collectible layers.

Every failure a caller must react to has its own class with a stable
machine-readable `code`. Services raise these at the point of origin and
never wrap or rename them; api/main.py maps each class to an HTTP status
and the standard error envelope.

Messages are user-facing and must never contain passwords, password hashes
or full session ids.

Layer rule: no imports from anywhere in the project.
"""

from __future__ import annotations


class CoreError(Exception):
    """Base class for every classified error."""

    code = "error"
    message = "Request failed."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)
        self.message = message or self.message


class InvalidInput(CoreError):
    """Malformed or missing input (username, password, amount, ...)."""

    code = "invalid_input"
    message = "Invalid input."


class DuplicateUsername(CoreError):
    code = "duplicate_username"
    message = "That username is already taken."


class InvalidCredentials(CoreError):
    """Unified failure for unknown user and wrong password.

    Never subclass or vary the message: both paths must be indistinguishable.
    """

    code = "invalid_credentials"
    message = "Invalid username or password."


class AuthenticationRequired(CoreError):
    code = "authentication_required"
    message = "Please log in again."


class InsufficientBalance(CoreError):
    code = "insufficient_balance"
    message = "Not enough tokens."


class InvalidState(CoreError):
    code = "invalid_state"
    message = "The collectible cannot do that in its current state."


class NotOwner(CoreError):
    code = "not_owner"
    message = "You do not own this collectible."


class InvalidTarget(CoreError):
    code = "invalid_target"
    message = "Invalid recipient."


class AccountNotFound(CoreError):
    code = "account_not_found"
    message = "Account not found."


class CollectibleNotFound(CoreError):
    code = "collectible_not_found"
    message = "Collectible not found."


class Unavailable(CoreError):
    """Storage or another dependency timed out. Callers retry with backoff."""

    code = "unavailable"
    message = "Service temporarily unavailable. Please retry."


class LedgerCorruption(CoreError):
    """Stored balance disagrees with the ledger history.

    Fatal for the affected account: the operation halts and operators are
    alerted. The balance is never guessed or auto-corrected.
    """

    code = "ledger_corruption"
    message = "Account ledger is inconsistent."
