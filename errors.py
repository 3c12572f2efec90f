"""
Typed failures raised by the settlement engine.

Every error carries the HTTP status the API answers with and a short
machine-readable ``code``; ``str(err)`` is the user-facing message.
"""


class SettlementError(Exception):
    """Base class for all settlement failures. Nothing was written."""
    status_code = 400
    code = "settlement_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AccountNotFound(SettlementError):
    status_code = 404
    code = "account_not_found"

    def __init__(self, user_id: str):
        super().__init__(f"User account not found: {user_id}")
        self.user_id = user_id


class RequestNotFound(SettlementError):
    status_code = 404
    code = "request_not_found"

    def __init__(self, request_id: str):
        super().__init__(f"Coin request not found: {request_id}")
        self.request_id = request_id


class TournamentNotFound(SettlementError):
    status_code = 404
    code = "tournament_not_found"

    def __init__(self, tournament_id: str):
        super().__init__(f"Tournament not found: {tournament_id}")
        self.tournament_id = tournament_id


class AlreadyDecided(SettlementError):
    status_code = 409
    code = "already_decided"

    def __init__(self, request_id: str, status: str):
        super().__init__(f"Coin request {request_id} was already {status}")
        self.request_id = request_id
        self.status = status


class InsufficientFunds(SettlementError):
    code = "insufficient_funds"

    def __init__(self, balance: int, amount: int):
        super().__init__(f"Withdrawal amount exceeds user's balance ({amount} > {balance})")
        self.balance = balance
        self.amount = amount


class JoinRejected(SettlementError):
    code = "join_rejected"

    FULL = "full"
    CLOSED = "closed"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    ALREADY_JOINED = "already_joined"

    MESSAGES = {
        FULL: "Tournament is full",
        CLOSED: "Tournament is not open for registration",
        INSUFFICIENT_FUNDS: "Not enough coins to pay the entry fee",
        ALREADY_JOINED: "Already registered for this tournament",
    }

    def __init__(self, reason: str):
        super().__init__(self.MESSAGES.get(reason, reason))
        self.reason = reason
        if reason in (self.FULL, self.ALREADY_JOINED):
            self.status_code = 409


class DuplicateWinner(SettlementError):
    code = "duplicate_winner"

    def __init__(self, user_id: str):
        super().__init__("Each winner must be a unique player")
        self.user_id = user_id


class WinnerRequired(SettlementError):
    code = "winner_required"

    def __init__(self):
        super().__init__("A first place winner is required")


class AlreadyFinalized(SettlementError):
    status_code = 409
    code = "already_finalized"

    def __init__(self, tournament_id: str):
        super().__init__("Winners have already been set for this tournament")
        self.tournament_id = tournament_id


class NotRegistered(SettlementError):
    code = "not_registered"

    def __init__(self, user_id: str, tournament_id: str):
        super().__init__(f"Player {user_id} is not registered in this tournament")
        self.user_id = user_id
        self.tournament_id = tournament_id


class InvalidTournamentState(SettlementError):
    status_code = 409
    code = "invalid_tournament_state"

    def __init__(self, tournament_id: str, status: str):
        super().__init__(f"Tournament is {status}")
        self.tournament_id = tournament_id
        self.status = status


class TransactionConflict(SettlementError):
    """Storage-level abort (lock timeout, serialization failure, lost compare-and-set)."""
    status_code = 409
    code = "transaction_conflict"

    def __init__(self, detail: str = ""):
        super().__init__("The operation conflicted with a concurrent update. Please try again.")
        self.detail = detail
