"""
Faucet Error Taxonomy

Every request-level failure the dispatcher can report is one of the kinds
below. The kind tells the caller whether to try again later, whether the
faucet itself is out of funds, or whether the address was malformed.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Failure kinds surfaced in distribution results"""
    INVALID_ADDRESS = "InvalidAddress"
    RATE_LIMITED = "RateLimited"
    BALANCE_QUERY_ERROR = "BalanceQueryError"
    INSUFFICIENT_OPERATOR_FUNDS = "InsufficientOperatorFunds"
    CHAIN_SUBMISSION_ERROR = "ChainSubmissionError"
    TIMEOUT = "Timeout"
    CONTRACT_REVERTED = "ContractReverted"


# Kinds that are resolved by running the whole flow again later
RETRYABLE_KINDS = {
    ErrorKind.RATE_LIMITED,
    ErrorKind.BALANCE_QUERY_ERROR,
    ErrorKind.TIMEOUT,
}


class ConfigError(Exception):
    """Configuration is missing or malformed (raised at startup only)"""


class FaucetError(Exception):
    """
    Base class for request-level faucet failures

    Args:
        message: Human readable description
        asset: Symbol of the asset involved, when known
        recipient: Recipient address, when known
    """

    kind: ErrorKind = ErrorKind.CHAIN_SUBMISSION_ERROR

    def __init__(
        self,
        message: str,
        asset: Optional[str] = None,
        recipient: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.asset = asset
        self.recipient = recipient

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def describe(self) -> str:
        """Message with the asset and recipient details appended"""
        details = []
        if self.asset:
            details.append(f"asset={self.asset}")
        if self.recipient:
            details.append(f"recipient={self.recipient}")
        if details:
            return f"{self.message} ({', '.join(details)})"
        return self.message

    def __repr__(self):
        return f"{type(self).__name__}({self.kind.value}: {self.describe()})"


class InvalidAddress(FaucetError):
    kind = ErrorKind.INVALID_ADDRESS


class RateLimited(FaucetError):
    kind = ErrorKind.RATE_LIMITED


class BalanceQueryError(FaucetError):
    kind = ErrorKind.BALANCE_QUERY_ERROR


class InsufficientOperatorFunds(FaucetError):
    kind = ErrorKind.INSUFFICIENT_OPERATOR_FUNDS


class ChainSubmissionError(FaucetError):
    kind = ErrorKind.CHAIN_SUBMISSION_ERROR


class ChainTimeout(FaucetError):
    kind = ErrorKind.TIMEOUT


class ContractReverted(FaucetError):
    kind = ErrorKind.CONTRACT_REVERTED
