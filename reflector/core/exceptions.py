"""
Custom exception classes for the reflector.
Provides structured error handling across all modules.
"""

from typing import Any, Optional, Dict


class ReflectorError(Exception):
    """Base exception class for the reflection engine."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(ReflectorError):
    """Raised when there's a configuration error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class SolanaRPCError(ReflectorError):
    """Raised when a ledger RPC call fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "SOLANA_RPC_ERROR", details)


class AccountDecodeError(ReflectorError):
    """Raised when raw account data cannot be decoded."""

    def __init__(self, address: str, reason: str):
        super().__init__(
            f"Failed to decode account {address}: {reason}",
            "ACCOUNT_DECODE_ERROR",
            {"address": address, "reason": reason}
        )


class HarvestError(ReflectorError):
    """Raised when withheld fees cannot be harvested."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "HARVEST_ERROR", details)


class SwapError(ReflectorError):
    """Raised when the liquidity router cannot complete a swap."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "SWAP_ERROR", details)


class InsufficientPoolError(ReflectorError):
    """Raised when no usable reward pool is available after a failed swap."""

    def __init__(self, required: int, available: Optional[int]):
        super().__init__(
            f"Insufficient reward pool: required {required}, available {available}",
            "INSUFFICIENT_POOL",
            {"required": required, "available": available}
        )


class LedgerError(ReflectorError):
    """Raised when distribution state cannot be read or written."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "LEDGER_ERROR", details)


class LedgerLockedError(LedgerError):
    """Raised when another run holds the lease for a mint."""

    def __init__(self, mint: str, holder: str):
        ReflectorError.__init__(
            self,
            f"Distribution ledger for {mint} is locked by {holder}",
            "LEDGER_LOCKED",
            {"mint": mint, "holder": holder}
        )
