"""
Reward token conversion.
"""

from .jupiter import JupiterSwapService

__all__ = [
    "JupiterSwapService",
]
