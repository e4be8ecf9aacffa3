"""
Reward transfer batching.
"""

from .disburser import BatchDisburser

__all__ = [
    "BatchDisburser",
]
