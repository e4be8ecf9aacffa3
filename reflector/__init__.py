"""
Token Reflector

Batch job for fee-bearing SPL tokens that:
- Harvests withheld transfer fees into a treasury
- Snapshots and filters token holders
- Splits the collected pool proportionally (integer exact)
- Optionally swaps the pool into a reward token
- Disburses rewards in atomic batches and records run history
"""

__version__ = "0.1.0"
__author__ = "Token Reflector Team"
