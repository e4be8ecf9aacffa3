"""
Signing keypair loading.
"""

import json
from pathlib import Path
from typing import Union

import base58
from solders.keypair import Keypair

from reflector.core.exceptions import ConfigurationError


def load_keypair(path: Union[str, Path]) -> Keypair:
    """
    Load a keypair file.

    Accepted formats: the Solana CLI JSON array, `{"secretKey": [...]}`,
    or a base58-encoded secret key.
    """
    resolved = Path(path).expanduser().resolve()
    try:
        raw = resolved.read_text(encoding="utf-8").strip()
    except OSError as e:
        raise ConfigurationError(
            f"Unable to read keypair at {resolved}: {e}",
            {"path": str(resolved)}
        )

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        parsed = None

    if isinstance(parsed, dict):
        parsed = parsed.get("secretKey")

    try:
        if isinstance(parsed, list):
            return Keypair.from_bytes(bytes(parsed))
        return Keypair.from_bytes(base58.b58decode(raw))
    except (ValueError, TypeError) as e:
        raise ConfigurationError(
            f'Unable to parse keypair at {resolved}. Expected JSON array or {{"secretKey": [...]}} structure.',
            {"path": str(resolved), "error": str(e)}
        )
