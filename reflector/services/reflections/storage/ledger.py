"""
Distribution ledger persistence.

One JSON document per mint plus a lease file that keeps two runs from
working on the same mint at once.
"""

import json
import os
import tempfile
import time
import uuid
from pathlib import Path
from typing import Dict, Optional, Protocol, Set

import structlog

from reflector.core.exceptions import LedgerError, LedgerLockedError
from ..core.types import LedgerState


logger = structlog.get_logger(__name__)


class LedgerStore(Protocol):
    """Storage interface used by the distribution run."""

    def load(self, mint: str) -> LedgerState:
        ...

    def save(self, mint: str, state: LedgerState) -> None:
        ...

    def acquire(self, mint: str) -> None:
        ...

    def release(self, mint: str) -> None:
        ...


class JsonFileLedgerStore:
    """
    Stores `state-<mint>.json` files under a state directory.

    Saves go through a temporary file in the same directory followed by
    `os.replace`, so readers see either the old or the new document. The
    lease is a `state-<mint>.lock` file created exclusively and stamped with
    a per-run token. A lease older than `lease_ttl_seconds` is treated as
    abandoned and reclaimed, and `release` only removes a lease carrying this
    store's own token.
    """

    def __init__(self, state_dir: Path, lease_ttl_seconds: int = 3600):
        self.state_dir = Path(state_dir)
        self.lease_ttl_seconds = lease_ttl_seconds
        self._tokens: Dict[str, str] = {}
        self.logger = logger.bind(service="ledger_store")

    def state_path(self, mint: str) -> Path:
        return self.state_dir / f"state-{mint}.json"

    def lock_path(self, mint: str) -> Path:
        return self.state_dir / f"state-{mint}.lock"

    def load(self, mint: str) -> LedgerState:
        path = self.state_path(mint)
        if not path.exists():
            self.logger.info("No distribution ledger yet, starting fresh", mint=mint)
            return LedgerState()

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return LedgerState.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise LedgerError(
                f"Failed to read distribution ledger: {e}",
                {"mint": mint, "path": str(path)}
            )

    def save(self, mint: str, state: LedgerState) -> None:
        path = self.state_path(mint)
        tmp_name = None
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".state-{mint}.", suffix=".tmp", dir=self.state_dir
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(state.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise LedgerError(
                f"Failed to write distribution ledger: {e}",
                {"mint": mint, "path": str(path)}
            )

        self.logger.debug("Distribution ledger saved", mint=mint, path=str(path))

    def acquire(self, mint: str) -> None:
        """Take the run lease for `mint` or raise LedgerLockedError."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        path = self.lock_path(mint)
        token = uuid.uuid4().hex

        try:
            self._create_lock(path, token)
        except FileExistsError:
            self._reclaim(mint, path)
            try:
                self._create_lock(path, token)
            except FileExistsError:
                raise LedgerLockedError(mint, "a concurrent run")

        self._tokens[mint] = token

    def release(self, mint: str) -> None:
        """Drop the lease, unless another run has reclaimed it since."""
        token = self._tokens.pop(mint, None)
        if token is None:
            return

        path = self.lock_path(mint)
        holder = self._read_lock(path)
        if not holder:
            return
        if holder.get("token") != token:
            self.logger.warning(
                "Ledger lease was reclaimed by another run, leaving it in place",
                mint=mint,
                holder_pid=holder.get("pid")
            )
            return
        path.unlink(missing_ok=True)

    def _reclaim(self, mint: str, path: Path) -> None:
        """Move an expired lease aside; raise LedgerLockedError if it is still live."""
        holder = self._read_lock(path)
        if not holder:
            return
        age = time.time() - float(holder.get("acquired_at", 0))
        if age < self.lease_ttl_seconds:
            raise LedgerLockedError(mint, f"pid {holder.get('pid', 'unknown')}")

        # Only one contender can rename the expired file away
        stale = path.with_name(f".{path.name}.{uuid.uuid4().hex}.stale")
        try:
            os.rename(path, stale)
        except FileNotFoundError:
            raise LedgerLockedError(mint, "a concurrent run")

        moved = self._read_lock(stale)
        if moved.get("token") != holder.get("token"):
            # A fresh lease replaced the expired one after it was read
            try:
                os.link(stale, path)
            except FileExistsError:
                pass
            stale.unlink(missing_ok=True)
            raise LedgerLockedError(mint, f"pid {moved.get('pid', 'unknown')}")

        stale.unlink(missing_ok=True)
        self.logger.warning(
            "Reclaiming expired ledger lease",
            mint=mint,
            previous_pid=holder.get("pid"),
            age_seconds=int(age)
        )

    def _create_lock(self, path: Path, token: str) -> None:
        fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump({"pid": os.getpid(), "token": token, "acquired_at": time.time()}, f)

    def _read_lock(self, path: Path) -> Dict:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError):
            # Unreadable lease: fall back to its modification time
            try:
                return {"acquired_at": path.stat().st_mtime}
            except OSError:
                return {}


class InMemoryLedgerStore:
    """Ledger store kept in process memory."""

    def __init__(self, states: Optional[Dict[str, LedgerState]] = None):
        self.states: Dict[str, LedgerState] = dict(states or {})
        self.held: Set[str] = set()
        self.saves = 0

    def load(self, mint: str) -> LedgerState:
        stored = self.states.get(mint)
        if stored is None:
            return LedgerState()
        return LedgerState.from_dict(stored.to_dict())

    def save(self, mint: str, state: LedgerState) -> None:
        self.states[mint] = LedgerState.from_dict(state.to_dict())
        self.saves += 1

    def acquire(self, mint: str) -> None:
        if mint in self.held:
            raise LedgerLockedError(mint, "another run")
        self.held.add(mint)

    def release(self, mint: str) -> None:
        self.held.discard(mint)
