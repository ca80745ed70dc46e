from abc import abstractmethod
from datetime import datetime
import time

import backoff

from cost_basis_tracker.clients.storage import TransactionLinkQueries, TransactionQueries


def _is_transient_storage_error(e: Exception) -> bool:
    """Check if a storage failure is worth retrying (I/O, not bad data)."""
    return isinstance(e, OSError) and not isinstance(e, (FileNotFoundError, IsADirectoryError, PermissionError))


class BaseTracker:
    """Shared plumbing for the ledger trackers: logging, timing and persistence retries."""

    def __init__(self, transaction_queries: TransactionQueries, link_queries: TransactionLinkQueries):
        self.transaction_queries = transaction_queries
        self.link_queries = link_queries
        self._initialize()

    @abstractmethod
    def _initialize(self):
        ...

    @abstractmethod
    def run(self):
        ...

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------

    @staticmethod
    def _banner(title: str):
        print(f"\n{'='*60}")
        print(title)
        print(f"{'='*60}")

    def _log(self, msg: str):
        """Print a timestamped log message."""
        ts = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        print(f"{ts}  {msg}")

    def _timed_call(self, label: str, func, *args, **kwargs):
        """Call func(*args, **kwargs) while logging start/end and elapsed time.

        If the result is a sequence, also log the number of items returned.
        """
        start = time.time()
        self._log(f"{label}: start")
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            elapsed = time.time() - start
            self._log(f"{label}: failed after {elapsed:.2f}s: {e}")
            raise

        elapsed = time.time() - start
        try:
            count = len(result) if result is not None else 0
        except TypeError:
            count = None

        if count is not None:
            self._log(f"{label}: done ({count} items) in {elapsed:.2f}s")
        else:
            self._log(f"{label}: done in {elapsed:.2f}s")
        return result

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    @backoff.on_exception(
        backoff.expo,
        OSError,
        max_tries=3,
        factor=1,
        giveup=lambda e: not _is_transient_storage_error(e),
        on_backoff=lambda details: print(f"  Warning: ledger write failed (attempt {details['tries']}), retrying in {details['wait']:.1f}s...")
    )
    def _persist(self, func, *args, **kwargs):
        """Run a store write, retrying transient I/O failures."""
        return func(*args, **kwargs)
