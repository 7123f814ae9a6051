"""Identifier generation for ledger entries and redemption tokens"""
import secrets
import threading
import time

_lock = threading.Lock()
_last_ns = 0


def _monotonic_stamp() -> int:
    """Wall-clock nanoseconds, strictly increasing within this process"""
    global _last_ns
    with _lock:
        stamp = max(time.time_ns(), _last_ns + 1)
        _last_ns = stamp
        return stamp


def new_transaction_id() -> str:
    """
    Unique, monotonically orderable transaction id

    Lexicographic order of ids equals creation order within a process.
    """
    return f"txn_{_monotonic_stamp():020d}_{secrets.token_hex(4)}"


def new_redemption_id() -> str:
    """Unique redemption token id"""
    return f"redemption_{_monotonic_stamp():020d}_{secrets.token_hex(6)}"
