"""
In-memory metrics for lightweight observability.

Tracks:
- Request and 5xx error counts, uptime
- Upload operations by (type, status), type being direct or resumable
- Import jobs by (status, source)
- Contacts imported by source

Thread-safe within one process. Each API or worker process keeps its own
counters; aggregate them in the log pipeline if needed.
"""

from __future__ import annotations

import threading
import time
from collections import Counter
from typing import Any

_START_TIME: float = time.time()
_request_count: int = 0
_error_count: int = 0
_uploads: Counter[tuple[str, str]] = Counter()
_jobs: Counter[tuple[str, str]] = Counter()
_contacts: Counter[str] = Counter()
_lock = threading.Lock()


def increment_requests() -> None:
    """Increment the total request count."""
    global _request_count
    with _lock:
        _request_count += 1


def increment_errors() -> None:
    """Increment the error (5xx) count."""
    global _error_count
    with _lock:
        _error_count += 1


def record_upload(upload_type: str, status: str) -> None:
    with _lock:
        _uploads[(upload_type, status)] += 1


def record_job(status: str, source: str) -> None:
    with _lock:
        _jobs[(status, source)] += 1


def record_contacts_imported(source: str, count: int) -> None:
    with _lock:
        _contacts[source] += count


def snapshot() -> dict[str, Any]:
    """Return every counter in a JSON-friendly shape."""
    with _lock:
        return {
            "uptime_seconds": int(time.time() - _START_TIME),
            "requests": _request_count,
            "errors": _error_count,
            "uploads": [
                {"type": upload_type, "status": status, "count": count}
                for (upload_type, status), count in sorted(_uploads.items())
            ],
            "jobs": [
                {"status": status, "source": source, "count": count}
                for (status, source), count in sorted(_jobs.items())
            ],
            "contacts_imported": dict(sorted(_contacts.items())),
        }


def reset_for_testing() -> None:
    """Reset all counters - only for use in tests."""
    global _request_count, _error_count, _START_TIME
    with _lock:
        _request_count = 0
        _error_count = 0
        _uploads.clear()
        _jobs.clear()
        _contacts.clear()
        _START_TIME = time.time()
