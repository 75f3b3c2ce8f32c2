"""Running byte and row counters for a select session."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class SelectStats:
    """Cumulative counters for one session.

    Counters only ever grow; the ``add_*`` helpers reject negative deltas so
    that Progress and Stats events observe non-decreasing values.
    """

    bytes_scanned: int = 0
    bytes_processed: int = 0
    bytes_returned: int = 0
    rows_scanned: int = 0
    rows_emitted: int = 0
    rows_skipped: int = 0

    @staticmethod
    def _check(delta: int) -> int:
        if delta < 0:
            msg = f"Counter deltas must be non-negative, got {delta}."
            raise ValueError(msg)
        return delta

    def add_scanned(self, count: int) -> None:
        """Account raw object bytes read from storage."""
        self.bytes_scanned += self._check(count)

    def add_processed(self, count: int) -> None:
        """Account decompressed bytes handed to the decoder."""
        self.bytes_processed += self._check(count)

    def add_returned(self, count: int) -> None:
        """Account Records payload bytes sent to the client."""
        self.bytes_returned += self._check(count)

    def add_rows_scanned(self, count: int = 1) -> None:
        """Account decoded input rows."""
        self.rows_scanned += self._check(count)

    def add_rows_emitted(self, count: int = 1) -> None:
        """Account result rows produced by the query."""
        self.rows_emitted += self._check(count)

    def add_rows_skipped(self, count: int = 1) -> None:
        """Account malformed rows dropped under the skip policy."""
        self.rows_skipped += self._check(count)

    def snapshot(self) -> SelectStats:
        """Return a detached copy of the counters."""
        return SelectStats(
            bytes_scanned=self.bytes_scanned,
            bytes_processed=self.bytes_processed,
            bytes_returned=self.bytes_returned,
            rows_scanned=self.rows_scanned,
            rows_emitted=self.rows_emitted,
            rows_skipped=self.rows_skipped,
        )


__all__ = ["SelectStats"]
