"""Runtime configuration for select sessions."""

from __future__ import annotations

import msgspec

from utils.env_utils import env_bool, env_float, env_int

ENV_PREFIX = "S3SELECT_"


class SelectRuntimeConfig(msgspec.Struct, frozen=True, kw_only=True):
    """Process-wide knobs for select sessions.

    Parameters
    ----------
    read_chunk_bytes
        Size of each read from the byte source.
    records_batch_bytes
        Serialized payload size that triggers a Records frame.
    progress_interval
        Seconds between Progress frames when progress is requested.
    progress_bytes
        Optional scanned-byte cadence for Progress frames.
    keepalive_interval
        Seconds of silence after which a ``Cont`` frame is sent.
    session_timeout
        Optional wall clock budget for a whole session, in seconds.
    max_record_bytes
        Largest accepted input record, in characters.
    max_columnar_bytes
        Largest columnar object buffered for decoding.
    log_skipped_rows
        Whether each skipped malformed row is logged.
    engine_batch_rows
        Input rows buffered into each Arrow batch handed to the engine.
    """

    read_chunk_bytes: int = 64 * 1024
    records_batch_bytes: int = 128 * 1024
    progress_interval: float = 1.0
    progress_bytes: int | None = None
    keepalive_interval: float = 5.0
    session_timeout: float | None = None
    max_record_bytes: int = 1024 * 1024
    max_columnar_bytes: int = 256 * 1024 * 1024
    log_skipped_rows: bool = False
    engine_batch_rows: int = 1024

    @classmethod
    def from_env(cls) -> SelectRuntimeConfig:
        """Build a configuration from ``S3SELECT_*`` environment variables.

        Returns
        -------
        SelectRuntimeConfig
            Configuration with environment overrides applied.
        """
        defaults = cls()
        return cls(
            read_chunk_bytes=env_int(
                f"{ENV_PREFIX}READ_CHUNK_BYTES", default=defaults.read_chunk_bytes, minimum=1
            ),
            records_batch_bytes=env_int(
                f"{ENV_PREFIX}RECORDS_BATCH_BYTES",
                default=defaults.records_batch_bytes,
                minimum=1,
            ),
            progress_interval=env_float(
                f"{ENV_PREFIX}PROGRESS_INTERVAL",
                default=defaults.progress_interval,
                minimum=0.0,
            ),
            progress_bytes=env_int(f"{ENV_PREFIX}PROGRESS_BYTES", default=None, minimum=1),
            keepalive_interval=env_float(
                f"{ENV_PREFIX}KEEPALIVE_INTERVAL",
                default=defaults.keepalive_interval,
                minimum=0.0,
            ),
            session_timeout=env_float(f"{ENV_PREFIX}SESSION_TIMEOUT", default=None, minimum=0.0),
            max_record_bytes=env_int(
                f"{ENV_PREFIX}MAX_RECORD_BYTES", default=defaults.max_record_bytes, minimum=1
            ),
            max_columnar_bytes=env_int(
                f"{ENV_PREFIX}MAX_COLUMNAR_BYTES",
                default=defaults.max_columnar_bytes,
                minimum=1,
            ),
            log_skipped_rows=env_bool(
                f"{ENV_PREFIX}LOG_SKIPPED_ROWS", default=defaults.log_skipped_rows
            ),
            engine_batch_rows=env_int(
                f"{ENV_PREFIX}ENGINE_BATCH_ROWS", default=defaults.engine_batch_rows, minimum=1
            ),
        )


__all__ = ["ENV_PREFIX", "SelectRuntimeConfig"]
