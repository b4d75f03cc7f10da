import os
from typing import List


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv('DATABASE_URL', 'postgresql://localhost/conejo_pos')
        # Comma-separated list of allowed CORS origins for browser terminals.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"

        # Idempotency keys must outlive the terminal retry ceiling (300s backoff cap)
        # by a wide margin; after expiry a key is treated as a new intent.
        self.idempotency_ttl_hours = max(1, _env_int("IDEMPOTENCY_TTL_HOURS", 24))
        self.idempotency_gc_interval_seconds = max(10, _env_int("IDEMPOTENCY_GC_INTERVAL_SECONDS", 600))
        # How long a duplicate request waits on the in-flight original before giving up with 503.
        self.idempotency_lock_timeout_ms = max(100, _env_int("IDEMPOTENCY_LOCK_TIMEOUT_MS", 10000))

        self.broadcast_heartbeat_seconds = max(1, _env_int("BROADCAST_HEARTBEAT_SECONDS", 30))
        self.broadcast_queue_size = max(1, _env_int("BROADCAST_QUEUE_SIZE", 256))
        self.broadcast_buffer_size = max(10, _env_int("BROADCAST_BUFFER_SIZE", 1000))
        # Returned to terminals so they know how often to poll when the stream is down.
        self.poll_interval_seconds = max(1, _env_int("POLL_INTERVAL_SECONDS", 5))

settings = Settings()
