from __future__ import annotations

from datetime import datetime, timedelta

from attendance_engine.core.time_provider import TimeProvider, default_time_provider


class RetryEngine:
    def __init__(
        self,
        base_seconds: int = 2,
        max_retries: int = 3,
        time_provider: TimeProvider = default_time_provider,
    ) -> None:
        self.base_seconds = base_seconds
        self.max_retries = max_retries
        self.time_provider = time_provider

    def delay_seconds(self, retry_count: int) -> int:
        return self.base_seconds * (2 ** retry_count)

    def next_attempt(self, retry_count: int) -> datetime:
        return self.time_provider.local_now() + timedelta(seconds=self.delay_seconds(retry_count))

    def should_retry(self, retry_count: int) -> bool:
        return retry_count < self.max_retries
