from dataclasses import dataclass


@dataclass
class RunMetrics:
    """Per-run request counters, shared by reference across clients."""
    api_call_count: int = 0
    retry_count: int = 0

    def record_call(self) -> None:
        self.api_call_count += 1

    def record_retry(self) -> None:
        self.retry_count += 1

    def reset(self) -> None:
        self.api_call_count = 0
        self.retry_count = 0
