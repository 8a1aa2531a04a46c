import logging
import re
import time
from pathlib import Path
from typing import Callable, List

from app.storage.store import read_json, write_json_atomic
from app.sources.volume_pipeline.errors import StoreError
from app.utils.clean_util import to_iso
from app.utils.constants import ALERT_FILE
from app.utils.metrics import RunMetrics

log = logging.getLogger(__name__)

_API_KEY_PARAM = re.compile(r"(apikey=)[^&\s]+", re.IGNORECASE)


def redact(text: str) -> str:
    """Mask API keys carried in request URLs."""
    return _API_KEY_PARAM.sub(r"\1***", text)


class AlertLog:
    """
    The run's single alert/status document:
    {alert, reasons, timestamp, apiCallCount, retryCount}.

    `reasons` is an ordered set. Reasons can be recorded without raising the
    alert flag; once raised, the flag stays raised for the rest of the run.
    """

    def __init__(self, data_dir: Path, metrics: RunMetrics, clock: Callable[[], float] = time.time):
        self.path = Path(data_dir) / ALERT_FILE
        self.metrics = metrics
        self.clock = clock
        self.alert = False
        self.reasons: List[str] = []

    def to_dict(self) -> dict:
        return {
            "alert": self.alert,
            "reasons": list(self.reasons),
            "timestamp": to_iso(self.clock()),
            "apiCallCount": self.metrics.api_call_count,
            "retryCount": self.metrics.retry_count,
        }

    def _write(self) -> None:
        try:
            write_json_atomic(self.path, self.to_dict())
        except StoreError as exc:
            log.warning(f"Unable to write alert file {self.path}: {exc}")

    def reset(self) -> None:
        self.alert = False
        self.reasons = []
        self._write()

    def record(self, *reasons: str, alert: bool = False) -> None:
        for reason in reasons:
            reason = redact(reason) if reason else reason
            if reason and reason not in self.reasons:
                self.reasons.append(reason)
        self.alert = self.alert or alert
        self._write()

    def raise_alert(self, *reasons: str) -> None:
        self.record(*reasons, alert=True)

    def on_request_giveup(self, details: dict) -> None:
        """RetryPolicy give-up handler: the request failed for good, alert now."""
        exc = details.get("exception")
        response = getattr(exc, "response", None) if exc is not None else details.get("value")
        if response is not None:
            message = f"HTTP {getattr(response, 'status_code', '?')} after {details.get('tries')} attempt(s)"
        else:
            message = str(exc)
        self.raise_alert(f"request-failed: {details.get('target')}", message)

    def finalize(self) -> None:
        """Rewrite a clean status with final counters unless an alert was raised."""
        if self.alert:
            log.warning(f"Run finished with alert: {self.reasons}")
            return
        self._write()

    def load(self) -> dict:
        try:
            doc = read_json(self.path, default={})
        except StoreError as exc:
            log.warning(f"Alert file unreadable: {exc}")
            return {}
        return doc if isinstance(doc, dict) else {}
