from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from kubeconverge.resources.base import KubernetesResource, register_kind
from kubeconverge.utils.data import as_int, dig

_RUNNING_GRACE: timedelta = timedelta(seconds=5)


def _parse_timestamp(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


@register_kind
class Job(KubernetesResource):
    """Job: done, or has had an active pod for a few seconds.

    Fails on a ``Failed`` condition or once ``status.failed`` reaches
    ``spec.backoffLimit``.
    """

    KIND = "Job"
    TIMEOUT = 10 * 60

    def __init__(self, *args: Any, now: Callable[[], datetime] | None = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._now = now or (lambda: datetime.now(UTC))

    def _failed_condition(self) -> dict[str, Any] | None:
        for condition in dig(self.instance_data, "status", "conditions", default=[]):
            if condition.get("type") == "Failed" and condition.get("status") == "True":
                return condition
        return None

    def _done(self) -> bool:
        completions = dig(self.instance_data, "spec", "completions")
        return completions is not None and as_int(dig(self.instance_data, "status", "succeeded")) == as_int(completions)

    def _running(self) -> bool:
        start = dig(self.instance_data, "status", "startTime")
        started_at = _parse_timestamp(str(start)) if start else None
        if started_at is None or self._now() - started_at < _RUNNING_GRACE:
            return False
        return as_int(dig(self.instance_data, "status", "active")) >= 1

    def deploy_succeeded(self) -> bool:
        if not self.deploy_started or not self.exists:
            return False
        return self._done() or self._running()

    def deploy_failed(self) -> bool:
        if not self.deploy_started or not self.exists:
            return False
        if self._failed_condition() is not None:
            return True
        backoff_limit = dig(self.instance_data, "spec", "backoffLimit")
        if backoff_limit is None:
            return False
        return as_int(dig(self.instance_data, "status", "failed")) >= as_int(backoff_limit)

    @property
    def status(self) -> str:
        if not self.exists:
            return super().status
        if self._done():
            return "Succeeded"
        if self._running():
            return "Started"
        if self.deploy_failed():
            return "Failed"
        return "Unknown"

    @property
    def failure_message(self) -> str:
        condition = self._failed_condition()
        if condition is None:
            return ""
        return f"{condition.get('reason')} ({condition.get('message')})"
