from mindscript.worker.exceptions import JobCancelledError


class CancellationToken:
    """Cooperative cancellation for one job.

    The processor checks the token between stages and between TTS chunks. A request already
    sent to a provider or to storage is not interrupted.
    """

    def __init__(self) -> None:
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "Job cancelled") -> None:
        if self._reason is None:
            self._reason = reason

    def raise_if_cancelled(self) -> None:
        if self._reason is not None:
            raise JobCancelledError(self._reason)
