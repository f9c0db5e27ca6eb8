from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Literal

from .run_log import RunLogger

JobKind = Literal["extraction", "cleanup", "embeddings", "geocoding"]
JobStatus = Literal["idle", "running", "done", "error"]

JOB_KINDS: tuple[JobKind, ...] = ("extraction", "cleanup", "embeddings", "geocoding")
ALREADY_RUNNING_NOTICE = "already in progress"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class JobProgress:
    """Live, pollable state of one long-running operation."""

    kind: str
    status: JobStatus = "idle"
    processed: int = 0
    total: int = 0
    counters: dict[str, int] = field(default_factory=dict)
    step: str | None = None
    percent: int | None = None
    message: str | None = None
    messages: list[str] = field(default_factory=list)
    started_at: str | None = None
    finished_at: str | None = None
    error: str | None = None
    result: Any = None

    def reset(self, *, total: int = 0) -> None:
        self.status = "running"
        self.processed = 0
        self.total = max(0, int(total))
        self.counters = {}
        self.step = None
        self.percent = None
        self.message = None
        self.messages = []
        self.started_at = _utc_now_iso()
        self.finished_at = None
        self.error = None
        self.result = None

    def update(
        self,
        *,
        processed: int | None = None,
        total: int | None = None,
        step: str | None = None,
        percent: int | None = None,
        message: str | None = None,
        **counters: int,
    ) -> None:
        # Counters only move forward while a job runs.
        if processed is not None:
            self.processed = max(self.processed, int(processed))
        if total is not None:
            self.total = max(0, int(total))
        if step is not None:
            self.step = step
        if percent is not None:
            self.percent = max(0, min(100, int(percent)))
        for name, value in counters.items():
            self.counters[name] = max(self.counters.get(name, 0), int(value))
        if message is not None:
            self.add_message(message)

    def add_message(self, message: str) -> None:
        text = (message or "").strip()
        if not text:
            return
        self.message = text
        if text not in self.messages:
            self.messages.append(text)

    def snapshot(self, *, notice: str | None = None) -> dict[str, Any]:
        out: dict[str, Any] = {
            "kind": self.kind,
            "status": self.status,
            "processed": self.processed,
            "total": self.total,
            **self.counters,
            "step": self.step,
            "percent": self.percent,
            "message": self.message,
            "messages": list(self.messages),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "error": self.error,
        }
        if notice:
            out["notice"] = notice
        return out


JobFn = Callable[[JobProgress], Awaitable[Any]]


class JobRegistry:
    """
    One progress entry and at most one running task per job kind.

    Starting is check-and-set with no await in between, so two callers on the
    same event loop can never both start the same kind. The registry is an
    in-memory advisory guard; it is not shared across processes.
    """

    def __init__(self, *, logger: RunLogger | None = None) -> None:
        self._logger = logger or RunLogger()
        self._progress: dict[str, JobProgress] = {kind: JobProgress(kind=kind) for kind in JOB_KINDS}
        self._tasks: dict[str, asyncio.Task[Any]] = {}

    def progress(self, kind: str) -> JobProgress:
        if kind not in self._progress:
            self._progress[kind] = JobProgress(kind=kind)
        return self._progress[kind]

    def snapshot(self, kind: str) -> dict[str, Any]:
        return self.progress(kind).snapshot()

    def is_running(self, kind: str) -> bool:
        return self.progress(kind).status == "running"

    def try_start(self, kind: str, *, total: int = 0) -> tuple[bool, dict[str, Any]]:
        """Mark `kind` running unless it already is; returns (started, snapshot)."""
        progress = self.progress(kind)
        if progress.status == "running":
            return False, progress.snapshot(notice=ALREADY_RUNNING_NOTICE)
        progress.reset(total=total)
        return True, progress.snapshot()

    def finish(self, kind: str, *, result: Any = None, message: str | None = None) -> None:
        progress = self.progress(kind)
        progress.status = "done"
        progress.result = result
        progress.finished_at = _utc_now_iso()
        if progress.percent is not None:
            progress.percent = 100
        if message:
            progress.add_message(message)

    def fail(self, kind: str, message: str) -> None:
        progress = self.progress(kind)
        progress.status = "error"
        progress.error = message
        progress.finished_at = _utc_now_iso()
        progress.add_message(message)

    def start(self, kind: str, fn: JobFn, *, total: int = 0) -> dict[str, Any]:
        """
        Run `fn(progress)` as a registry-owned task.

        Returns the fresh snapshot, or the running job's snapshot annotated with
        an "already in progress" notice.
        """
        started, snap = self.try_start(kind, total=total)
        if not started:
            return snap

        task = asyncio.create_task(self._run(kind, fn), name=f"job:{kind}")
        task.add_done_callback(lambda t: self._on_done(kind, t))
        self._tasks[kind] = task
        return snap

    def _on_done(self, kind: str, task: asyncio.Task[Any]) -> None:
        # A task cancelled before its first step never reaches _run's handler.
        if task.cancelled() and self.is_running(kind):
            self.fail(kind, "cancelled")

    async def _run(self, kind: str, fn: JobFn) -> Any:
        progress = self.progress(kind)
        log = self._logger.bind(kind=kind)
        log.info("job.started", total=progress.total)
        try:
            result = await fn(progress)
        except asyncio.CancelledError:
            self.fail(kind, "cancelled")
            log.warning("job.cancelled")
            raise
        except Exception as e:
            self.fail(kind, str(e) or type(e).__name__)
            log.exception("job.failed", exc=e)
            return None

        self.finish(kind, result=result)
        log.info("job.finished", processed=progress.processed, **progress.counters)
        return result

    def task(self, kind: str) -> asyncio.Task[Any] | None:
        return self._tasks.get(kind)

    def cancel(self, kind: str) -> bool:
        task = self._tasks.get(kind)
        if task is None or task.done():
            return False
        return task.cancel()

    async def wait(self, kind: str) -> dict[str, Any]:
        """Wait for the current task of `kind` (if any) and return its final snapshot."""
        task = self._tasks.get(kind)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
        return self.snapshot(kind)

    async def run(self, kind: str, fn: JobFn, *, total: int = 0) -> dict[str, Any]:
        """Start and wait; a convenience for the CLI."""
        snap = self.start(kind, fn, total=total)
        if snap.get("notice"):
            return snap
        return await self.wait(kind)
