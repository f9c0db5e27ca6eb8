from __future__ import annotations

import json
import traceback
import uuid
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Iterator, TextIO

_MAX_KEPT_RECORDS = 10_000


def _clip(text: str, limit: int) -> str:
    s = str(text or "")
    return s if len(s) <= limit else s[: limit - 1] + "…"


def _error_payload(exc: BaseException) -> dict[str, str]:
    tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return {
        "type": type(exc).__name__,
        "message": _clip(str(exc), 2000),
        "traceback": _clip(tb, 12000),
    }


class _Sink:
    """Destination shared by a logger and every logger bound from it."""

    def __init__(self, path: Path | None, *, keep: bool) -> None:
        self.path = path
        self.lock = Lock()
        self.kept: deque[dict[str, Any]] | None = deque(maxlen=_MAX_KEPT_RECORDS) if keep else None
        self._fp: TextIO | None = None

    def open(self) -> None:
        if self.path is None:
            return
        with self.lock:
            if self._fp is None:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self._fp = self.path.open("a", encoding="utf-8", newline="\n")

    def close(self) -> None:
        with self.lock:
            if self._fp is not None:
                self._fp.close()
                self._fp = None

    def emit(self, record: dict[str, Any]) -> None:
        if self.path is not None and self._fp is None:
            self.open()
        line = json.dumps(record, ensure_ascii=False, sort_keys=True, separators=(",", ":"), default=str)
        with self.lock:
            if self.kept is not None:
                self.kept.append(record)
            if self._fp is not None:
                self._fp.write(line + "\n")
                self._fp.flush()


class RunLogger:
    """
    JSONL event log for imports, extraction passes, cleanups and embedding runs.

    One JSON object per line: ts, level, event, session_id, optional post_id,
    and the keyword arguments under "data". Without a path nothing touches the
    disk and records are only kept in memory, readable through `events()`.
    """

    def __init__(
        self,
        path: str | Path | None = None,
        *,
        session_id: str | None = None,
        keep_records: bool | None = None,
    ) -> None:
        p = Path(path) if path is not None else None
        keep = p is None if keep_records is None else bool(keep_records)
        self._sink = _Sink(p, keep=keep)
        self._session_id = (session_id or "").strip() or uuid.uuid4().hex
        self._context: dict[str, Any] = {}

    @classmethod
    def open(cls, path: str | Path, *, session_id: str | None = None) -> "RunLogger":
        logger = cls(path, session_id=session_id)
        logger._sink.open()
        return logger

    @property
    def session_id(self) -> str:
        return self._session_id

    def bind(self, **context: Any) -> "RunLogger":
        """A logger writing to the same sink with extra fields on every record."""
        child = RunLogger.__new__(RunLogger)
        child._sink = self._sink
        child._session_id = self._session_id
        child._context = {**self._context, **context}
        return child

    def close(self) -> None:
        self._sink.close()

    def __enter__(self) -> "RunLogger":
        self._sink.open()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    def info(self, event: str, *, post_id: str | None = None, **data: Any) -> None:
        self.log("INFO", event, post_id=post_id, **data)

    def warning(self, event: str, *, post_id: str | None = None, **data: Any) -> None:
        self.log("WARN", event, post_id=post_id, **data)

    def error(self, event: str, *, post_id: str | None = None, **data: Any) -> None:
        self.log("ERROR", event, post_id=post_id, **data)

    def exception(
        self, event: str, *, exc: BaseException, post_id: str | None = None, **data: Any
    ) -> None:
        self.log("ERROR", event, post_id=post_id, error=_error_payload(exc), **data)

    def log(self, level: str, event: str, *, post_id: str | None = None, **data: Any) -> None:
        record: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": (level or "").strip().upper() or "INFO",
            "event": (event or "").strip() or "event",
            "session_id": self._session_id,
        }
        if post_id and str(post_id).strip():
            record["post_id"] = str(post_id).strip()

        payload = {**self._context, **data}
        if payload:
            record["data"] = payload
        self._sink.emit(record)

    @property
    def records(self) -> list[dict[str, Any]]:
        kept = self._sink.kept
        return list(kept) if kept is not None else []

    def iter_events(self, event: str) -> Iterator[dict[str, Any]]:
        return (r for r in self.records if r.get("event") == event)

    def events(self, event: str) -> list[dict[str, Any]]:
        return list(self.iter_events(event))
