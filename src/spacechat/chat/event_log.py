"""Debug event logging for chat turns."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Mapping, Sequence

from ..utils import logging as logging_utils

LOGGER = logging.getLogger(__name__)


def _default_event_dir() -> Path:
    log_path = logging_utils.get_log_path()
    if log_path is not None:
        return log_path.parent / "events"
    return Path.home() / ".spacechat" / "logs" / "events"


@dataclass(slots=True)
class _NullTurnEventLog:
    """No-op implementation used when event logging is disabled."""

    path: Path | None = None

    def log_snapshot(self, *_: Any, **__: Any) -> None:
        return

    def log_tool_use(self, *_: Any, **__: Any) -> None:
        return

    def log_completion(self, *_: Any, **__: Any) -> None:
        return

    def log_stopped(self, *_: Any, **__: Any) -> None:
        return

    def log_failure(self, *_: Any, **__: Any) -> None:
        return


class TurnEventLog:
    """Writes structured JSONL entries for one request/response exchange."""

    def __init__(self, path: Path, *, context: Mapping[str, Any]) -> None:
        self.path = path
        self._file = path.open("w", encoding="utf-8")
        self._finalized = False
        self._write_entry("start", context)

    @property
    def finalized(self) -> bool:
        return self._finalized

    def close(self) -> None:
        try:
            self._file.close()
        except OSError:  # pragma: no cover - close failure
            LOGGER.debug("Failed to close event log %s", self.path, exc_info=True)

    def log_snapshot(self, snapshot: Mapping[str, Any], *, label: str = "snapshot") -> None:
        self._write_entry("snapshot", {"label": label, "snapshot": dict(snapshot)})

    def log_tool_use(self, tool_use: Mapping[str, Any], *, message_id: str) -> None:
        self._write_entry(
            "tool_use",
            {
                "message_id": message_id,
                "tool_use_id": tool_use.get("id"),
                "name": tool_use.get("name"),
                "input": tool_use.get("input"),
            },
        )

    def log_completion(
        self,
        *,
        response_text: str,
        conversation_title: str | None = None,
        tool_call_count: int = 0,
    ) -> None:
        self._finish(
            "completion",
            {
                "status": "success",
                "response_text": response_text,
                "conversation_title": conversation_title,
                "tool_call_count": tool_call_count,
            },
        )

    def log_stopped(self, *, response_text: str) -> None:
        self._finish("stopped", {"status": "stopped", "response_text": response_text})

    def log_failure(self, *, message: str, details: Mapping[str, Any] | None = None) -> None:
        payload: dict[str, Any] = {"status": "failure", "message": message}
        if details:
            payload["details"] = dict(details)
        self._finish("failure", payload)

    def _finish(self, event: str, payload: Mapping[str, Any]) -> None:
        if self._finalized:
            return
        self._write_entry(event, payload)
        self._finalized = True
        self.close()

    def _write_entry(self, event: str, payload: Mapping[str, Any] | None = None) -> None:
        entry: dict[str, Any] = {
            "event": event,
            "timestamp": time.time(),
        }
        if payload:
            for key, value in payload.items():
                entry[key] = _safe_json(value)
        json.dump(entry, self._file, ensure_ascii=False)
        self._file.write("\n")
        self._file.flush()


def _safe_json(value: Any, *, depth: int = 0) -> Any:
    if depth > 6:
        return repr(value)
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _safe_json(val, depth=depth + 1) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_safe_json(item, depth=depth + 1) for item in value]
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return repr(value)


class ChatEventLogger:
    """Factory for per-turn event logs when debug event logging is enabled."""

    def __init__(self, *, enabled: bool, base_dir: Path | str | None = None) -> None:
        self.enabled = bool(enabled)
        self._base_dir = Path(base_dir) if base_dir else _default_event_dir()

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def start_turn(
        self,
        *,
        run_id: str,
        thread_id: str,
        mode: str,
        kind: str,
        query: str | None,
        context: Mapping[str, Any],
        context_description: str | None = None,
        budget: Mapping[str, Any] | None = None,
        history: Sequence[Mapping[str, Any]] | None = None,
    ) -> TurnEventLog | _NullTurnEventLog:
        if not self.enabled:
            return _NullTurnEventLog()
        try:
            self._base_dir.mkdir(parents=True, exist_ok=True)
            path = self._allocate_path(run_id)
            start = {
                "run_id": run_id,
                "thread_id": thread_id,
                "mode": mode,
                "kind": kind,
                "query": query,
                "context_description": context_description,
                "budget": dict(budget or {}),
                "history_length": len(history or ()),
            }
            log_run = TurnEventLog(path, context=start)
            log_run.log_snapshot(context, label="context")
            LOGGER.debug("Chat event log started: %s", path)
            return log_run
        except OSError:
            LOGGER.debug("Failed to start chat event log", exc_info=True)
            return _NullTurnEventLog()

    def _allocate_path(self, run_id: str) -> Path:
        timestamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
        safe_run_id = "".join(ch for ch in run_id if ch.isalnum())[:12] or "run"
        return self._base_dir / f"chat-{timestamp}-{safe_run_id}.jsonl"


__all__ = [
    "ChatEventLogger",
    "TurnEventLog",
]
