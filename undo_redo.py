"""Bounded undo/redo history replayed through the edit write path."""

from __future__ import annotations

import copy
import logging
from typing import Any, Awaitable, Callable, Dict, List


logger = logging.getLogger("docbind.undo")

DEFAULT_CAPACITY = 50

Writer = Callable[[dict, str], Awaitable[dict]]


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Dict[str, Any]:
    return {"code": code, "message": message, "path": path, "detail": detail}


class UndoRedoLog:
    def __init__(self, capacity: int = DEFAULT_CAPACITY, writer: Writer | None = None) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._writer = writer
        self._undo: List[dict] = []
        self._redo: List[dict] = []

    @property
    def capacity(self) -> int:
        return self._capacity

    def bind(self, writer: Writer) -> None:
        self._writer = writer

    def push(self, action: dict) -> None:
        self._undo.append(copy.deepcopy(action))
        if len(self._undo) > self._capacity:
            evicted = self._undo.pop(0)
            logger.debug("undo_evicted record=%s field=%s", evicted.get("record_id"), evicted.get("field_id"))
        self._redo.clear()

    def can_undo(self) -> bool:
        return bool(self._undo)

    def can_redo(self) -> bool:
        return bool(self._redo)

    async def _apply(self, source: List[dict], target: List[dict], direction: str, code: str) -> dict:
        if not source:
            return {"ok": True, "applied": False, "action": None, "errors": []}
        if self._writer is None:
            raise RuntimeError("UndoRedoLog has no writer bound")
        action = source[-1]
        try:
            result = await self._writer(copy.deepcopy(action), direction)
        except Exception as exc:
            result = {"ok": False, "errors": [_issue("WRITE_BACK_FAILED", str(exc), action.get("field_id"))]}
        if not result or not result.get("ok"):
            causes = (result or {}).get("errors") or []
            logger.warning(
                "%s_failed record=%s field=%s", direction, action.get("record_id"), action.get("field_id")
            )
            return {
                "ok": False,
                "applied": False,
                "action": copy.deepcopy(action),
                "errors": [
                    _issue(
                        code,
                        f"Could not {direction} change to {action.get('field_id')}",
                        action.get("field_id"),
                        {"causes": causes},
                    )
                ],
            }
        source.pop()
        target.append(action)
        logger.info("%s_applied record=%s field=%s", direction, action.get("record_id"), action.get("field_id"))
        return {"ok": True, "applied": True, "action": copy.deepcopy(action), "value": result.get("value"), "errors": []}

    async def undo(self) -> dict:
        return await self._apply(self._undo, self._redo, "undo", "UNDO_APPLY_FAILED")

    async def redo(self) -> dict:
        return await self._apply(self._redo, self._undo, "redo", "REDO_APPLY_FAILED")

    def history(self) -> dict:
        return {
            "undo": copy.deepcopy(self._undo),
            "redo": copy.deepcopy(self._redo),
            "capacity": self._capacity,
        }

    def clear(self) -> None:
        self._undo.clear()
        self._redo.clear()
