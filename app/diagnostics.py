"""Diagnostics summary for a document session."""

from __future__ import annotations

from typing import Any, Dict

import resolution_engine


def _node_counts(document: dict | None) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for node in (document or {}).get("nodes") or []:
        ntype = node.get("type") or "unknown"
        counts[ntype] = counts.get(ntype, 0) + 1
    return counts


def _warning_codes(document: dict | None) -> Dict[str, int]:
    codes: Dict[str, int] = {}
    for issue in (document or {}).get("warnings") or []:
        code = issue.get("code") or "UNKNOWN"
        codes[code] = codes.get(code, 0) + 1
    return codes


def build_diagnostics(session: Any) -> dict:
    document = session.latest_document
    history = session.undo_log.history()
    return {
        "session_id": session.session_id,
        "template_id": session.template.get("id"),
        "template_hash": session.template_hash,
        "record_id": session.record_id,
        "table_id": session.table_id,
        "refresh_epoch": session.refresh_epoch,
        "document_epoch": document.get("refresh_epoch") if document else None,
        "stale": document is None or document.get("refresh_epoch") != session.refresh_epoch,
        "nodes": _node_counts(document),
        "placeholders": resolution_engine.count_placeholders(document) if document else {},
        "warnings": _warning_codes(document),
        "changes": {
            "pending": len(session.outbox.pending()),
            "failed": len(session.outbox.failed()),
        },
        "history": {
            "undo": len(history["undo"]),
            "redo": len(history["redo"]),
            "capacity": history["capacity"],
        },
        "cached_tables": session.fetcher.cached_tables(),
        "events": session.bus.counts(),
    }
