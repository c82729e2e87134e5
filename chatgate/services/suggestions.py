"""Normalize analyzer output into :class:`TaskSuggestion` objects.

The analyzer is an opaque collaborator and has historically answered in
several shapes.  Supported top-level keys, first present wins:

* ``detected_tasks`` / ``taskSuggestions`` / ``tasks`` / ``suggestions``
  lists of task-like dicts,
* ``actionable_items`` with ``title|task`` and ``description|context``.

A bare JSON list is treated as a list of tasks.  Anything else is a
:class:`DataFormatError`.
"""

from __future__ import annotations

import json
import uuid
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from chatgate.errors import DataFormatError
from chatgate.errors import truncate
from chatgate.schemas.schemas import TaskSuggestion

_TASK_KEYS = ("detected_tasks", "taskSuggestions", "tasks", "suggestions")

DEFAULT_TITLE = "Task from Slack"


def normalize_priority(value: Any) -> str:
    priority = str(value or "").strip().lower()
    if priority in {"urgent", "high", "critical"}:
        return "high"
    if priority in {"low", "minor"}:
        return "low"
    return "medium"


def _confidence(value: Any, default: float = 0.5) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return default
    # Some models answer in percent.
    if confidence > 1.0:
        confidence /= 100.0
    return min(max(confidence, 0.0), 1.0)


def coerce_result(raw: Any) -> Any:
    """Decode a JSON string result; pass structured results through."""

    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except ValueError as exc:
            raise DataFormatError(f"Analysis result is not valid JSON: {truncate(raw, 120)}") from exc
    return raw


def _raw_items(result: Any) -> List[Any]:
    if isinstance(result, list):
        return result
    if not isinstance(result, dict):
        raise DataFormatError(f"Unexpected analysis result type: {type(result).__name__}")

    for key in _TASK_KEYS:
        items = result.get(key)
        if items is not None:
            if not isinstance(items, list):
                raise DataFormatError(f"Analysis result field '{key}' is not a list")
            return items

    items = result.get("actionable_items")
    if items is not None:
        if not isinstance(items, list):
            raise DataFormatError("Analysis result field 'actionable_items' is not a list")
        return [
            {
                "title": item.get("title") or item.get("task") or DEFAULT_TITLE,
                "description": item.get("description") or item.get("context") or "",
                "priority": item.get("priority") or "medium",
                "confidence": item.get("confidence"),
                "conversation_id": item.get("channel"),
            }
            for item in items
            if isinstance(item, dict)
        ]

    return []


def _to_suggestion(item: Any, conversation_id: Optional[str]) -> Optional[TaskSuggestion]:
    if isinstance(item, str):
        item = {"title": item}
    if not isinstance(item, dict):
        return None

    title = str(item.get("title") or item.get("task") or item.get("name") or "").strip()
    if not title:
        return None

    source = item.get("source_message") or item.get("sourceMessage") or item.get("source")
    return TaskSuggestion(
        id=str(item.get("id") or uuid.uuid4()),
        title=title,
        description=str(item.get("description") or item.get("context") or ""),
        confidence=_confidence(item.get("confidence", item.get("confidence_score"))),
        priority=normalize_priority(item.get("priority")),
        category=item.get("category"),
        conversation_id=item.get("conversation_id") or item.get("channel") or conversation_id,
        source_message=str(source) if source is not None else None,
    )


def extract_task_suggestions(raw: Any, conversation_id: Optional[str] = None) -> List[TaskSuggestion]:
    """Return the uniform suggestion list for any supported result shape."""

    result = coerce_result(raw)
    suggestions = []
    for item in _raw_items(result):
        suggestion = _to_suggestion(item, conversation_id)
        if suggestion is not None:
            suggestions.append(suggestion)
    return suggestions


def extract_project_update(raw: Any) -> Dict[str, List[str]]:
    result = coerce_result(raw)
    if not isinstance(result, dict):
        raise DataFormatError(f"Unexpected project update result type: {type(result).__name__}")
    return {
        "updates": [str(u) for u in result.get("updates") or []],
        "insights": [str(i) for i in result.get("insights") or []],
    }


def extract_team_insights(raw: Any) -> Dict[str, Any]:
    result = coerce_result(raw)
    if not isinstance(result, dict):
        raise DataFormatError(f"Unexpected team insights result type: {type(result).__name__}")
    metrics = result.get("metrics") or {}
    if not isinstance(metrics, dict):
        raise DataFormatError("Team insights field 'metrics' is not an object")
    return {"insights": [str(i) for i in result.get("insights") or []], "metrics": metrics}


__all__ = [
    "coerce_result",
    "extract_project_update",
    "extract_task_suggestions",
    "extract_team_insights",
    "normalize_priority",
]
