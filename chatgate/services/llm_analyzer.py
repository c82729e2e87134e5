"""Production analyzer: turns a batch of Slack messages into a JSON result.

The orchestrator treats the analyzer as an opaque ``analyzer(text,
analysis_type)`` coroutine.  This implementation asks an OpenAI chat model
(via ``langchain-openai``) to answer with JSON only and returns the decoded
object; shape normalisation happens in :mod:`chatgate.services.suggestions`.
"""

import json
import logging
from typing import Any
from typing import Optional

from langchain_core.messages import HumanMessage
from langchain_core.messages import SystemMessage
from langchain_openai import ChatOpenAI

from chatgate.config import get_settings
from chatgate.errors import ConfigurationError
from chatgate.errors import DataFormatError
from chatgate.errors import truncate

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

_PROMPTS = {
    "task_discovery": (
        "You extract actionable tasks from team chat messages. "
        'Answer with JSON only: {"detected_tasks": [{"title": str, "description": str, '
        '"priority": "low"|"medium"|"high", "confidence": number between 0 and 1, '
        '"category": str, "source_message": str}]}. '
        "Only include concrete work items somebody committed to or was asked to do."
    ),
    "project_update": (
        "You summarise project progress from team chat messages. "
        'Answer with JSON only: {"updates": [str], "insights": [str]}.'
    ),
    "team_insights": (
        "You analyse collaboration patterns in team chat messages. "
        'Answer with JSON only: {"insights": [str], "metrics": {str: number}}.'
    ),
}


def _strip_fences(content: str) -> str:
    text = content.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()


class OpenAIMessageAnalyzer:
    """Callable analyzer backed by ``ChatOpenAI``."""

    def __init__(self, model: Optional[str] = None, api_key: Optional[str] = None, llm: Any = None):
        settings = get_settings()
        if llm is None:
            api_key = api_key or settings.openai_api_key
            if not api_key:
                raise ConfigurationError("OPENAI_API_KEY is required for message analysis")
            llm = ChatOpenAI(model=model or settings.analysis_model, api_key=api_key, temperature=0)
        self._llm = llm

    async def __call__(self, text: str, analysis_type: str = "task_discovery") -> Any:
        system_prompt = _PROMPTS.get(analysis_type)
        if system_prompt is None:
            raise ValueError(f"Unsupported analysis type: {analysis_type}")

        response = await self._llm.ainvoke([SystemMessage(content=system_prompt), HumanMessage(content=text)])
        content = response.content if isinstance(response.content, str) else str(response.content)

        try:
            return json.loads(_strip_fences(content))
        except ValueError as exc:
            logger.warning("Analyzer returned non-JSON content: %s", truncate(content))
            raise DataFormatError("Analyzer returned a non-JSON answer") from exc


__all__ = ["OpenAIMessageAnalyzer"]
