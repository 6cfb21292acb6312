"""Best-effort plan, action-purpose and human summaries; failures never stop a run."""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, Final

import structlog

from forge_agent.synthesis_plane.intent import merge_chat_history
from forge_agent.synthesis_plane.json_retry import JsonParseError
from forge_agent.synthesis_plane.providers.base import ChatMessage, ProviderError
from forge_agent.synthesis_plane.schemas import PLAN_SUMMARY

if TYPE_CHECKING:
    from forge_agent.knowledge_plane.workspace import ProjectContext
    from forge_agent.observability.events import RunEventChannel
    from forge_agent.synthesis_plane.intent import HistoryItem
    from forge_agent.synthesis_plane.json_retry import JsonRetryClient
    from forge_agent.utils.concurrency import CancellationToken

MAX_PLAN_STEPS: Final[int] = 6
PLAN_FILES_LIMIT: Final[int] = 80
PURPOSE_FILES_LIMIT: Final[int] = 20


def _bullet_lines(text: str) -> list[str]:
    return [line.strip() for line in text.splitlines() if line.strip()]


class SummaryWriter:
    """Short model-written summaries around an edit."""

    def __init__(self, client: JsonRetryClient, *, logger: Any | None = None) -> None:
        self._client = client
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def summarize_plan(
        self,
        instruction: str,
        context: ProjectContext,
        *,
        memory_context: str | None = None,
        history: Sequence[HistoryItem] | None = None,
        token: CancellationToken | None = None,
    ) -> list[str] | None:
        files = context.files
        preview = "\n".join(files[:PLAN_FILES_LIMIT])
        truncated = "\n...(truncated)" if len(files) > PLAN_FILES_LIMIT else ""
        memory_block = f"\n\nProject memory:\n{memory_context}" if memory_context else ""
        messages = merge_chat_history(
            history,
            [
                ChatMessage.system(
                    'You are planning a coding task. Return ONLY valid JSON: {"plan":["step1","step2",...]}. '
                    "Keep the plan concise (3-6 steps). Do not include chain-of-thought or explanations."
                ),
                ChatMessage.user(
                    f"Instruction: {instruction}\n\nProject context:\n{context.prompt_json()}"
                    f"{memory_block}\n\nFiles (partial list):\n{preview}{truncated}"
                ),
            ],
        )
        try:
            payload = await self._client.request_json(
                messages, PLAN_SUMMARY, token=token, label="Plan summary"
            )
        except (JsonParseError, ProviderError) as exc:
            self._logger.info("plan_summary_failed", error=str(exc))
            return None
        plan = [str(step).strip() for step in payload.get("plan", []) if str(step).strip()]
        return plan[:MAX_PLAN_STEPS] or None

    async def explain_action_purpose(
        self,
        instruction: str,
        files: Sequence[str],
        *,
        events: RunEventChannel | None = None,
        token: CancellationToken | None = None,
    ) -> list[str]:
        """1-3 "Action - Purpose" bullets, streamed to ``events`` when given."""

        messages = [
            ChatMessage.system(
                "Summarize the intended changes as short bullet points. "
                'Each bullet must be "Action - Purpose" and must be specific. '
                "Do not mention that you are an AI. Return 1-3 bullets only."
            ),
            ChatMessage.user(
                f"Instruction: {instruction}\n"
                f"Target files: {', '.join(list(files)[:PURPOSE_FILES_LIMIT])}\n"
                "Return bullets only."
            ),
        ]
        if events is not None:
            events.log("Summarizing actions...")
        try:
            content = await self._client.request_text(messages, token=token, label="Action purpose")
        except ProviderError as exc:
            self._logger.info("action_purpose_failed", error=str(exc))
            return []
        lines = _bullet_lines(content)[:3]
        if events is not None and lines:
            events.stream_start("assistant")
            events.stream_append("\n".join(lines))
            events.stream_end()
        return lines

    async def summarize_changes(
        self,
        instruction: str,
        change_summary: str,
        *,
        history: Sequence[HistoryItem] | None = None,
        token: CancellationToken | None = None,
    ) -> str | None:
        messages = merge_chat_history(
            history,
            [
                ChatMessage.system(
                    "Summarize the completed changes for the user. Keep it concise (3-6 bullets). "
                    "Mention key files and any follow-up actions. Do not include code blocks."
                ),
                ChatMessage.user(
                    f"Instruction: {instruction}\n\n"
                    f"Change summary:\n{change_summary or '(no summary)'}\n\n"
                    "Return bullets only."
                ),
            ],
        )
        try:
            content = await self._client.request_text(messages, token=token, label="Human summary")
        except ProviderError as exc:
            self._logger.info("human_summary_failed", error=str(exc))
            return None
        return content or None


__all__ = ["MAX_PLAN_STEPS", "SummaryWriter"]
