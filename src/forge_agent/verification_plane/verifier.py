"""Post-validation model check that the applied change satisfies the instruction."""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Final

import structlog

from forge_agent.domain.models import Confidence, VerificationResult, VerificationStatus
from forge_agent.synthesis_plane.json_retry import JsonParseError
from forge_agent.synthesis_plane.providers.base import ChatMessage, ProviderError
from forge_agent.synthesis_plane.schemas import VERIFICATION

if TYPE_CHECKING:
    from forge_agent.synthesis_plane.json_retry import JsonRetryClient
    from forge_agent.utils.concurrency import CancellationToken

VERIFY_SYSTEM_PROMPT: Final[str] = (
    "You are verifying whether code changes satisfy the instruction. "
    'Return ONLY valid JSON: {"status":"pass|fail","issues":["..."],"confidence":"low|medium|high"}. '
    'If any requirement is unmet or risky, set status to "fail" and list issues.'
)
MAX_VALIDATION_OUTPUT_CHARS: Final[int] = 6000


def parse_verification(payload: Mapping[str, Any]) -> VerificationResult:
    """Coerce a contract payload; unknown confidence falls back to ``low``."""

    raw_issues = payload.get("issues")
    issues = (
        tuple(str(item).strip() for item in raw_issues if str(item).strip())
        if isinstance(raw_issues, list)
        else ()
    )
    status = VerificationStatus.FAIL if payload.get("status") == "fail" else VerificationStatus.PASS
    raw_confidence = payload.get("confidence")
    confidence = (
        Confidence(raw_confidence)
        if raw_confidence in (Confidence.MEDIUM.value, Confidence.HIGH.value)
        else Confidence.LOW
    )
    return VerificationResult(status=status, issues=issues, confidence=confidence)


def format_verification(result: VerificationResult) -> str:
    lines = [f"Verification: {result.status.value} ({result.confidence.value} confidence)"]
    lines.extend(f"- {issue}" for issue in result.issues)
    return "\n".join(lines)


class Verifier:
    def __init__(self, client: JsonRetryClient, *, max_retries: int | None = None, logger: Any | None = None) -> None:
        self._client = client
        self._max_retries = max_retries
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def verify(
        self,
        instruction: str,
        change_summary: str,
        validation_output: str | None = None,
        *,
        token: CancellationToken | None = None,
    ) -> VerificationResult | None:
        """Ask the model for a pass/fail verdict; ``None`` when the call itself fails."""

        validation_block = ""
        if validation_output:
            clipped = validation_output[-MAX_VALIDATION_OUTPUT_CHARS:]
            validation_block = f"\n\nValidation output:\n{clipped}"
        messages = [
            ChatMessage.system(VERIFY_SYSTEM_PROMPT),
            ChatMessage.user(
                f"Instruction: {instruction}\n\n"
                f"Change summary:\n{change_summary or '(no summary)'}{validation_block}"
            ),
        ]
        try:
            payload = await self._client.request_json(
                messages,
                VERIFICATION,
                max_retries=self._max_retries,
                token=token,
                label="Verification",
            )
        except (JsonParseError, ProviderError) as exc:
            self._logger.info("verification_failed", error=str(exc))
            return None

        result = parse_verification(payload)
        trace = self._client.trace
        if trace is not None:
            trace.record_step("Verification status", f"{result.status.value} ({result.confidence.value})")
            if result.issues:
                trace.record_step("Verification issues", "\n".join(f"- {item}" for item in result.issues))
        self._logger.info(
            "verification_completed",
            status=result.status.value,
            confidence=result.confidence.value,
            issues=len(result.issues),
        )
        return result


__all__ = ["Verifier", "format_verification", "parse_verification"]
