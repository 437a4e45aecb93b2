"""AIScoringOracle: automated confidence scoring for service deliverables.

Use case: "Clean the apartment" - the provider submits photos and a write-up,
an LLM scores how confidently the evidence shows the service was performed.

Verification flow:
    1. Build a scoring prompt from the deliverable terms and the proof.
    2. Call the LLM via LiteLLM (tenacity retries, overall asyncio timeout).
    3. Parse the JSON answer {"confidence": 0-100, "notes": "..."}.
    4. verified = confidence >= oracle_ai_confidence_threshold.

Anything that goes wrong (timeout, provider error, unparseable answer) is
a verified=False result with confidence 0.
"""

from __future__ import annotations

import asyncio
import json
import re

import litellm
from jsonschema import Draft7Validator
from tenacity import retry, stop_after_attempt, wait_exponential

from peer_escrow.config import get_settings
from peer_escrow.domain.oracle_protocol import VerificationRequest, VerificationResult
from peer_escrow.logging_config import get_logger

logger = get_logger(__name__)

SCORING_SYSTEM_PROMPT = """You are an oracle verifying service completion for an escrow system.

Judge only the evidence you are given. Do not assume work happened that the
evidence does not show.

Respond with ONLY a JSON object, no markdown and no extra text:
{"confidence": <integer 0-100>, "notes": "<one paragraph explaining the score>"}

confidence 100 = the evidence clearly shows the service was completed as agreed.
confidence 0 = no evidence, or evidence of something else.
"""

SCORING_USER_TEMPLATE = """## Service agreed
{deliverable_description}

## Proof description
{description}

## Proof files
{files}

Score how confidently the proof shows the service was completed."""

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)

SCORE_SCHEMA = {
    "type": "object",
    "required": ["confidence"],
    "properties": {
        "confidence": {"type": "number"},
        "notes": {"type": ["string", "null"]},
    },
}
_SCORE_VALIDATOR = Draft7Validator(SCORE_SCHEMA)


class AIScoringOracle:
    """Oracle that asks an LLM for a 0-100 completion confidence."""

    def __init__(
        self,
        model: str | None = None,
        fallback_models: list[str] | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        threshold: int | None = None,
        timeout: float | None = None,
    ) -> None:
        """Initialize with optional overrides (defaults come from config)."""
        self._model = model
        self._fallback_models = fallback_models
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._threshold = threshold
        self._timeout = timeout

    def _get_model_config(self) -> dict:
        """Resolve model configuration from overrides or settings."""
        settings = get_settings()
        return {
            "model": self._model or settings.litellm_model,
            "fallback_models": self._fallback_models or settings.litellm_fallback_model_list,
            "max_tokens": self._max_tokens or settings.litellm_max_tokens,
            "temperature": (
                self._temperature if self._temperature is not None else settings.litellm_temperature
            ),
        }

    @property
    def threshold(self) -> int:
        if self._threshold is not None:
            return self._threshold
        return get_settings().oracle_ai_confidence_threshold

    def _get_timeout(self) -> float:
        if self._timeout is not None:
            return self._timeout
        return get_settings().oracle_ai_timeout_seconds

    async def verify(self, request: VerificationRequest) -> VerificationResult:
        """Score the proof and compare against the confidence threshold."""
        logger.info(
            "oracle.ai.start",
            proof_id=request.proof_id,
            deliverable_id=request.deliverable_id,
        )
        timeout = self._get_timeout()

        try:
            async with asyncio.timeout(timeout):
                llm_response = await self._call_llm(self._build_prompt(request))
            confidence, notes = self._parse_response(llm_response)
        except TimeoutError:
            logger.warning("oracle.ai.timeout", proof_id=request.proof_id, timeout=timeout)
            return VerificationResult(
                verified=False,
                confidence_score=0,
                notes=f"AI verification timed out after {timeout:g} seconds",
                error="ORACLE_TIMEOUT",
            )
        except Exception as exc:
            logger.exception("oracle.ai.error", proof_id=request.proof_id)
            return VerificationResult(
                verified=False,
                confidence_score=0,
                notes=f"AI verification failed: {exc}",
                error="AI_SCORING_ERROR",
                logs={"exception": str(exc)},
            )

        verified = confidence >= self.threshold
        logger.info(
            "oracle.ai.result",
            proof_id=request.proof_id,
            confidence=confidence,
            threshold=self.threshold,
            verified=verified,
        )
        return VerificationResult(
            verified=verified,
            confidence_score=confidence,
            notes=notes,
            logs={
                "llm_response": llm_response,
                "model": self._get_model_config()["model"],
                "threshold": self.threshold,
            },
        )

    def _build_prompt(self, request: VerificationRequest) -> str:
        files = "\n".join(
            f"- {f.name} ({f.content_type}, {f.size} bytes): {f.url}" for f in request.files
        )
        return SCORING_USER_TEMPLATE.format(
            deliverable_description=request.deliverable_description or "(no description)",
            description=request.description or "(none)",
            files=files or "(none)",
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def _call_llm(self, user_message: str) -> str:
        """Call the LLM via LiteLLM with retry logic."""
        config = self._get_model_config()

        response = await litellm.acompletion(
            model=config["model"],
            messages=[
                {"role": "system", "content": SCORING_SYSTEM_PROMPT},
                {"role": "user", "content": user_message},
            ],
            max_tokens=config["max_tokens"],
            temperature=config["temperature"],
            fallbacks=config["fallback_models"] or None,
        )

        content = response.choices[0].message.content
        if not content:
            raise ValueError("LLM returned empty response")

        return content.strip()

    def _parse_response(self, response: str) -> tuple[int, str]:
        """Extract (confidence, notes) from the JSON answer.

        Tolerates markdown fences around the object. Confidence is clamped
        to [0, 100].
        """
        match = _JSON_OBJECT.search(response)
        if match is None:
            raise ValueError(f"No JSON object in LLM response: {response[:200]}")

        data = json.loads(match.group(0))
        errors = sorted(_SCORE_VALIDATOR.iter_errors(data), key=lambda e: list(e.path))
        if errors:
            raise ValueError(f"LLM response does not match the score schema: {errors[0].message}")

        confidence = max(0, min(100, round(data["confidence"])))
        notes = str(data.get("notes") or data.get("reason") or "")
        return confidence, notes
