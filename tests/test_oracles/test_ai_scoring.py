"""Unit tests for the AIScoringOracle.

Uses mocked LiteLLM responses to test parsing, thresholds and failure
handling without hitting a real LLM API.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from peer_escrow.domain.oracle_protocol import ProofFile, VerificationRequest
from peer_escrow.oracles.ai_scoring import AIScoringOracle


def _make_request(description: str = "Cleaned all rooms, photos attached") -> VerificationRequest:
    return VerificationRequest(
        escrow_id="escrow-1",
        deliverable_id="deliverable-1",
        proof_id="proof-1",
        deliverable_type="service",
        deliverable_description="Full clean of a two-room apartment",
        description=description,
        files=(
            ProofFile(
                name="kitchen.jpg",
                path="e/d/kitchen.jpg",
                url="memory://e/d/kitchen.jpg",
                size=2048,
                content_type="image/jpeg",
            ),
        ),
    )


def _mock_llm_response(content: str) -> MagicMock:
    """Create a mock LiteLLM completion response."""
    mock_resp = MagicMock()
    mock_resp.choices = [MagicMock()]
    mock_resp.choices[0].message.content = content
    return mock_resp


class TestAIScoringParsing:
    @pytest.mark.asyncio
    async def test_high_confidence_verifies(self) -> None:
        oracle = AIScoringOracle(threshold=80)
        llm_output = '{"confidence": 92, "notes": "Photos show every room cleaned."}'

        with patch("peer_escrow.oracles.ai_scoring.litellm") as mock_litellm:
            mock_litellm.acompletion = AsyncMock(return_value=_mock_llm_response(llm_output))
            result = await oracle.verify(_make_request())

        assert result.verified is True
        assert result.confidence_score == 92
        assert "every room" in result.notes

    @pytest.mark.asyncio
    async def test_below_threshold_rejects(self) -> None:
        oracle = AIScoringOracle(threshold=80)
        llm_output = '{"confidence": 55, "notes": "Only the kitchen is shown."}'

        with patch("peer_escrow.oracles.ai_scoring.litellm") as mock_litellm:
            mock_litellm.acompletion = AsyncMock(return_value=_mock_llm_response(llm_output))
            result = await oracle.verify(_make_request())

        assert result.verified is False
        assert result.confidence_score == 55

    @pytest.mark.asyncio
    async def test_threshold_is_inclusive(self) -> None:
        oracle = AIScoringOracle(threshold=80)

        with patch("peer_escrow.oracles.ai_scoring.litellm") as mock_litellm:
            mock_litellm.acompletion = AsyncMock(
                return_value=_mock_llm_response('{"confidence": 80, "notes": "ok"}')
            )
            result = await oracle.verify(_make_request())

        assert result.verified is True

    @pytest.mark.asyncio
    async def test_markdown_fenced_json(self) -> None:
        oracle = AIScoringOracle(threshold=80)
        llm_output = '```json\n{"confidence": 85, "notes": "Looks done."}\n```'

        with patch("peer_escrow.oracles.ai_scoring.litellm") as mock_litellm:
            mock_litellm.acompletion = AsyncMock(return_value=_mock_llm_response(llm_output))
            result = await oracle.verify(_make_request())

        assert result.confidence_score == 85

    @pytest.mark.asyncio
    async def test_confidence_clamped_to_bounds(self) -> None:
        oracle = AIScoringOracle(threshold=80)

        with patch("peer_escrow.oracles.ai_scoring.litellm") as mock_litellm:
            mock_litellm.acompletion = AsyncMock(
                return_value=_mock_llm_response('{"confidence": 140, "notes": "!"}')
            )
            result = await oracle.verify(_make_request())

        assert result.confidence_score == 100

    @pytest.mark.asyncio
    async def test_unparseable_response_fails_closed(self) -> None:
        oracle = AIScoringOracle(threshold=80)

        with patch("peer_escrow.oracles.ai_scoring.litellm") as mock_litellm:
            mock_litellm.acompletion = AsyncMock(
                return_value=_mock_llm_response("I think it was probably cleaned.")
            )
            result = await oracle.verify(_make_request())

        assert result.verified is False
        assert result.confidence_score == 0
        assert result.error == "AI_SCORING_ERROR"

    def test_non_numeric_confidence_is_rejected(self) -> None:
        oracle = AIScoringOracle()

        with pytest.raises(ValueError, match="score schema"):
            oracle._parse_response('{"confidence": "high", "notes": "clean"}')
        with pytest.raises(ValueError, match="score schema"):
            oracle._parse_response('{"notes": "no score given"}')

    @pytest.mark.asyncio
    async def test_provider_error_times_out(self) -> None:
        """Retries back off for seconds; the overall timeout bounds the wait."""
        oracle = AIScoringOracle(threshold=80, timeout=0.1)

        with patch("peer_escrow.oracles.ai_scoring.litellm") as mock_litellm:
            mock_litellm.acompletion = AsyncMock(side_effect=RuntimeError("provider down"))
            result = await oracle.verify(_make_request())

        assert result.verified is False
        assert result.confidence_score == 0
        assert result.error == "ORACLE_TIMEOUT"


class TestPromptBuilding:
    def test_prompt_includes_terms_and_files(self) -> None:
        prompt = AIScoringOracle()._build_prompt(_make_request())
        assert "two-room apartment" in prompt
        assert "kitchen.jpg" in prompt
        assert "Cleaned all rooms" in prompt
