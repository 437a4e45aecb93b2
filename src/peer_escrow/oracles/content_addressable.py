"""ContentAddressableOracle: checks that referenced evidence is retrievable.

Use case: a digital file or a document was promised; the proof references
files in storage. The deliverable counts as delivered when every referenced
path can still be fetched.

The whole check runs under one bounded wait. On timeout, absence, or a
transport error the result is verified=False, confidence 0 (fail closed).
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from peer_escrow.config import get_settings
from peer_escrow.domain.oracle_protocol import VerificationRequest, VerificationResult
from peer_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from peer_escrow.infrastructure.storage import FileStorage

logger = get_logger(__name__)


class ContentAddressableOracle:
    """Oracle backed by the storage collaborator's exists(path)."""

    def __init__(self, storage: FileStorage, timeout: float | None = None) -> None:
        self._storage = storage
        self._timeout = timeout

    def _get_timeout(self) -> float:
        if self._timeout is not None:
            return self._timeout
        return get_settings().oracle_cas_timeout_seconds

    async def verify(self, request: VerificationRequest) -> VerificationResult:
        timeout = self._get_timeout()
        paths = [f.path for f in request.files]

        if not paths:
            return VerificationResult(
                verified=False,
                confidence_score=0,
                notes="Proof references no stored files to check",
                error="NO_FILES",
            )

        logger.info(
            "oracle.cas.start",
            proof_id=request.proof_id,
            file_count=len(paths),
            timeout=timeout,
        )

        try:
            async with asyncio.timeout(timeout):
                found = await asyncio.gather(*(self._storage.exists(p) for p in paths))
        except TimeoutError:
            logger.warning("oracle.cas.timeout", proof_id=request.proof_id, timeout=timeout)
            return VerificationResult(
                verified=False,
                confidence_score=0,
                notes=f"Content check timed out after {timeout:g} seconds",
                error="ORACLE_TIMEOUT",
                logs={"paths": paths},
            )
        except Exception as exc:
            logger.warning(
                "oracle.cas.error", proof_id=request.proof_id, error=str(exc)
            )
            return VerificationResult(
                verified=False,
                confidence_score=0,
                notes=f"Content check failed: {exc}",
                error="STORAGE_ERROR",
                logs={"paths": paths},
            )

        missing = [p for p, ok in zip(paths, found, strict=True) if not ok]
        if missing:
            logger.info("oracle.cas.missing", proof_id=request.proof_id, missing=missing)
            return VerificationResult(
                verified=False,
                confidence_score=0,
                notes=f"{len(missing)} of {len(paths)} file(s) not retrievable",
                logs={"missing": missing},
            )

        logger.info("oracle.cas.verified", proof_id=request.proof_id)
        return VerificationResult(
            verified=True,
            confidence_score=100,
            notes="All referenced files are retrievable",
            logs={"paths": paths},
        )
