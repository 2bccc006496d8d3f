"""
ATOMIC DOCUMENT NUMBERING

Provides:
1. Atomic increment-or-initialize per scope (findOneAndUpdate + $inc + upsert)
2. Whole-increment retry with backoff on transient store failures
3. Degraded fallback identifier when the atomic path stays unavailable
4. Human-readable numbers per document kind (LR-2025-0007, PO/2025/03/0007)

Degraded mode:
    The fallback is wall-clock milliseconds * 10000 + a random suffix. It is
    collision-resistant but NOT sequential, and every use is logged at
    WARNING. It is only taken outside a transaction; inside one the failure
    propagates so the caller's transaction aborts cleanly.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple
import asyncio
import logging
import secrets
import time

from .errors import WorkflowError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NumberingPolicy:
    """
    How one document kind is numbered.

    scope_format and number_format are str.format templates receiving
    prefix, yyyy, mm and (number_format only) seq.
    """
    prefix: str
    scope_format: str
    number_format: str

    def scope_for(self, when: datetime) -> str:
        return self.scope_format.format(prefix=self.prefix, yyyy=when.year, mm=when.month)

    def format(self, seq: int, when: datetime) -> str:
        return self.number_format.format(prefix=self.prefix, yyyy=when.year, mm=when.month, seq=seq)


YEARLY_DASHED = "{prefix}-{yyyy}-{seq:04d}"
MONTHLY_SLASHED = "{prefix}/{yyyy}/{mm:02d}/{seq:04d}"


def yearly_policy(prefix: str, scope_name: str) -> NumberingPolicy:
    """LR-2025-0007 style, counter scope '<scope_name>-2025'."""
    return NumberingPolicy(prefix, scope_name + "-{yyyy}", YEARLY_DASHED)


def monthly_policy(prefix: str) -> NumberingPolicy:
    """PO/2025/03/0007 style, counter scope 'PO/2025/03'."""
    return NumberingPolicy(prefix, "{prefix}/{yyyy}/{mm:02d}", MONTHLY_SLASHED)


class SequenceNumberIssuer:
    """
    Atomic monotonic sequence generator.

    All increments go through repository.increment_sequence(), a single
    atomic upsert. A failed attempt never leaves the counter partially
    advanced, so retrying the whole increment is safe.
    """

    MAX_RETRIES = 5
    RETRY_DELAY_MS = 100  # Base delay in milliseconds

    def __init__(self, repository):
        self.repository = repository

    async def next(self, scope: str, session=None) -> int:
        """
        Next value for scope. Strictly increasing per scope unless the
        degraded fallback was used (logged).
        """
        for attempt in range(self.MAX_RETRIES):
            try:
                return await self.repository.increment_sequence(scope, session=session)
            except WorkflowError as e:
                if not e.retryable:
                    raise
                logger.error(f"[SEQUENCE] Increment failed for '{scope}' (attempt {attempt + 1}): {e}")
                if session is not None and attempt == self.MAX_RETRIES - 1:
                    raise
                await asyncio.sleep(self.RETRY_DELAY_MS * (attempt + 1) / 1000)

        return self.fallback_identifier(scope)

    def fallback_identifier(self, scope: str) -> int:
        value = int(time.time() * 1000) * 10000 + secrets.randbelow(10000)
        logger.warning(
            f"[SEQUENCE] DEGRADED: atomic counter unavailable for '{scope}', "
            f"issued non-sequential identifier {value}"
        )
        return value

    async def generate_document_number(
        self,
        policy: NumberingPolicy,
        when: Optional[datetime] = None,
        session=None
    ) -> Tuple[str, int]:
        """
        Returns:
            tuple: (document_number, sequence_number)
        """
        when = when or datetime.utcnow()
        scope = policy.scope_for(when)
        sequence = await self.next(scope, session=session)
        document_number = policy.format(sequence, when)
        logger.info(f"[SEQUENCE] Generated document number: {document_number}")
        return document_number, sequence
