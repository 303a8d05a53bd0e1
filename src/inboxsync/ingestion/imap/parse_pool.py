"""Bounded-concurrency parsing of fetched messages.

Each message is parsed on a worker thread; an ``asyncio.Semaphore`` keeps at
most ``max_concurrency`` parses in flight. The result list has exactly one
slot per input, aligned by index, and every slot is either a parsed message
or an error. A failure in one slot never touches another.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Protocol, Sequence

from pydantic import BaseModel, Field

from .models import ParsedMessage, RawMessage

logger = logging.getLogger(__name__)


class Parser(Protocol):
    def parse(self, raw: RawMessage) -> ParsedMessage:
        ...


class ParseOutcome(BaseModel):
    """One slot of a parse batch."""

    index: int = Field(..., ge=0)
    uid: int
    message: Optional[ParsedMessage] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.message is not None


class ParallelParsePool:
    """Parse a batch of raw messages with a fixed concurrency bound."""

    def __init__(self, parser: Parser, *, max_concurrency: int = 20) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.parser = parser
        self.max_concurrency = max_concurrency

    async def parse_all(self, raws: Sequence[RawMessage]) -> List[ParseOutcome]:
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def parse_with_semaphore(index: int, raw: RawMessage) -> ParseOutcome:
            async with semaphore:
                try:
                    message = await asyncio.to_thread(self.parser.parse, raw)
                except Exception as exc:  # noqa: BLE001
                    logger.warning(
                        f"Parse failed for UID {raw.uid}: {exc}",
                        extra={"uid": raw.uid},
                    )
                    return ParseOutcome(index=index, uid=raw.uid, error=str(exc))
                return ParseOutcome(index=index, uid=raw.uid, message=message)

        tasks = [parse_with_semaphore(index, raw) for index, raw in enumerate(raws)]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        outcomes: List[ParseOutcome] = []
        for index, result in enumerate(results):
            if isinstance(result, ParseOutcome):
                outcomes.append(result)
            elif isinstance(result, asyncio.CancelledError):
                raise result
            else:
                logger.error(f"Parse task failed: {result}")
                outcomes.append(ParseOutcome(index=index, uid=raws[index].uid, error=str(result)))
        return outcomes


__all__ = ["ParallelParsePool", "ParseOutcome", "Parser"]
