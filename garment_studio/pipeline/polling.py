"""
Bounded Poll Loop

Resolves an asynchronous provider job by checking its status at a fixed
interval up to a fixed number of attempts. Sleep is injected so tests can
run the loop without real delays.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Literal, Optional

from pydantic import BaseModel

from garment_studio.core.logging import get_logger

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[Any]]
StatusFetcher = Callable[[], Awaitable[Dict[str, Any]]]

SUCCEEDED = "succeeded"
TERMINAL_FAILURES = ("failed", "canceled")


class PollOutcome(BaseModel):
    """Terminal disposition of a poll loop."""
    status: Literal["succeeded", "failed", "exhausted"]
    attempts: int
    output: Optional[str] = None
    error: Optional[str] = None
    last_status: Optional[str] = None


def extract_output(output: Any) -> Optional[str]:
    """Prediction output as a single reference; list outputs yield their first item."""
    if isinstance(output, list):
        output = next((item for item in output if item), None)
    if isinstance(output, str) and output:
        return output
    return None


async def poll_until_terminal(
    fetch_status: StatusFetcher,
    interval: float,
    max_attempts: int,
    sleep: Sleep = asyncio.sleep,
) -> PollOutcome:
    """
    Poll a job until it succeeds, fails, or the attempt budget runs out.

    Each attempt waits ``interval`` seconds and then fetches the status.
    ``succeeded`` without an output keeps polling. Errors raised by
    ``fetch_status`` propagate to the caller.
    """
    last_status = None
    for attempt in range(1, max_attempts + 1):
        await sleep(interval)
        payload = await fetch_status()
        last_status = payload.get("status")

        if last_status == SUCCEEDED:
            output = extract_output(payload.get("output"))
            if output:
                return PollOutcome(
                    status="succeeded", attempts=attempt, output=output, last_status=last_status
                )
        elif last_status in TERMINAL_FAILURES:
            return PollOutcome(
                status="failed",
                attempts=attempt,
                error=str(payload.get("error") or "Upscaling failed"),
                last_status=last_status,
            )

        logger.debug("poll_pending", attempt=attempt, job_status=last_status)

    return PollOutcome(status="exhausted", attempts=max_attempts, last_status=last_status)
