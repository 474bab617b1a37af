"""
Pipeline Orchestrator

Runs the stages of one edit request in order:

    Idle -> Cutting -> Editing -> Harmonizing -> Upscaling -> Done

Cutout and edit are fatal (any failure ends the run as Failed); harmonize
and upscale are best-effort (a failure passes the stage input through and
is recorded in the log). A caller-supplied cancel event or the request
deadline ends the run as Cancelled at any point.
"""

import asyncio
import time
from typing import Callable, Dict, Optional

import httpx

from garment_studio.core.config import Settings
from garment_studio.core.logging import LogContext, get_logger
from garment_studio.core.metrics import (
    active_pipelines_gauge,
    record_pipeline_run,
    record_stage_fallback,
)
from garment_studio.pipeline.polling import Sleep
from garment_studio.pipeline.schemas import (
    STAGE_ORDER,
    STAGE_POLICIES,
    STAGE_STATES,
    FailureKind,
    ImageRef,
    PipelineOutcome,
    PipelineRequest,
    PipelineState,
    StageFailure,
    StageLogEntry,
    StageName,
    StagePolicy,
    StageRequest,
    StageSuccess,
)
from garment_studio.pipeline.stages import build_default_stages, stage_timeout_failure

logger = get_logger(__name__)

Clock = Callable[[], float]


class _Interrupted(Exception):
    """Raised internally when a stage is aborted by cancel or deadline."""

    def __init__(self, code: str):
        self.code = code
        super().__init__(code)


class PipelineOrchestrator:
    """
    Sequential state machine over the four pipeline stages.

    ``stages`` maps each StageName to an object exposing
    ``execute(StageRequest) -> StageResult``. The edit stage also exposes
    ``check_policy(instruction)``, used as a pre-flight check.
    """

    def __init__(
        self,
        stages: Dict[StageName, object],
        settings: Settings,
        clock: Clock = time.monotonic,
    ):
        missing = [name.value for name in STAGE_ORDER if name not in stages]
        if missing:
            raise ValueError(f"Missing pipeline stages: {', '.join(missing)}")
        self.stages = stages
        self.settings = settings
        self.clock = clock

    def stage_params(self, stage: StageName, request: PipelineRequest) -> Dict[str, object]:
        if stage == StageName.CUTOUT:
            return {"profile": request.cutout_profile}
        if stage == StageName.EDIT:
            return {"instruction": request.instruction}
        if stage == StageName.HARMONIZE:
            return {"mode": request.harmonization_mode}
        return {"scale": request.upscale_factor or self.settings.UPSCALE_FACTOR}

    async def run(
        self,
        request: PipelineRequest,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> PipelineOutcome:
        """Execute one pipeline run and return its outcome. Never raises for stage failures."""
        with LogContext(run_id=request.run_id) as ctx:
            started = self.clock()
            active_pipelines_gauge.inc()
            try:
                outcome = await self._run(request, cancel_event, ctx, started)
            finally:
                active_pipelines_gauge.dec()

            outcome.duration_ms = int((self.clock() - started) * 1000)
            record_pipeline_run(
                outcome.state.value,
                outcome.duration_ms / 1000,
                failed_stage=outcome.failed_stage.value if outcome.failed_stage else "none",
            )
            logger.info(
                "pipeline_finished",
                state=outcome.state.value,
                duration_ms=outcome.duration_ms,
                fallbacks=[stage.value for stage in outcome.fallbacks],
                failed_stage=outcome.failed_stage.value if outcome.failed_stage else None,
            )
            return outcome

    async def _run(
        self,
        request: PipelineRequest,
        cancel_event: Optional[asyncio.Event],
        ctx: LogContext,
        started: float,
    ) -> PipelineOutcome:
        outcome = PipelineOutcome(
            run_id=request.run_id,
            state=PipelineState.IDLE,
            transitions=[PipelineState.IDLE],
        )
        logger.info(
            "pipeline_started",
            stages=sorted(stage.value for stage in request.enabled_stages),
            image=request.source.describe(),
        )

        # Pre-flight: restricted instructions are rejected before any network call
        rejection = self.stages[StageName.EDIT].check_policy(request.instruction)
        if rejection is not None:
            outcome.log.append(StageLogEntry(
                stage=StageName.EDIT, status="failure", failure=rejection
            ))
            return self._fail(outcome, StageName.EDIT, rejection)

        deadline = started + request.deadline_seconds if request.deadline_seconds else None
        current: ImageRef = request.source

        for name in STAGE_ORDER:
            if not request.is_enabled(name):
                outcome.log.append(StageLogEntry(stage=name, status="skipped"))
                logger.info("stage_skipped", stage=name.value)
                continue

            if cancel_event is not None and cancel_event.is_set():
                return self._cancel(outcome, name, "caller_abort", 0)
            if deadline is not None and self.clock() >= deadline:
                return self._cancel(outcome, name, "deadline_exceeded", 0)

            self._transition(outcome, STAGE_STATES[name])
            ctx.set_stage(name.value)

            stage = self.stages[name]
            stage_timeout = self.settings.stage_timeout(name.value)
            stage_started = self.clock()
            try:
                result = await self._execute_stage(
                    name,
                    stage,
                    StageRequest(
                        image=current,
                        params=self.stage_params(name, request),
                        timeout=stage_timeout,
                    ),
                    cancel_event,
                    deadline,
                )
            except _Interrupted as e:
                duration_ms = int((self.clock() - stage_started) * 1000)
                return self._cancel(outcome, name, e.code, duration_ms)
            duration_ms = int((self.clock() - stage_started) * 1000)

            if isinstance(result, StageSuccess):
                outcome.log.append(StageLogEntry(
                    stage=name,
                    status="success",
                    duration_ms=duration_ms,
                    provider=result.provider,
                ))
                current = result.image
                continue

            if STAGE_POLICIES[name] == StagePolicy.FATAL:
                outcome.log.append(StageLogEntry(
                    stage=name, status="failure", duration_ms=duration_ms, failure=result
                ))
                return self._fail(outcome, name, result)

            # Best-effort: keep the stage input and record what went wrong
            record_stage_fallback(name.value)
            logger.warning(
                "stage_fallback_used",
                stage=name.value,
                kind=result.kind.value,
                code=result.code,
                error=result.message,
            )
            outcome.log.append(StageLogEntry(
                stage=name,
                status="success",
                duration_ms=duration_ms,
                fallback_used=True,
                failure=result,
            ))

        ctx.set_stage(None)
        self._transition(outcome, PipelineState.DONE)
        outcome.image = current
        return outcome

    async def _execute_stage(
        self,
        name: StageName,
        stage,
        stage_request: StageRequest,
        cancel_event: Optional[asyncio.Event],
        deadline: Optional[float],
    ):
        """Run one stage bounded by its timeout, the run deadline and the cancel event.

        Returns the stage result (a Timeout failure if the stage's own budget
        ran out) or raises ``_Interrupted`` for cancel/deadline.
        """
        timeout = stage_request.timeout
        deadline_bound = False
        if deadline is not None:
            remaining = deadline - self.clock()
            if remaining <= 0:
                raise _Interrupted("deadline_exceeded")
            if remaining < timeout:
                timeout = remaining
                deadline_bound = True

        stage_task = asyncio.ensure_future(stage.execute(stage_request))
        waiters = {stage_task}
        cancel_task = None
        if cancel_event is not None:
            cancel_task = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_task)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            stage_task.cancel()
            raise
        finally:
            if cancel_task is not None and not cancel_task.done():
                cancel_task.cancel()

        if stage_task in done:
            return stage_task.result()

        # Abort the in-flight stage, including any pending poll sleep
        stage_task.cancel()
        await asyncio.wait({stage_task})

        if cancel_task is not None and cancel_task in done:
            raise _Interrupted("caller_abort")
        if deadline_bound:
            raise _Interrupted("deadline_exceeded")

        return stage_timeout_failure(name, stage_request.timeout)

    def _transition(self, outcome: PipelineOutcome, state: PipelineState):
        logger.debug("pipeline_transition", from_state=outcome.state.value, to_state=state.value)
        outcome.state = state
        outcome.transitions.append(state)

    def _fail(
        self, outcome: PipelineOutcome, stage: StageName, failure: StageFailure
    ) -> PipelineOutcome:
        self._transition(outcome, PipelineState.FAILED)
        outcome.failure = failure
        outcome.failed_stage = stage
        outcome.image = None
        logger.error(
            "pipeline_failed",
            stage=stage.value,
            kind=failure.kind.value,
            code=failure.code,
            error=failure.message,
        )
        return outcome

    def _cancel(
        self, outcome: PipelineOutcome, stage: StageName, code: str, duration_ms: int
    ) -> PipelineOutcome:
        message = (
            "Pipeline cancelled by caller"
            if code == "caller_abort"
            else "Pipeline deadline exceeded"
        )
        failure = StageFailure(
            kind=FailureKind.CANCELLED, message=message, retryable=False, code=code
        )
        outcome.log.append(StageLogEntry(
            stage=stage, status="cancelled", duration_ms=duration_ms, failure=failure
        ))
        self._transition(outcome, PipelineState.CANCELLED)
        outcome.failure = failure
        outcome.failed_stage = stage
        outcome.image = None
        logger.warning("pipeline_cancelled", stage=stage.value, code=code)
        return outcome


def build_orchestrator(
    settings: Settings,
    http: Optional[httpx.AsyncClient] = None,
    sleep: Sleep = asyncio.sleep,
) -> PipelineOrchestrator:
    """Orchestrator over the production stages."""
    return PipelineOrchestrator(build_default_stages(settings, http, sleep=sleep), settings)
