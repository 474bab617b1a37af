"""
Pipeline Stage Implementations

Each stage wraps one external inference call behind the same contract:
``execute(StageRequest) -> StageResult``. Stages never mutate their input,
never retry (except the upscale poll loop) and report expected failures as
values rather than exceptions.
"""

import asyncio
import base64
import binascii
import time
import traceback
from typing import Any, Dict, Optional

import httpx

from garment_studio.core.config import Settings
from garment_studio.core.exceptions import (
    ExternalAPIError,
    UpstreamTimeoutError,
    sanitize_error_text,
)
from garment_studio.core.logging import get_logger
from garment_studio.core.metrics import (
    record_edit_provider_fallback,
    record_poll_attempts,
    track_stage_latency,
)
from garment_studio.engines.policy import ContentPolicyService
from garment_studio.pipeline.clients import (
    FalEditClient,
    GeminiEditClient,
    HarmonizationClient,
    SegmentationClient,
    UpscaleClient,
)
from garment_studio.pipeline.images import ImageNormalizer
from garment_studio.pipeline.parts import extract_parts, scan_parts
from garment_studio.pipeline.polling import Sleep, poll_until_terminal
from garment_studio.pipeline.schemas import (
    CutoutProfile,
    FailureKind,
    HarmonizationMode,
    ImageRef,
    StageFailure,
    StageName,
    StagePolicy,
    StageRequest,
    StageResult,
    StageSuccess,
)


logger = get_logger(__name__)


# Appended to every edit instruction; not configurable by callers.
GUARDRAIL_SUFFIX = (
    "CRITICAL REQUIREMENTS:\n"
    "- Maintain exact garment proportions, seam accuracy, fabric texture\n"
    "- Preserve true colors and realistic shadows\n"
    "- No stretching, warping or distortion\n"
    "- No added logos, text or artifacts\n"
    "- Professional e-commerce quality\n"
    "- Output PNG format"
)

# Low strength keeps garment identity; higher values alter the product.
HARMONIZATION_STRENGTH = 0.3
HARMONIZATION_STEPS = 20

HARMONIZATION_PROMPTS = {
    HarmonizationMode.RELIGHT: (
        "Enhance lighting consistency, soft professional studio lighting, maintain garment details"
    ),
    HarmonizationMode.SHADOW: (
        "Add realistic shadows and depth, maintain fabric texture and proportions"
    ),
}

QUOTA_MARKERS = ("quota", "resource_exhausted", "rate limit")
INVALID_INPUT_MARKERS = ("invalid_argument", "image too large")


def classify_upstream_error(message: str, http_status: Optional[int]) -> str:
    """Sub-classify an upstream error so callers can tell quota from bad input."""
    lowered = (message or "").lower()
    if http_status == 429 or any(marker in lowered for marker in QUOTA_MARKERS):
        return "quota_exceeded"
    if http_status == 400 or any(marker in lowered for marker in INVALID_INPUT_MARKERS):
        return "invalid_input"
    if http_status is None:
        return "malformed_response"
    return "http_error"


def stage_timeout_failure(stage: StageName, timeout: float) -> StageFailure:
    return StageFailure(
        kind=FailureKind.TIMEOUT,
        message=f"{stage.value.capitalize()} stage did not finish within {timeout:g}s",
        retryable=True,
        code="stage_timeout",
    )


class BaseStage:
    """Common stage plumbing: timing, logging, error-to-result conversion."""

    name: StageName
    policy: StagePolicy = StagePolicy.FATAL

    def __init__(self, settings: Settings, http: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.http = http
        self.normalizer = ImageNormalizer(settings, http)

    async def execute(self, request: StageRequest) -> StageResult:
        stage = self.name.value
        start = time.monotonic()
        logger.info(f"{stage}_starting", image=request.image.describe())

        with track_stage_latency(stage):
            try:
                result = await asyncio.wait_for(self._execute(request), timeout=request.timeout)
            except asyncio.TimeoutError:
                result = stage_timeout_failure(self.name, request.timeout)
            except Exception as e:
                # Unexpected payload shapes and parsing errors end as a failure value
                logger.error(
                    f"{stage}_unexpected_error",
                    error=str(e),
                    error_type=type(e).__name__,
                    traceback=traceback.format_exc()
                )
                result = self.malformed(
                    f"{stage.capitalize()} service returned an unexpected response"
                )

        duration_ms = int((time.monotonic() - start) * 1000)
        if isinstance(result, StageSuccess):
            logger.info(f"{stage}_completed", duration_ms=duration_ms, provider=result.provider)
        else:
            logger.warning(
                f"{stage}_failed",
                duration_ms=duration_ms,
                kind=result.kind.value,
                code=result.code,
                error=result.message,
            )
        return result

    async def _execute(self, request: StageRequest) -> StageResult:
        raise NotImplementedError

    def _clean(self, text: str) -> str:
        return sanitize_error_text(text, self.settings.secrets())

    def failure_from_error(self, error: ExternalAPIError) -> StageFailure:
        if isinstance(error, UpstreamTimeoutError):
            return StageFailure(
                kind=FailureKind.TIMEOUT,
                message=self._clean(error.message),
                retryable=True,
                code="request_timeout",
            )
        return StageFailure(
            kind=FailureKind.UPSTREAM_ERROR,
            message=self._clean(error.message),
            retryable=True,
            code=classify_upstream_error(error.message, error.http_status),
            http_status=error.http_status,
        )

    def malformed(self, message: str) -> StageFailure:
        return StageFailure(
            kind=FailureKind.UPSTREAM_ERROR,
            message=message,
            retryable=True,
            code="malformed_response",
        )


# =============================================================================
# Stage 1: Cutout (foreground segmentation)
# =============================================================================

class CutoutStage(BaseStage):
    name = StageName.CUTOUT
    policy = StagePolicy.FATAL

    def __init__(
        self,
        settings: Settings,
        http: Optional[httpx.AsyncClient] = None,
        client: Optional[SegmentationClient] = None,
    ):
        super().__init__(settings, http)
        self.client = client or SegmentationClient(settings, http)

    async def _execute(self, request: StageRequest) -> StageResult:
        profile = CutoutProfile(request.params.get("profile", CutoutProfile.GENERAL_LIGHT))
        try:
            cutout_url = await self.client.remove_background(
                self.normalizer.to_url(request.image), profile
            )
        except ExternalAPIError as e:
            return self.failure_from_error(e)

        if not cutout_url:
            return self.malformed("Segmentation service returned no cutout image")
        return StageSuccess(image=ImageRef.remote(cutout_url), provider="fal-birefnet")


# =============================================================================
# Stage 2: Generative Edit
# =============================================================================

class EditStage(BaseStage):
    name = StageName.EDIT
    policy = StagePolicy.FATAL

    FALLBACK_CODES = ("no_image", "http_error", "malformed_response")

    def __init__(
        self,
        settings: Settings,
        http: Optional[httpx.AsyncClient] = None,
        client: Optional[GeminiEditClient] = None,
        fallback_client: Optional[FalEditClient] = None,
        policy_service: Optional[ContentPolicyService] = None,
    ):
        super().__init__(settings, http)
        self.client = client or GeminiEditClient(settings, http)
        self.fallback_client = fallback_client or FalEditClient(settings, http)
        self.policy_service = policy_service or ContentPolicyService()

    def check_policy(self, instruction: str) -> Optional[StageFailure]:
        """Restricted-term check; runs before any network call."""
        decision = self.policy_service.check(instruction)
        if decision.allowed:
            return None
        return StageFailure(
            kind=FailureKind.POLICY_REJECTED,
            message=decision.reason,
            retryable=False,
            code="restricted_terms",
        )

    def build_prompt(self, instruction: str) -> str:
        limit = self.settings.MAX_INSTRUCTION_LENGTH
        instruction = (instruction or "").strip()
        if len(instruction) > limit:
            logger.info("edit_instruction_truncated", length=len(instruction), limit=limit)
            instruction = instruction[:limit]
        if not instruction:
            return GUARDRAIL_SUFFIX
        return f"{instruction}\n\n{GUARDRAIL_SUFFIX}"

    async def _execute(self, request: StageRequest) -> StageResult:
        instruction = request.params.get("instruction", "")
        rejection = self.check_policy(instruction)
        if rejection is not None:
            return rejection

        prompt = self.build_prompt(instruction)

        try:
            source = await self.normalizer.to_inline(request.image)
        except ExternalAPIError as e:
            return self.failure_from_error(e)

        result = await self._edit_primary(prompt, source)
        if isinstance(result, StageFailure) and self._fallback_allowed(result):
            return await self._edit_secondary(prompt, source, result)
        return result

    async def _edit_primary(self, prompt: str, source: ImageRef) -> StageResult:
        try:
            payload = await self.client.generate(
                prompt,
                base64.b64encode(source.data).decode("ascii"),
                source.mime_type,
            )
        except ExternalAPIError as e:
            return self.failure_from_error(e)

        scan = scan_parts(extract_parts(payload))
        if not scan.found:
            message = scan.message
            feedback = payload.get("promptFeedback")
            block_reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
            if block_reason and not payload.get("candidates"):
                message = f"Request blocked by edit service: {block_reason}"
            return StageFailure(
                kind=FailureKind.UPSTREAM_ERROR,
                message=self._clean(message),
                retryable=True,
                code="no_image",
            )

        if not scan.image.mime_type.startswith("image/"):
            return self.malformed(
                f"Edit service returned non-image data ({self._clean(scan.image.mime_type)})"
            )
        try:
            data = base64.b64decode(scan.image.data, validate=True)
        except (binascii.Error, ValueError):
            return self.malformed("Edit service returned undecodable image data")
        return StageSuccess(image=ImageRef.inline(data, scan.image.mime_type), provider="gemini")

    def _fallback_allowed(self, failure: StageFailure) -> bool:
        return (
            self.settings.EDIT_FALLBACK_ENABLED
            and bool(self.settings.FAL_KEY)
            and failure.code in self.FALLBACK_CODES
        )

    async def _edit_secondary(
        self, prompt: str, source: ImageRef, primary: StageFailure
    ) -> StageResult:
        logger.warning("edit_provider_fallback", primary_error=primary.message)
        try:
            url = await self.fallback_client.edit(prompt, source.as_data_url())
        except ExternalAPIError as e:
            record_edit_provider_fallback("error")
            secondary = self.failure_from_error(e)
            return primary.model_copy(update={
                "message": self._clean(
                    f"Both edit providers failed. Primary: {primary.message}. "
                    f"Secondary: {secondary.message}"
                ),
            })

        if not url:
            record_edit_provider_fallback("error")
            return primary.model_copy(update={
                "message": self._clean(
                    f"Both edit providers failed. Primary: {primary.message}. "
                    "Secondary: no image returned"
                ),
            })

        record_edit_provider_fallback("success")
        return StageSuccess(image=ImageRef.remote(url), provider="fal-nano-banana")


# =============================================================================
# Stage 3: Harmonization (lighting / shadows)
# =============================================================================

class HarmonizeStage(BaseStage):
    name = StageName.HARMONIZE
    policy = StagePolicy.BEST_EFFORT

    def __init__(
        self,
        settings: Settings,
        http: Optional[httpx.AsyncClient] = None,
        client: Optional[HarmonizationClient] = None,
    ):
        super().__init__(settings, http)
        self.client = client or HarmonizationClient(settings, http)

    async def _execute(self, request: StageRequest) -> StageResult:
        mode = HarmonizationMode(request.params.get("mode", HarmonizationMode.RELIGHT))
        try:
            url = await self.client.harmonize(
                self.normalizer.to_url(request.image),
                HARMONIZATION_PROMPTS[mode],
                HARMONIZATION_STRENGTH,
                HARMONIZATION_STEPS,
            )
        except ExternalAPIError as e:
            return self.failure_from_error(e)

        if not url:
            return self.malformed("Harmonization service returned no image")
        return StageSuccess(image=ImageRef.remote(url), provider="fal-flux")


# =============================================================================
# Stage 4: Upscale (asynchronous prediction + poll loop)
# =============================================================================

class UpscaleStage(BaseStage):
    name = StageName.UPSCALE
    policy = StagePolicy.BEST_EFFORT

    def __init__(
        self,
        settings: Settings,
        http: Optional[httpx.AsyncClient] = None,
        client: Optional[UpscaleClient] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        super().__init__(settings, http)
        self.client = client or UpscaleClient(settings, http)
        self.sleep = sleep

    async def _execute(self, request: StageRequest) -> StageResult:
        scale = int(request.params.get("scale", self.settings.UPSCALE_FACTOR))
        try:
            handle = await self.client.submit(self.normalizer.to_url(request.image), scale)
            logger.info("upscale_submitted", job_id=handle.job_id, scale=scale)
            outcome = await poll_until_terminal(
                lambda: self.client.get_status(handle),
                interval=self.settings.UPSCALE_POLL_INTERVAL_SECONDS,
                max_attempts=self.settings.UPSCALE_POLL_MAX_ATTEMPTS,
                sleep=self.sleep,
            )
        except ExternalAPIError as e:
            return self.failure_from_error(e)

        record_poll_attempts(outcome.attempts)

        if outcome.status == "succeeded":
            return StageSuccess(image=ImageRef.remote(outcome.output), provider="replicate-esrgan")
        if outcome.status == "failed":
            return StageFailure(
                kind=FailureKind.UPSTREAM_ERROR,
                message=self._clean(outcome.error),
                retryable=True,
                code="job_failed",
            )
        return StageFailure(
            kind=FailureKind.TIMEOUT,
            message=f"Upscaling did not finish after {outcome.attempts} status checks",
            retryable=True,
            code="poll_budget_exhausted",
        )


def build_default_stages(
    settings: Settings,
    http: Optional[httpx.AsyncClient] = None,
    sleep: Sleep = asyncio.sleep,
) -> Dict[StageName, Any]:
    """The four production stages wired to the configured services."""
    return {
        StageName.CUTOUT: CutoutStage(settings, http),
        StageName.EDIT: EditStage(settings, http),
        StageName.HARMONIZE: HarmonizeStage(settings, http),
        StageName.UPSCALE: UpscaleStage(settings, http, sleep=sleep),
    }
