"""
Pipeline Data Model

Image references, per-stage requests/results, the end-to-end request and
the outcome with its execution log. Nothing here outlives one pipeline run.
"""

import base64
import uuid
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Set, Union

from pydantic import BaseModel, Field, field_validator, model_validator


class StageName(str, Enum):
    """Pipeline stages, in execution order."""
    CUTOUT = "cutout"
    EDIT = "edit"
    HARMONIZE = "harmonize"
    UPSCALE = "upscale"


STAGE_ORDER = (StageName.CUTOUT, StageName.EDIT, StageName.HARMONIZE, StageName.UPSCALE)


class StagePolicy(str, Enum):
    FATAL = "fatal"
    BEST_EFFORT = "best_effort"


STAGE_POLICIES = {
    StageName.CUTOUT: StagePolicy.FATAL,
    StageName.EDIT: StagePolicy.FATAL,
    StageName.HARMONIZE: StagePolicy.BEST_EFFORT,
    StageName.UPSCALE: StagePolicy.BEST_EFFORT,
}


class FailureKind(str, Enum):
    UPSTREAM_ERROR = "UpstreamError"
    POLICY_REJECTED = "PolicyRejected"
    TIMEOUT = "Timeout"
    CANCELLED = "Cancelled"


class CutoutProfile(str, Enum):
    """Segmentation profiles and the model names the service expects."""
    GENERAL_LIGHT = "general_light"
    GENERAL_HEAVY = "general_heavy"
    MATTING = "matting"

    @property
    def model_name(self) -> str:
        return {
            CutoutProfile.GENERAL_LIGHT: "General Use (Light)",
            CutoutProfile.GENERAL_HEAVY: "General Use (Heavy)",
            CutoutProfile.MATTING: "Matting",
        }[self]


class HarmonizationMode(str, Enum):
    RELIGHT = "relight"
    SHADOW = "shadow"


class PipelineState(str, Enum):
    """Orchestrator states."""
    IDLE = "Idle"
    CUTTING = "Cutting"
    EDITING = "Editing"
    HARMONIZING = "Harmonizing"
    UPSCALING = "Upscaling"
    DONE = "Done"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


STAGE_STATES = {
    StageName.CUTOUT: PipelineState.CUTTING,
    StageName.EDIT: PipelineState.EDITING,
    StageName.HARMONIZE: PipelineState.HARMONIZING,
    StageName.UPSCALE: PipelineState.UPSCALING,
}


# =============================================================================
# Image References
# =============================================================================

class ImageRef(BaseModel):
    """Opaque image handle: inline bytes with a MIME type, or a remote URL.

    Exactly one representation is populated. A remote ref may itself be a
    ``data:`` URL; normalizers decode those without a network call.
    """
    model_config = {"frozen": True, "ser_json_bytes": "base64"}

    data: Optional[bytes] = Field(None, description="Inline image bytes")
    mime_type: Optional[str] = Field(None, description="MIME type of inline bytes")
    url: Optional[str] = Field(None, description="Remote image URL")

    @model_validator(mode="after")
    def check_one_representation(self) -> "ImageRef":
        if (self.data is None) == (self.url is None):
            raise ValueError("ImageRef needs exactly one of inline data or url")
        if self.data is not None:
            if not self.mime_type or not self.mime_type.startswith("image/"):
                raise ValueError(f"Unsupported image MIME type: {self.mime_type!r}")
        elif self.mime_type is not None:
            raise ValueError("mime_type applies to inline images only")
        return self

    @classmethod
    def inline(cls, data: bytes, mime_type: str = "image/png") -> "ImageRef":
        return cls(data=data, mime_type=mime_type)

    @classmethod
    def remote(cls, url: str) -> "ImageRef":
        return cls(url=url)

    @property
    def is_inline(self) -> bool:
        return self.data is not None

    @property
    def is_data_url(self) -> bool:
        return self.url is not None and self.url.startswith("data:")

    def as_data_url(self) -> str:
        if not self.is_inline:
            raise ValueError("as_data_url() requires an inline image")
        return f"data:{self.mime_type};base64,{base64.b64encode(self.data).decode('ascii')}"

    def as_url(self) -> str:
        """Remote URL, or a data URL for inline payloads."""
        return self.url if self.url is not None else self.as_data_url()

    def describe(self) -> Dict[str, Any]:
        """Loggable summary that never includes payload bytes."""
        if self.is_inline:
            return {"kind": "inline", "mime_type": self.mime_type, "size": len(self.data)}
        if self.is_data_url:
            return {"kind": "data_url", "length": len(self.url)}
        return {"kind": "url"}


# =============================================================================
# Stage Contract
# =============================================================================

class StageRequest(BaseModel):
    """Input to one stage execution."""
    model_config = {"frozen": True}

    image: ImageRef
    params: Dict[str, Any] = Field(default_factory=dict)
    timeout: float = Field(..., gt=0, description="Wall-clock budget in seconds")


class StageSuccess(BaseModel):
    status: Literal["success"] = "success"
    image: ImageRef
    provider: Optional[str] = None


class StageFailure(BaseModel):
    status: Literal["failure"] = "failure"
    kind: FailureKind
    message: str
    retryable: bool
    code: Optional[str] = None
    http_status: Optional[int] = None


StageResult = Union[StageSuccess, StageFailure]


class AsyncJobHandle(BaseModel):
    """Provider job for the upscale stage; discarded when the stage returns."""
    job_id: str
    poll_url: str


# =============================================================================
# End-to-end Request / Outcome
# =============================================================================

class PipelineRequest(BaseModel):
    """End-to-end input for one pipeline run."""
    source: ImageRef
    instruction: str
    enabled_stages: Set[StageName] = Field(default_factory=lambda: set(STAGE_ORDER))
    cutout_profile: CutoutProfile = CutoutProfile.GENERAL_LIGHT
    harmonization_mode: HarmonizationMode = HarmonizationMode.RELIGHT
    upscale_factor: Optional[int] = Field(None, ge=1, le=4)
    deadline_seconds: Optional[float] = Field(None, gt=0)
    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()))

    @field_validator("enabled_stages")
    @classmethod
    def require_edit_stage(cls, v: Set[StageName]) -> Set[StageName]:
        if StageName.EDIT not in v:
            raise ValueError("the edit stage cannot be disabled")
        return v

    def is_enabled(self, stage: StageName) -> bool:
        return stage in self.enabled_stages


class StageLogEntry(BaseModel):
    """Disposition of one stage within a run."""
    stage: StageName
    status: Literal["success", "failure", "skipped", "cancelled"]
    duration_ms: int = 0
    fallback_used: bool = False
    provider: Optional[str] = None
    failure: Optional[StageFailure] = None


class PipelineOutcome(BaseModel):
    """Final image plus the per-stage execution log."""
    run_id: str
    state: PipelineState
    image: Optional[ImageRef] = None
    log: List[StageLogEntry] = Field(default_factory=list)
    failure: Optional[StageFailure] = None
    failed_stage: Optional[StageName] = None
    transitions: List[PipelineState] = Field(default_factory=list)
    duration_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return self.state == PipelineState.DONE

    @property
    def fallbacks(self) -> List[StageName]:
        return [entry.stage for entry in self.log if entry.fallback_used]

    def entry(self, stage: StageName) -> Optional[StageLogEntry]:
        for item in self.log:
            if item.stage == stage:
                return item
        return None

    @property
    def provider(self) -> Optional[str]:
        edit = self.entry(StageName.EDIT)
        return edit.provider if edit else None

    def summary(self) -> Dict[str, Any]:
        """JSON-safe view of the run for API responses and task results."""
        return {
            "run_id": self.run_id,
            "state": self.state.value,
            "image_url": self.image.as_url() if self.image is not None else None,
            "provider": self.provider,
            "stages": [entry.model_dump(mode="json") for entry in self.log],
            "fallbacks": [stage.value for stage in self.fallbacks],
            "failed_stage": self.failed_stage.value if self.failed_stage else None,
            "error": self.failure.message if self.failure is not None else None,
            "duration_ms": self.duration_ms,
        }


def parse_stage_names(value: Optional[Union[str, List[str]]]) -> Set[StageName]:
    """Stage set from a comma-separated string or list; empty means all stages.

    Raises ValueError for unknown names.
    """
    if value is None:
        return set(STAGE_ORDER)
    items = value.split(",") if isinstance(value, str) else list(value)
    names = [item.strip().lower() for item in items if item and item.strip()]
    if not names:
        return set(STAGE_ORDER)
    try:
        return {StageName(name) for name in names}
    except ValueError:
        valid = ", ".join(stage.value for stage in STAGE_ORDER)
        raise ValueError(f"Unknown stage in {names}; expected any of: {valid}")
