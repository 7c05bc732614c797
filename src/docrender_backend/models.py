from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class JobStage(str, Enum):
    PENDING = "pending"
    RENDERING = "rendering"
    MERGING = "merging"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


LengthUnit = Literal["mm", "px"]


class _LayoutModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ImageItem(_LayoutModel):
    type: Literal["image"] = "image"
    src: str = ""
    x: float = 0
    y: float = 0
    width: float = 0
    height: float = 0
    unit: Optional[LengthUnit] = None


class TextItem(_LayoutModel):
    type: Literal["text"] = "text"
    text: str = ""
    x: float = 0
    y: float = 0
    font_size: float = Field(12, alias="fontSize")
    font_family: str = Field("Arial, sans-serif", alias="fontFamily")
    color: str = "#000"
    unit: Optional[LengthUnit] = None
    letter_font_sizes: Optional[List[Optional[float]]] = Field(None, alias="letterFontSizes")
    letter_offsets: Optional[List[Optional[float]]] = Field(None, alias="letterOffsets")
    letter_spacing_after_x: Optional[List[Optional[float]]] = Field(None, alias="letterSpacingAfterX")
    # Older clients sent per-letter spacing under this name.
    letter_x_offsets: Optional[List[Optional[float]]] = Field(None, alias="letterXOffsets")

    @field_validator("font_size", mode="before")
    @classmethod
    def _default_font_size(cls, value: Any) -> Any:
        return value or 12

    @property
    def per_letter(self) -> bool:
        return bool(self.letter_font_sizes)

    @property
    def spacing_deltas(self) -> Optional[List[Optional[float]]]:
        if self.letter_spacing_after_x:
            return self.letter_spacing_after_x
        if self.letter_x_offsets:
            return self.letter_x_offsets
        return None


LayoutItem = Annotated[Union[ImageItem, TextItem], Field(discriminator="type")]


class PageLayout(_LayoutModel):
    items: List[LayoutItem] = Field(default_factory=list)
    unit: Optional[LengthUnit] = None
    layout_mode: str = Field("raster", alias="layoutMode")


class PageDimensions(BaseModel):
    width_mm: float = 210
    height_mm: float = 297
    viewport_width: int = 794
    viewport_height: int = 1123
    device_scale_factor: float = 3


class PageArtifact(BaseModel):
    page_index: int
    storage_key: str


class JobRecord(BaseModel):
    id: str
    user_id: str
    email: Optional[str] = None
    created_by: Optional[str] = None
    assigned_quota: Any = None
    total_pages: int
    completed_pages: int = 0
    page_artifacts: List[PageArtifact] = Field(default_factory=list)
    layout_pages: List[PageLayout] = Field(default_factory=list)
    stage: JobStage = JobStage.PENDING
    status: JobStatus = JobStatus.PENDING
    output_document_id: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    def artifact_indices(self) -> set[int]:
        return {
            artifact.page_index
            for artifact in self.page_artifacts
            if 0 <= artifact.page_index < self.total_pages
        }

    def missing_page_indices(self) -> list[int]:
        present = self.artifact_indices()
        return [index for index in range(self.total_pages) if index not in present]


class DocumentRecord(BaseModel):
    id: str
    title: str
    file_key: str
    file_url: str
    total_prints: int = 0
    mime_type: str = "application/pdf"
    document_type: str = "generated-output"
    created_by: Optional[str] = None
    source_job_id: Optional[str] = None
    created_at: datetime


class AccessGrant(BaseModel):
    id: str
    user_id: str
    document_id: str
    assigned_quota: int
    used_prints: int = 0
    session_token: str
    created_at: datetime
    updated_at: datetime

    @property
    def remaining_prints(self) -> int:
        return self.assigned_quota - self.used_prints


class RenderTaskPayload(BaseModel):
    job_id: str
    page_index: int
    total_pages: Optional[int] = None
    page_layout: Optional[PageLayout] = None
    layout_mode: str = "raster"
    email: Optional[str] = None
    assigned_quota: Any = None


class MergeTaskPayload(BaseModel):
    job_id: str


class CreateJobRequest(BaseModel):
    user_id: str
    email: Optional[str] = None
    created_by: Optional[str] = None
    assigned_quota: Any = None
    pages: List[PageLayout] = Field(min_length=1)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: Optional[str]) -> Optional[str]:
        return value.strip().lower() if value else value


class JobProgress(BaseModel):
    id: str
    document_title: str = "Generated Output"
    document_type: str = "pdf"
    status: JobStatus
    stage: JobStage
    total_pages: int
    completed_pages: int
    assigned_quota: Any = None
    document_id: Optional[str] = None
    session_token: Optional[str] = None
    used_prints: int = 0
    remaining_prints: Optional[int] = None
    download_url: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_job(cls, job: JobRecord, title: str = "Generated Output") -> "JobProgress":
        return cls(
            id=job.id,
            document_title=title,
            status=job.status,
            stage=job.stage,
            total_pages=job.total_pages,
            completed_pages=job.completed_pages,
            assigned_quota=job.assigned_quota,
            document_id=job.output_document_id,
            error=job.error,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )
