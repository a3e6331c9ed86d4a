"""Pydantic schemas for captures, analysis results and device sync."""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from capture_service.db.models import Difficulty, QueueStatus, SyncStatus


# ============== Normalization ==============

MAX_TAG_LENGTH = 100


def normalize_tags(tags: list[str] | None) -> list[str] | None:
    """Trim, lower-case and de-duplicate tags, keeping first-seen order."""
    if tags is None:
        return None
    if not isinstance(tags, (list, tuple)):
        raise ValueError("tags must be a list of strings")
    seen: list[str] = []
    for tag in tags:
        if tag is None:
            continue
        name = str(tag).strip().lower()[:MAX_TAG_LENGTH]
        if name and name not in seen:
            seen.append(name)
    return seen


def normalize_difficulty(value: Any) -> Difficulty:
    """Map an analyzer-supplied difficulty onto a known tier (MEDIUM if unknown)."""
    if isinstance(value, Difficulty):
        return value
    if isinstance(value, str):
        try:
            return Difficulty(value.strip().upper())
        except ValueError:
            pass
    return Difficulty.MEDIUM


def empty_as_none(value: Any) -> Any:
    """Devices send `{}` for "not analyzed yet"."""
    if isinstance(value, dict) and not value:
        return None
    return value


# ============== Geo Context ==============


class Location(BaseModel):
    """GPS coordinates reported by the device."""

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: Optional[float] = None


class LocationInfo(BaseModel):
    """Reverse-geocoding information for a capture location."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    country: Optional[str] = None
    city: Optional[str] = None
    place_name: Optional[str] = Field(
        None, validation_alias=AliasChoices("place_name", "placeName", "name")
    )


class Orientation(BaseModel):
    """Camera orientation when the image was taken."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    bearing: Optional[float] = None
    pitch: Optional[float] = None
    cardinal_direction: Optional[str] = Field(
        None, validation_alias=AliasChoices("cardinal_direction", "cardinalDirection")
    )


# ============== Vision Result ==============

VISION_RESULT_SCHEMA_VERSION = 1


class VisionResult(BaseModel):
    """
    Structured result of a vision analysis.

    Stored as JSON in `captures.vision_result` and `analysis_results.result`.
    Unknown analyzer fields are kept (`extra="allow"`) so the raw result is
    never lost, while the fields downstream logic depends on are typed.
    """

    model_config = ConfigDict(extra="allow")

    schema_version: int = VISION_RESULT_SCHEMA_VERSION
    category: str = "UNKNOWN"
    confidence: float = 0.0
    tags: list[str] = Field(default_factory=list)
    verified: bool = False
    difficulty: Difficulty = Difficulty.MEDIUM

    name: Optional[str] = None
    description: Optional[str] = None
    rarity: Optional[str] = None
    authenticity: Optional[str] = None
    geographic_match: Optional[bool] = None

    @field_validator("category", mode="before")
    @classmethod
    def default_category(cls, v: Any) -> str:
        if v is None or (isinstance(v, str) and not v.strip()):
            return "UNKNOWN"
        return str(v).strip()

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v: Any) -> float:
        if v is None:
            return 0.0
        return min(max(float(v), 0.0), 1.0)

    @field_validator("tags", mode="before")
    @classmethod
    def normalize_tag_list(cls, v: Any) -> list[str]:
        # Analyzers sometimes return a single tag as a bare string
        if isinstance(v, str):
            v = [v]
        return normalize_tags(v) or []

    @field_validator("difficulty", mode="before")
    @classmethod
    def normalize_difficulty_tier(cls, v: Any) -> Difficulty:
        return normalize_difficulty(v)

    @field_validator("verified", mode="before")
    @classmethod
    def default_verified(cls, v: Any) -> bool:
        return bool(v) if v is not None else False

    def to_storage(self) -> dict:
        """Serialize for a JSON column."""
        return self.model_dump(mode="json")

    @classmethod
    def from_storage(cls, data: Optional[dict]) -> Optional["VisionResult"]:
        """Load a stored result; rows written before versioning count as version 1."""
        if data is None:
            return None
        payload = dict(data)
        payload.setdefault("schema_version", VISION_RESULT_SCHEMA_VERSION)
        return cls.model_validate(payload)


class AnalysisContext(BaseModel):
    """Capture context passed to the analyzer alongside the image reference."""

    location: Optional[Location] = None
    location_info: Optional[LocationInfo] = None
    orientation: Optional[Orientation] = None
    captured_at: Optional[datetime] = None


# ============== Capture Schemas ==============


class CaptureCreate(BaseModel):
    """Data for a new capture."""

    user_id: Optional[str] = None
    author_name: Optional[str] = Field(None, max_length=255)
    device_local_id: Optional[str] = Field(None, max_length=255)
    image_url: str = Field(..., min_length=1, description="Reference to the stored image")
    thumbnail_url: Optional[str] = None
    image_size: Optional[int] = Field(None, ge=0)
    storage_type: str = Field("s3", max_length=50)
    vision_result: Optional[VisionResult] = None
    category: Optional[str] = Field(None, max_length=100)
    confidence: Optional[float] = None
    tags: Optional[list[str]] = None
    location: Optional[Location] = None
    location_info: Optional[LocationInfo] = None
    orientation: Optional[Orientation] = None
    captured_at: Optional[datetime] = None
    is_public: bool = False

    @field_validator("tags", mode="before")
    @classmethod
    def normalize_tag_list(cls, v: list[str] | None) -> list[str] | None:
        return normalize_tags(v)

    @field_validator("vision_result", mode="before")
    @classmethod
    def empty_vision_result(cls, v: Any) -> Any:
        return empty_as_none(v)


class CaptureUpdate(BaseModel):
    """
    Partial update of the user-owned fields of a capture.

    Only fields explicitly present in the payload are applied.
    """

    tags: Optional[list[str]] = None
    category: Optional[str] = Field(None, max_length=100)
    is_public: Optional[bool] = None

    @field_validator("tags", mode="before")
    @classmethod
    def normalize_tag_list(cls, v: list[str] | None) -> list[str] | None:
        return normalize_tags(v)

    @field_validator("is_public")
    @classmethod
    def reject_null_visibility(cls, v: Optional[bool]) -> bool:
        if v is None:
            raise ValueError("is_public cannot be null")
        return v

    def changes(self) -> dict[str, Any]:
        """Fields the caller actually set."""
        return self.model_dump(exclude_unset=True)


class CaptureFilter(BaseModel):
    """Filters for listing captures."""

    user_id: Optional[str] = None
    category: Optional[str] = None
    difficulty: Optional[Difficulty] = None
    verified: Optional[bool] = None
    is_public: Optional[bool] = None
    tag: Optional[str] = None
    include_deleted: bool = False


class CaptureResponse(BaseModel):
    """Capture as returned to callers."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: Optional[str] = None
    author_name: Optional[str] = None
    device_local_id: Optional[str] = None
    image_url: str
    thumbnail_url: Optional[str] = None
    image_size: Optional[int] = None
    storage_type: str
    vision_result: Optional[dict] = None
    category: Optional[str] = None
    confidence: Optional[float] = None
    tags: Optional[list[str]] = None
    difficulty: Difficulty
    verified: bool
    location: Optional[dict] = None
    location_info: Optional[dict] = None
    orientation: Optional[dict] = None
    captured_at: Optional[datetime] = None
    is_public: bool
    is_deleted: bool
    created_at: datetime
    updated_at: datetime


class CapturePage(BaseModel):
    """Paginated list of captures."""

    captures: list[CaptureResponse]
    total: int
    page: int
    page_size: int
    total_pages: int
    has_more: bool


class AnalysisResultResponse(BaseModel):
    """One entry of a capture's analysis history."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    capture_id: str
    model_name: str
    model_version: str
    result: dict
    confidence: Optional[float] = None
    created_at: datetime


class QueueEntryResponse(BaseModel):
    """Analysis queue entry state."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    capture_id: str
    status: QueueStatus
    attempts: int
    max_attempts: int
    retryable: Optional[bool] = None
    error_message: Optional[str] = None
    reanalyze: bool = False
    created_at: datetime
    last_attempt: Optional[datetime] = None
    completed_at: Optional[datetime] = None


# ============== Device Sync Schemas ==============


class LocalCapture(BaseModel):
    """A capture stored on a device, identified by its device-local id."""

    device_local_id: str = Field(
        ...,
        min_length=1,
        max_length=255,
        validation_alias=AliasChoices("device_local_id", "localId"),
    )
    image_url: str = Field(..., min_length=1, validation_alias=AliasChoices("image_url", "imageUrl"))
    timestamp: Optional[datetime] = Field(
        None, validation_alias=AliasChoices("timestamp", "captured_at")
    )
    user_id: Optional[str] = None
    author_name: Optional[str] = Field(None, max_length=255)
    thumbnail_url: Optional[str] = None
    image_size: Optional[int] = Field(None, ge=0)
    vision_result: Optional[VisionResult] = None
    category: Optional[str] = Field(None, max_length=100)
    confidence: Optional[float] = None
    tags: Optional[list[str]] = None
    location: Optional[Location] = None
    location_info: Optional[LocationInfo] = None
    orientation: Optional[Orientation] = None

    @field_validator("vision_result", mode="before")
    @classmethod
    def empty_vision_result(cls, v: Any) -> Any:
        return empty_as_none(v)

    def to_capture_create(self) -> CaptureCreate:
        return CaptureCreate(
            user_id=self.user_id,
            author_name=self.author_name,
            device_local_id=self.device_local_id,
            image_url=self.image_url,
            thumbnail_url=self.thumbnail_url,
            image_size=self.image_size,
            vision_result=self.vision_result,
            category=self.category,
            confidence=self.confidence,
            tags=self.tags,
            location=self.location,
            location_info=self.location_info,
            orientation=self.orientation,
            captured_at=self.timestamp,
        )


class SyncResult(BaseModel):
    """Outcome of reconciling one local capture."""

    device_local_id: str
    status: Literal["synced", "error"]
    server_capture_id: Optional[str] = None
    image_url: Optional[str] = None
    already_synced: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "synced"


class SyncedCapture(BaseModel):
    device_local_id: str
    server_id: str
    image_url: Optional[str] = None


class SyncFailure(BaseModel):
    device_local_id: str
    error: str


class SyncBatchResponse(BaseModel):
    """Partial-success envelope for a sync batch."""

    synced: list[SyncedCapture]
    failed: list[SyncFailure]

    @classmethod
    def from_results(cls, results: list[SyncResult]) -> "SyncBatchResponse":
        synced = [
            SyncedCapture(
                device_local_id=r.device_local_id,
                server_id=r.server_capture_id,
                image_url=r.image_url,
            )
            for r in results
            if r.ok
        ]
        failed = [
            SyncFailure(device_local_id=r.device_local_id, error=r.error or "unknown error")
            for r in results
            if not r.ok
        ]
        return cls(synced=synced, failed=failed)


class SyncRecordStatus(BaseModel):
    """Sync state of one device upload, joined with its capture's analysis state."""

    device_local_id: str
    status: SyncStatus
    server_capture_id: Optional[str] = None
    error_message: Optional[str] = None
    last_attempt: Optional[datetime] = None
    capture_deleted: bool = False
    analysis_status: Optional[QueueStatus] = None
    analyzed: bool = False


# ============== Publish Events ==============

ANONYMOUS_AUTHOR_ID = "00000000-0000-0000-0000-000000000000"
DEFAULT_AUTHOR_NAME = "Explorador"


class EventLocation(BaseModel):
    latitude: float
    longitude: float


class EventLocationInfo(BaseModel):
    name: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None


class CapturePublishedEvent(BaseModel):
    """Payload sent to the stories service when a capture's visibility changes."""

    capture_id: str
    author_id: str
    author_name: str
    image_url: str
    thumbnail_url: Optional[str] = None
    category: Optional[str] = None
    tags: Optional[list[str]] = None
    location: Optional[EventLocation] = None
    location_info: Optional[EventLocationInfo] = None

    @classmethod
    def from_capture(cls, capture: Any) -> "CapturePublishedEvent":
        location = None
        if isinstance(capture.location, dict):
            lat = capture.location.get("latitude")
            lng = capture.location.get("longitude")
            if isinstance(lat, (int, float)) and isinstance(lng, (int, float)):
                location = EventLocation(latitude=lat, longitude=lng)

        location_info = None
        if isinstance(capture.location_info, dict):
            info = capture.location_info
            location_info = EventLocationInfo(
                name=info.get("name") or info.get("placeName") or info.get("place_name"),
                city=info.get("city"),
                country=info.get("country"),
            )

        author_name = (capture.author_name or "").strip() or DEFAULT_AUTHOR_NAME
        return cls(
            capture_id=capture.id,
            author_id=capture.user_id or ANONYMOUS_AUTHOR_ID,
            author_name=author_name,
            image_url=capture.image_url,
            thumbnail_url=capture.thumbnail_url,
            category=capture.category,
            tags=capture.tags,
            location=location,
            location_info=location_info,
        )


class WebhookResponse(BaseModel):
    """Acknowledgement returned by the stories service."""

    model_config = ConfigDict(extra="allow")

    success: bool = False
    story_id: Optional[str] = None
    message: str = ""
