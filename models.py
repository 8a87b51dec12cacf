"""
Pydantic models for the Lead Enrichment Console
"""
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, validator

FeatureMode = Literal["enrich", "verify", "linkedin"]
HistoryKind = Literal["bulk", "single"]

FEATURE_MODES = ("enrich", "verify", "linkedin")

# Status labels allowed for each feature mode
MODE_STATUSES: Dict[str, frozenset] = {
    "enrich": frozenset({"pending", "processing", "completed", "not_found", "failed"}),
    "linkedin": frozenset({"pending", "searching", "found", "not_found", "failed"}),
    "verify": frozenset(
        {"pending", "processing", "deliverable", "undeliverable", "risky", "unknown", "failed"}
    ),
}
ALL_STATUSES = frozenset().union(*MODE_STATUSES.values())

VERIFY_OUTCOMES = ("deliverable", "undeliverable", "risky", "unknown")

# Stored statuses preferred when several cached records share a lookup key
CACHE_PREFERRED_STATUSES = frozenset(
    {"completed", "found", "deliverable", "valid", "risky", "unknown", "undeliverable", "not_found"}
)

# Statuses picked up by "Retry Failed Results"
RETRYABLE_STATUSES = frozenset({"failed", "undeliverable", "not_found"})

_STATUS_ALIASES = {
    "valid": "deliverable",
    "invalid": "undeliverable",
    "success": "completed",
}


def in_progress_status(mode: str) -> str:
    """Label shown while a row is being worked on"""
    return "searching" if mode == "linkedin" else "processing"


def normalize_status(mode: str, raw: Optional[str]) -> str:
    """
    Map a stored or remote status label onto the label set of a mode

    Args:
        mode: Feature mode the row belongs to
        raw: Label as stored or returned by a remote service

    Returns:
        A label from MODE_STATUSES[mode]
    """
    allowed = MODE_STATUSES[mode]
    label = (raw or "").strip().lower()
    label = _STATUS_ALIASES.get(label, label)

    if mode == "enrich" and label == "found":
        label = "completed"
    elif mode == "linkedin" and label == "completed":
        label = "found"

    if label in allowed:
        return label
    return "unknown" if mode == "verify" else "failed"


class ColumnMapping(BaseModel):
    """Which source column supplies name, company and email"""
    name_header: str = ""
    company_header: str = ""
    email_header: str = ""

    def to_store(self) -> dict:
        return {
            "nameHeader": self.name_header,
            "companyHeader": self.company_header,
            "emailHeader": self.email_header,
        }

    @classmethod
    def from_store(cls, data: Optional[dict]) -> Optional["ColumnMapping"]:
        if not data:
            return None
        return cls(
            name_header=data.get("nameHeader") or data.get("name_header") or "",
            company_header=data.get("companyHeader") or data.get("company_header") or "",
            email_header=data.get("emailHeader") or data.get("email_header") or "",
        )


class CacheProvenance(BaseModel):
    """Where a cache-served result came from"""
    cached_at: Optional[str] = None
    cached_via: Optional[str] = None  # kind of the history entry that produced it
    globally_synced: bool = False


class EnrichResult(BaseModel):
    mode: Literal["enrich"] = "enrich"
    email: Optional[str] = None


class VerifyResult(BaseModel):
    mode: Literal["verify"] = "verify"
    email: Optional[str] = None
    status: Optional[str] = None
    raw_data: Dict[str, Any] = Field(default_factory=dict)


class LinkedinResult(BaseModel):
    mode: Literal["linkedin"] = "linkedin"
    url: Optional[str] = None


ModeResult = Annotated[
    Union[EnrichResult, VerifyResult, LinkedinResult], Field(discriminator="mode")
]


class ProspectRow(BaseModel):
    """One input record and its processing outcome"""
    id: str
    name: str = ""
    company: str = ""
    email: Optional[str] = None
    linkedin_url: Optional[str] = None
    status: str = "pending"
    error: Optional[str] = None
    result: Optional[ModeResult] = None
    cache: Optional[CacheProvenance] = None
    synced: bool = False
    original_data: Dict[str, Any] = Field(default_factory=dict)

    @validator("status")
    def validate_status(cls, v):
        if v not in ALL_STATUSES:
            raise ValueError(f"Status must be one of {sorted(ALL_STATUSES)}")
        return v


class HistoryEntry(BaseModel):
    """A finished bulk or single run"""
    id: str
    kind: HistoryKind
    feature: FeatureMode
    input: str
    result: str
    status: str = "completed"
    timestamp: int  # epoch milliseconds
    rows: List[ProspectRow] = Field(default_factory=list)
    headers: List[str] = Field(default_factory=list)
    mapping: Optional[ColumnMapping] = None
    has_cached: bool = False
    cached_at: Optional[str] = None
    cached_via: Optional[str] = None
    synced: bool = False
    # Stored without row snapshots; rows live in the mode's detail table
    minimal: bool = False
    persisted: bool = False


class HistoryBuckets(BaseModel):
    """History entries split by feature, most recent first"""
    enrich: List[HistoryEntry] = Field(default_factory=list)
    verify: List[HistoryEntry] = Field(default_factory=list)
    linkedin: List[HistoryEntry] = Field(default_factory=list)

    def for_mode(self, mode: str) -> List[HistoryEntry]:
        return getattr(self, mode)

    def set_mode(self, mode: str, entries: List[HistoryEntry]) -> None:
        setattr(self, mode, entries)


class SingleInputs(BaseModel):
    name: str = ""
    company: str = ""
    email: str = ""


class LoadedSession(BaseModel):
    """Working state rebuilt from a history entry"""
    entry_id: str
    kind: HistoryKind
    feature: FeatureMode
    source_label: str
    rows: List[ProspectRow] = Field(default_factory=list)
    headers: List[str] = Field(default_factory=list)
    mapping: Optional[ColumnMapping] = None
    single_inputs: Optional[SingleInputs] = None
    message: Optional[str] = None


class FindEmailResult(BaseModel):
    """Outcome of the find-email service"""
    success: bool
    email: Optional[str] = None
    message: Optional[str] = None


class VerifyEmailResult(BaseModel):
    """Outcome of the verify-email service"""
    success: bool
    status: Optional[str] = None
    message: Optional[str] = None
    raw_data: Optional[Dict[str, Any]] = None

    @validator("status")
    def validate_status(cls, v):
        if v is not None and v not in VERIFY_OUTCOMES:
            raise ValueError(f"Status must be one of {list(VERIFY_OUTCOMES)}")
        return v


class LinkedInLookupResult(BaseModel):
    """Outcome of the LLM-backed profile lookup"""
    success: bool
    url: Optional[str] = None
    message: Optional[str] = None


class StatusCount(BaseModel):
    """One slice of the status chart"""
    name: str
    value: int
    color: str
