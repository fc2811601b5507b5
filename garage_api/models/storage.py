from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field


class OutcomeStatus(str, Enum):
    SAVED = "saved"
    FAILED = "failed"
    SKIPPED = "skipped"


class StoreOutcome(BaseModel):
    status: OutcomeStatus
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.SAVED

    @classmethod
    def saved(cls) -> "StoreOutcome":
        return cls(status=OutcomeStatus.SAVED)

    @classmethod
    def skipped(cls, reason: Optional[str] = None) -> "StoreOutcome":
        return cls(status=OutcomeStatus.SKIPPED, error=reason)

    @classmethod
    def failed(cls, error: str) -> "StoreOutcome":
        return cls(status=OutcomeStatus.FAILED, error=error)


class StorageOutcomes(BaseModel):
    file: StoreOutcome
    mongo: StoreOutcome


class SyncResponse(BaseModel):
    success: bool
    message: str
    timestamp: str
    storage: StorageOutcomes
    saved: Dict[str, int]


class DeleteResponse(BaseModel):
    success: bool
    message: str


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    mode: str
    mongodb: str
    mongodbReason: Optional[str] = None
    data: Dict[str, int]


class ImportRecordResult(BaseModel):
    id: Optional[Any] = None
    inserted: bool
    error: Optional[str] = None


class ImportKindResult(BaseModel):
    success: int = 0
    errors: int = 0
    records: List[ImportRecordResult] = Field(default_factory=list)


class ImportResponse(BaseModel):
    success: bool
    message: str
    results: Dict[str, ImportKindResult]
