from pydantic import BaseModel, ConfigDict, Field, field_validator
from enum import Enum
from datetime import datetime


class TransactionKind(str, Enum):
    CHARGE = "CHARGE"
    USE = "USE"


class UserPoint(BaseModel):
    """Point balance of a single account."""

    model_config = ConfigDict(frozen=True)

    accountId: int = Field(..., description="Account identifier")
    balance: int = Field(..., ge=0, description="Current point balance")
    updatedAt: datetime = Field(..., description="Time of the last mutation")


class PointHistory(BaseModel):
    """Immutable record of one completed charge or use."""

    model_config = ConfigDict(frozen=True)

    entryId: int = Field(..., description="Store-assigned, monotonically increasing id")
    accountId: int = Field(..., description="Account identifier")
    amount: int = Field(..., gt=0, description="Magnitude of the operation")
    kind: TransactionKind = Field(..., description="CHARGE or USE")
    occurredAt: datetime = Field(..., description="Time the mutation was applied")


class PointAmountRequest(BaseModel):
    # Sign is checked by the service so that it reports INVALID_AMOUNT
    amount: int = Field(..., description="Points to charge or use, must be positive")

    @field_validator('amount', mode='before')
    @classmethod
    def validate_amount_is_integral(cls, v):
        if isinstance(v, bool):
            raise ValueError('Amount must be a number of points')
        return v


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")
    error_code: str = Field(..., description="Machine-readable error code")
    timestamp: datetime = Field(default_factory=datetime.now, description="Error timestamp")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(default_factory=datetime.now)
    accounts_count: int = Field(..., description="Number of accounts in system")
    history_entries: int = Field(..., description="Total history entries recorded")
