"""Pydantic models for the ledger entities the sync pipeline reads and writes."""

from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ConnectionStatus(str, Enum):
    """Lifecycle state of an automated connection."""

    IDLE = "idle"
    RUNNING = "running"
    ERROR = "error"


class Frequency(str, Enum):
    """How often a schedule fires."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    MANUAL = "manual"


class QifDateOrder(str, Enum):
    """Day/month ordering used by QIF exports of an institution."""

    MDY = "MDY"
    DMY = "DMY"


class SyncRunStatus(str, Enum):
    """Outcome of a single orchestrator run."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class Connection(BaseModel):
    """Stored automated connection to an institution portal."""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    name: str
    institution_slug: str
    encrypted_username: str = Field(repr=False)
    encrypted_password: str = Field(repr=False)
    encrypted_metadata: str | None = Field(default=None, repr=False)
    account_id: str | None = Field(
        default=None, description="Local account every remote account maps to"
    )
    accounts_map: dict[str, str] = Field(
        default_factory=dict,
        description="Remote account id or display name to local account id",
    )
    date_format: QifDateOrder = QifDateOrder.MDY
    status: ConnectionStatus = ConnectionStatus.IDLE
    last_run_at: datetime | None = None
    last_error: str | None = None
    consecutive_failures: int = 0
    circuit_open: bool = False
    created_at: datetime | None = None


class Schedule(BaseModel):
    """Recurring sync schedule belonging to exactly one connection."""

    model_config = ConfigDict(frozen=True)

    id: str
    connection_id: str
    frequency: Frequency = Frequency.DAILY
    preferred_time: time | None = None
    timezone: str = "UTC"
    is_active: bool = True
    next_run_at: datetime | None = None
    last_successful_run_at: datetime | None = None

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Reject timezone names the zoneinfo database does not know."""
        from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v


class Account(BaseModel):
    """Local ledger account."""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    name: str
    type: str = "checking"
    connection_id: str | None = None
    remote_account_id: str | None = None
    balance: Decimal = Decimal("0")


class LedgerTransaction(BaseModel):
    """Reconciled transaction as stored in the ledger."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    account_id: str
    provider_transaction_id: str
    transaction_date: date = Field(..., alias="date")
    description: str
    amount: Decimal
    status: str = "cleared"


class SyncRun(BaseModel):
    """Append-only record of one orchestrator execution."""

    model_config = ConfigDict(frozen=True)

    id: str
    connection_id: str
    status: SyncRunStatus
    started_at: datetime
    finished_at: datetime | None = None
    inserted_count: int = 0
    skipped_count: int = 0
    accounts_synced: int = 0
    error_message: str | None = None


class Institution(BaseModel):
    """Registry row describing a supported connector."""

    model_config = ConfigDict(frozen=True)

    slug: str
    name: str
    description: str = ""
    requires_security_number: bool = False
