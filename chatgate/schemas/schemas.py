from datetime import datetime
from enum import Enum
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------


class ConnectionPhase(str, Enum):
    DISCONNECTED = "disconnected"
    CONFIGURED = "configured"
    AUTHENTICATING = "authenticating"
    CONNECTED = "connected"


class ConnectionState(BaseModel):
    """Connection snapshot.  Never holds secrets; those live in the vault."""

    is_configured: bool = False
    is_connected: bool = False
    is_authenticating: bool = False
    client_id: Optional[str] = None
    team_id: Optional[str] = None
    team_name: Optional[str] = None
    last_connected: Optional[datetime] = None
    error: Optional[str] = None
    access_token_present: bool = False

    @property
    def phase(self) -> ConnectionPhase:
        if self.is_connected:
            return ConnectionPhase.CONNECTED
        if self.is_authenticating:
            return ConnectionPhase.AUTHENTICATING
        if self.is_configured:
            return ConnectionPhase.CONFIGURED
        return ConnectionPhase.DISCONNECTED


class ConnectionStatus(BaseModel):
    status: str  # disconnected | configured | authenticating | connected | error
    message: str
    can_retry: bool = False
    next_step: Optional[str] = None  # configure | authenticate | connect_channels


class ConnectionStatusOut(BaseModel):
    state: ConnectionState
    status: ConnectionStatus
    phase: ConnectionPhase


class ConfigureRequest(BaseModel):
    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)


class AuthenticateResponse(BaseModel):
    authorize_url: str
    state: ConnectionState


class JoinChannelResponse(BaseModel):
    id: str
    name: str
    is_member: bool


# ---------------------------------------------------------------------------
# Discovery / scheduler
# ---------------------------------------------------------------------------


class SchedulerConfig(BaseModel):
    enabled: bool = False
    interval_minutes: int = 60
    startup_delay_seconds: float = 30.0


class DiscoveryConfig(BaseModel):
    include_channels: bool = True
    include_dms: bool = True
    include_groups: bool = True
    lookback_hours: int = 24
    min_confidence: float = 0.6
    exclude_conversations: List[str] = Field(default_factory=list)
    exclude_users: List[str] = Field(default_factory=lambda: ["slackbot"])
    max_messages_per_conversation: int = 200
    project_id: str = "global-discovery"


class SchedulerConfigUpdate(BaseModel):
    enabled: Optional[bool] = None
    interval_minutes: Optional[int] = Field(default=None, ge=1)
    startup_delay_seconds: Optional[float] = Field(default=None, ge=0)
    discovery: Optional[DiscoveryConfig] = None


class SchedulerStatus(BaseModel):
    is_running: bool
    is_scanning: bool
    interval_minutes: int
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    last_error: Optional[str] = None


class SchedulerConfigOut(BaseModel):
    scheduler: SchedulerConfig
    discovery: DiscoveryConfig


class ScanResult(BaseModel):
    success: bool
    skipped: bool = False
    trigger: str
    conversations_scanned: int = 0
    messages_found: int = 0
    new_suggestions: int = 0
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Analysis jobs
# ---------------------------------------------------------------------------


class TaskSuggestion(BaseModel):
    id: str
    title: str
    description: str = ""
    confidence: float = 0.5
    priority: str = "medium"  # low | medium | high
    category: Optional[str] = None
    conversation_id: Optional[str] = None
    source_message: Optional[str] = None


class JobOut(BaseModel):
    id: str
    project_id: str
    channel_id: Optional[str] = None
    analysis_type: str
    message_count: int
    stage: str
    status: str
    started_at: datetime
    elapsed_ms: int


class RetryResponse(BaseModel):
    job_id: str
    retried_from: str


class CancelRequest(BaseModel):
    reason: str = "Cancelled by user"


class JobHistoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    job_id: str
    project_id: str
    channel_id: Optional[str] = None
    analysis_type: str
    status: str
    message_count: int
    duration_ms: Optional[int] = None
    error: Optional[str] = None
    created_at: datetime


class ScanHistoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    trigger: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    success: bool
    conversations_scanned: int = 0
    messages_found: int = 0
    new_suggestions: int = 0
    error: Optional[str] = None


class EventEnvelope(BaseModel):
    type: str
    data: Dict[str, Any]
