"""
Pydantic schemas for sync payloads and the local control API
"""

from datetime import datetime
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator


def _as_text(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


# Backends hand out numeric or textual identifiers; both are kept as text
RemoteId = Annotated[str, BeforeValidator(_as_text)]


class AreaPayload(BaseModel):
    """Neighbourhood as delivered by the backend"""
    model_config = ConfigDict(extra="ignore")

    id: RemoteId
    name: str
    city: str


class ClientPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: RemoteId
    name: str
    document: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


class ResidencePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: RemoteId
    number: Annotated[str, BeforeValidator(_as_text)]
    clients: List[ClientPayload] = Field(default_factory=list)

    @field_validator("clients", mode="before")
    @classmethod
    def wrap_single_client(cls, v):
        if v is None:
            return []
        if isinstance(v, dict):
            return [v]
        return v


class StreetPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: RemoteId
    name: str
    area: AreaPayload
    residences: List[ResidencePayload] = Field(default_factory=list)

    @field_validator("residences", mode="before")
    @classmethod
    def default_residences(cls, v):
        return [] if v is None else v


class RoutePayload(BaseModel):
    """One unit of down-sync work: a street assigned on a weekday"""
    model_config = ConfigDict(extra="ignore")

    id: RemoteId
    weekday: str
    street: StreetPayload


class RouteAssignmentGraph(BaseModel):
    """Route -> Street -> Residence -> Client graph for one reader"""
    reader_id: str
    routes: List[RoutePayload] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.routes


class ReadingPayload(BaseModel):
    """Complete reading as inserted on the backend"""
    id: str
    residence_id: str
    client_id: str
    reader_id: str
    value: Optional[str] = None
    photo_path: Optional[str] = None
    visit_status: str = "pending"
    read_date: str
    read_time: str
    synced: bool = True


class StartRequest(BaseModel):
    reader_id: str = Field(..., min_length=1)


class DownSyncRequest(BaseModel):
    reader_id: Optional[str] = None


class ConnectivityUpdate(BaseModel):
    """Platform network status pushed by the shell"""
    connected: bool
    internet_reachable: Optional[bool] = None


class ConnectivityResponse(BaseModel):
    connected: bool
    internet_reachable: Optional[bool] = None
    is_online: bool


class SyncResultResponse(BaseModel):
    success: bool
    synced_count: int
    error_count: int
    outcome: str
    detail: Optional[str] = None
    timestamp: datetime


class SyncStatusResponse(BaseModel):
    started: bool
    reader_id: Optional[str] = None
    running: bool
    running_kind: Optional[str] = None
    connectivity: ConnectivityResponse
    last_sync_time: Optional[datetime] = None
    pending_count: int


class SyncRunResponse(BaseModel):
    id: int
    kind: str
    reader_id: Optional[str] = None
    trigger: str
    outcome: str
    success: bool
    synced_count: int
    error_count: int
    detail: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None


class LogEntryResponse(BaseModel):
    timestamp: str
    level: str
    logger: str
    message: str
    exception: Optional[str] = None


class DailyRoutesResponse(BaseModel):
    reader_id: str
    weekday: str
    routes: List[Dict[str, Any]]
