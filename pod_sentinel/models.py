"""
Data models and enums for the pod sentinel
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional
from pydantic import AliasChoices, BaseModel, Field

class DetectionSource(Enum):
    PUSH = "push"    # Keyspace expiry notification
    POLL = "poll"    # Periodic scan of the timer namespace

class Outcome(Enum):
    REARM = "rearm"            # Pod busy (or no data), timer extended
    TERMINATE = "terminate"    # Pod idle, stop requested

class TerminateStatus(Enum):
    ACKNOWLEDGED = "acknowledged"      # Provider accepted the stop
    NOT_FOUND = "not_found"            # Pod already gone, nothing to stop
    PROVIDER_ERROR = "provider_error"  # Transport or response failure

class ConnectionState(Enum):
    CONNECTING = "connecting"
    REGISTERED = "registered"
    CLOSED = "closed"

@dataclass
class ExpiryEvent:
    pod_id: str
    source: DetectionSource
    detected_at: float = field(default_factory=time.time)

@dataclass
class UtilizationReading:
    gpu_percent: float
    memory_percent: float
    available: bool = True

    @property
    def score(self) -> float:
        return max(self.gpu_percent, self.memory_percent)

    @classmethod
    def unavailable(cls) -> 'UtilizationReading':
        """Sentinel reading that always lands above any idle threshold"""
        return cls(gpu_percent=100.0, memory_percent=100.0, available=False)

@dataclass
class TerminateResult:
    status: TerminateStatus
    pod_id: str
    desired_status: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        """Returns True if the pod is known not to be running any more"""
        return self.status in (TerminateStatus.ACKNOWLEDGED, TerminateStatus.NOT_FOUND)

@dataclass
class Decision:
    pod_id: str
    reading: UtilizationReading
    outcome: Outcome
    terminate_result: Optional[TerminateResult] = None

    @property
    def score(self) -> float:
        return self.reading.score

# API Models
class NotifyRequest(BaseModel):
    pod_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("podId", "resourceId"))

class NotifyResponse(BaseModel):
    status: str
    pod_id: str = Field(alias="podId")
    delivered: int

    model_config = {"populate_by_name": True}

class ArmResponse(BaseModel):
    pod_id: str = Field(alias="podId")
    ttl: int

    model_config = {"populate_by_name": True}

class SentinelStatus(BaseModel):
    detection_mode: str
    idle_threshold: float
    extension_seconds: int
    tracked_timers: int
    subscriptions: int
    connections: int
    subscription_counts: Dict[str, int]
    failed_stops: List[str]
