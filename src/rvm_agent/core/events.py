"""
Inbound Events

Closed set of typed events produced by the router from raw device and
backend messages.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional

from .models import Category


class Event:
    """Base class for inbound events"""
    source = 'internal'


# Device channel

@dataclass(frozen=True)
class ModuleIdentified(Event):
    source = 'device'
    module_id: str


@dataclass(frozen=True)
class ObjectDetected(Event):
    source = 'device'
    code: int = 4


@dataclass(frozen=True)
class ClassificationReady(Event):
    source = 'device'
    label: str
    confidence: float
    task_id: Optional[str] = None


@dataclass(frozen=True)
class WeightReady(Event):
    source = 'device'
    raw_value: float


@dataclass(frozen=True)
class BinFull(Event):
    source = 'device'
    bin_name: str
    code: int


# Backend channel

@dataclass(frozen=True)
class StartSession(Event):
    source = 'backend'
    token: str
    user_id: Optional[str] = None
    user_data: Dict = field(default_factory=dict, hash=False)
    is_guest: bool = False


@dataclass(frozen=True)
class EmergencyStop(Event):
    source = 'backend'


@dataclass(frozen=True)
class EndSession(Event):
    source = 'backend'
    reason: str = 'user_ended'


@dataclass(frozen=True)
class SetManualMaterial(Event):
    source = 'backend'
    category: Category


@dataclass(frozen=True)
class CaptureManually(Event):
    source = 'backend'


@dataclass(frozen=True)
class ForceReset(Event):
    source = 'backend'


@dataclass(frozen=True)
class GetStatus(Event):
    source = 'backend'
