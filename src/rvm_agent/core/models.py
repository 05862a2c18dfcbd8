"""
Data Model for the RVM Agent

Material categories, machine states, transient sensor results,
per-item records and the multi-item user session.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


class Category(Enum):
    """Material categories"""
    METAL_CAN = "METAL_CAN"
    PLASTIC_BOTTLE = "PLASTIC_BOTTLE"
    GLASS = "GLASS"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: str) -> 'Category':
        """Parse a category name (case-insensitive)"""
        return cls(str(value).strip().upper())


class MachineState(Enum):
    """Machine states"""
    IDLE = "idle"
    READY = "ready"
    DETECTING = "detecting"
    CLASSIFYING = "classifying"
    WEIGHING = "weighing"
    PROCESSING = "processing"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    SESSION_COMPLETE = "session_complete"


@dataclass(frozen=True)
class ClassificationResult:
    """Classification gate output, held until consumed by the controller"""
    category: Category
    confidence: float
    label: str

    @property
    def accepted(self) -> bool:
        return self.category != Category.UNKNOWN

    def to_dict(self) -> Dict:
        return {
            'materialType': self.category.value,
            'confidence': self.confidence,
            'matchRate': round(self.confidence * 100),
            'className': self.label,
            'accepted': self.accepted,
        }


@dataclass(frozen=True)
class WeightReading:
    """Calibrated weight reading"""
    raw: float
    coefficient: float
    calibrated: float
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict:
        return {
            'weight': self.calibrated,
            'rawWeight': self.raw,
            'coefficient': self.coefficient,
            'timestamp': self.timestamp,
        }


@dataclass(frozen=True)
class Item:
    """Accepted item record (immutable once appended to a session)"""
    category: Category
    confidence: float
    weight: float
    raw_weight: float
    label: str = ''
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict:
        return {
            'material': self.category.value,
            'confidence': self.confidence,
            'weight': self.weight,
            'rawWeight': self.raw_weight,
            'className': self.label,
            'timestamp': self.timestamp,
        }


@dataclass
class Session:
    """
    Multi-item user session

    Owned by the SessionAggregator. `active` goes False as soon as an end
    is requested; the object itself lives until the settle delay elapses.
    """
    session_id: str
    user_id: Optional[str] = None
    user_data: Dict = field(default_factory=dict)
    is_guest: bool = False
    items: List[Item] = field(default_factory=list)
    total_weight: float = 0.0
    item_count: int = 0
    started_at: float = field(default_factory=time.time)
    active: bool = True

    def add(self, item: Item):
        self.items.append(item)
        self.item_count += 1
        self.total_weight = round(self.total_weight + item.weight, 1)

    def summary(self, reason: str, ended_at: Optional[float] = None) -> Dict:
        """Build the outward session summary"""
        ended_at = ended_at if ended_at is not None else time.time()
        return {
            'sessionId': self.session_id,
            'userId': self.user_id,
            'isGuest': self.is_guest,
            'items': [item.to_dict() for item in self.items],
            'itemCount': self.item_count,
            'totalWeight': self.total_weight,
            'startedAt': self.started_at,
            'endedAt': ended_at,
            'duration': round(ended_at - self.started_at, 1),
            'reason': reason,
        }


@dataclass
class MachineContext:
    """
    Explicit machine context, owned by the CycleController

    Held by reference by the SessionAggregator; never module-global.
    """
    state: MachineState = MachineState.IDLE
    in_flight: bool = False
    pending_classification: Optional[ClassificationResult] = None
    gate_open: bool = False
    module_id: Optional[str] = None
    total_cycles: int = 0
    started_at: float = field(default_factory=time.time)

    def snapshot(self) -> Dict:
        pending = self.pending_classification
        return {
            'state': self.state.value,
            'inFlight': self.in_flight,
            'pendingMaterial': pending.category.value if pending else None,
            'gateOpen': self.gate_open,
            'moduleId': self.module_id,
            'totalCycles': self.total_cycles,
            'uptime': round(time.time() - self.started_at),
        }
