"""
Outbound Messages

Typed payloads published on the backend channel. Each message knows its
topic suffix under rvm/<device_id>/ and renders a JSON-ready dict.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Optional


@dataclass
class OutboundMessage:
    topic = ''
    retain = False
    timestamp: float = field(default_factory=time.time, init=False)

    def to_payload(self) -> Dict:
        raise NotImplementedError


@dataclass
class StatusUpdate(OutboundMessage):
    """Machine state change or status snapshot"""
    topic = 'status'
    state: str = ''
    previous: Optional[str] = None
    details: Dict = field(default_factory=dict)

    def to_payload(self) -> Dict:
        payload = {'state': self.state, 'timestamp': self.timestamp}
        if self.previous is not None:
            payload['previous'] = self.previous
        payload.update(self.details)
        return payload


@dataclass
class ConnectionStatus(OutboundMessage):
    """Retained online/offline presence"""
    topic = 'status'
    retain = True
    device_id: str = ''
    status: str = 'online'

    def to_payload(self) -> Dict:
        return {'deviceId': self.device_id, 'status': self.status, 'timestamp': self.timestamp}


@dataclass
class AiResult(OutboundMessage):
    """Classification outcome"""
    topic = 'ai/result'
    result: Dict = field(default_factory=dict)

    def to_payload(self) -> Dict:
        return dict(self.result, timestamp=self.timestamp)


@dataclass
class WeightResult(OutboundMessage):
    """Calibrated weight"""
    topic = 'weight/result'
    reading: Dict = field(default_factory=dict)

    def to_payload(self) -> Dict:
        return dict(self.reading)


@dataclass
class SessionUpdate(OutboundMessage):
    """Session lifecycle update"""
    topic = 'session/update'
    state: str = ''
    message: str = ''
    summary: Optional[Dict] = None

    def to_payload(self) -> Dict:
        payload = {'state': self.state, 'message': self.message, 'timestamp': self.timestamp}
        if self.summary is not None:
            payload['summary'] = self.summary
        return payload


@dataclass
class CycleComplete(OutboundMessage):
    """Accepted item"""
    topic = 'cycle/complete'
    summary: Dict = field(default_factory=dict)

    def to_payload(self) -> Dict:
        return dict(self.summary, timestamp=self.timestamp)


@dataclass
class ErrorReport(OutboundMessage):
    """Catalogued error"""
    topic = 'errors'
    code: str = ''
    severity: str = 'ERROR'
    category: str = 'SYSTEM'
    message: str = ''
    details: Dict = field(default_factory=dict)

    def to_payload(self) -> Dict:
        return {
            'code': self.code,
            'severity': self.severity,
            'category': self.category,
            'message': self.message,
            'details': self.details,
            'timestamp': self.timestamp,
        }


@dataclass
class HealthReport(OutboundMessage):
    """Periodic heartbeat"""
    topic = 'health'
    device_id: str = ''
    status: Dict = field(default_factory=dict)

    def to_payload(self) -> Dict:
        return dict(self.status, deviceId=self.device_id, timestamp=self.timestamp)


class Publisher(ABC):
    """Sink for outbound messages"""

    @abstractmethod
    def publish(self, message: OutboundMessage) -> None:
        """Publish a message; must not block the event loop"""


class NullPublisher(Publisher):
    """Publisher that drops everything (offline operation)"""

    def publish(self, message: OutboundMessage) -> None:
        pass
