"""
Configuration loading

Reads config.yaml into typed sections. Missing sections or keys keep
their defaults, so a partial file is valid.
"""

import logging
from dataclasses import dataclass, field, fields
from typing import Dict, Optional

import yaml

from ..core.models import Category

logger = logging.getLogger(__name__)


def _section(cls, data: Optional[Dict]):
    """Build a config section from a dict, ignoring unknown keys"""
    data = data or {}
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        logger.warning("Ignoring unknown %s keys: %s", cls.__name__, sorted(unknown))
    return cls(**{k: v for k, v in data.items() if k in known})


TIMEOUT_FIELDS = ('session_inactivity', 'session_max_duration', 'cycle_watchdog',
                  'command_timeout')


@dataclass
class TimingConfig:
    """All delays and timeouts, in seconds"""
    debounce: float = 5.0               # Object detected → photo
    session_inactivity: float = 120.0
    session_max_duration: float = 600.0
    cycle_watchdog: float = 90.0        # Upper bound on PROCESSING
    feedback_delay: float = 2.0         # ACCEPTED/REJECTED display time
    session_settle: float = 2.0         # Session end → context cleared
    gate_operation: float = 1.0
    belt_to_weight: float = 3.0
    belt_to_diverter: float = 4.0
    settle: float = 1.0
    diverter_rotate: float = 4.0
    compactor_run: float = 24.0
    belt_reverse: float = 5.0
    diverter_reset: float = 6.0
    reject_return: float = 5.0
    command_timeout: float = 10.0
    retry_backoff: float = 1.0
    calibration_backoff: float = 0.5
    calibration_reread: float = 1.0

    @classmethod
    def immediate(cls, **overrides) -> 'TimingConfig':
        """Every delay zero, timeouts at their defaults (simulation and tests)"""
        values = {f.name: 0.0 for f in fields(cls) if f.name not in TIMEOUT_FIELDS}
        values.update(overrides)
        return cls(**values)


@dataclass
class MotorConfig:
    """Motor IDs and mode codes understood by the middleware"""
    belt_id: str = '02'
    belt_modes: Dict[str, str] = field(default_factory=lambda: {
        'to_weight': '02',
        'to_diverter': '03',
        'reverse': '01',
        'stop': '00',
    })
    gate_id: str = '01'
    gate_modes: Dict[str, str] = field(default_factory=lambda: {
        'open': '03',
        'close': '00',
    })
    compactor_id: str = '04'
    compactor_modes: Dict[str, str] = field(default_factory=lambda: {
        'start': '01',
        'stop': '00',
    })


@dataclass
class DetectionConfig:
    thresholds: Dict[str, float] = field(default_factory=lambda: {
        'METAL_CAN': 0.22,
        'PLASTIC_BOTTLE': 0.30,
        'GLASS': 0.25,
    })
    min_valid_weight: float = 1.0

    def category_thresholds(self) -> Dict[Category, float]:
        return {Category.parse(name): float(value) for name, value in self.thresholds.items()}


@dataclass
class WeightConfig:
    coefficient: float = 988.0
    max_calibration_attempts: int = 2


@dataclass
class DiverterConfig:
    enabled: bool = True
    home: str = '01'
    module_id: str = '09'
    positions: Dict[str, str] = field(default_factory=lambda: {
        'METAL_CAN': '02',
        'PLASTIC_BOTTLE': '03',
    })

    def category_positions(self) -> Dict[Category, str]:
        return {Category.parse(name): str(pos) for name, pos in self.positions.items()}


@dataclass
class MqttConfig:
    host: str = 'localhost'
    port: int = 1883
    username: Optional[str] = None
    password: Optional[str] = None
    tls: bool = False
    ca_file: Optional[str] = None
    keepalive: int = 60
    topic_prefix: Optional[str] = None  # Defaults to rvm/<device_id>


@dataclass
class MiddlewareConfig:
    base_url: str = 'http://localhost:8081'
    ws_url: str = 'ws://localhost:8081/websocket/qazwsx1234'
    timeout: float = 10.0
    reconnect_delay: float = 5.0


@dataclass
class SessionConfig:
    history_file: Optional[str] = None


@dataclass
class LoggingConfig:
    level: str = 'INFO'
    file: Optional[str] = None


@dataclass
class HealthConfig:
    publish_interval: float = 30.0


@dataclass
class AgentConfig:
    """Top-level agent configuration"""
    device_id: str = 'RVM-3101'
    timing: TimingConfig = field(default_factory=TimingConfig)
    motors: MotorConfig = field(default_factory=MotorConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    weight: WeightConfig = field(default_factory=WeightConfig)
    diverter: DiverterConfig = field(default_factory=DiverterConfig)
    mqtt: MqttConfig = field(default_factory=MqttConfig)
    middleware: MiddlewareConfig = field(default_factory=MiddlewareConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    health: HealthConfig = field(default_factory=HealthConfig)

    @property
    def topic_prefix(self) -> str:
        return self.mqtt.topic_prefix or f"rvm/{self.device_id}"

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> 'AgentConfig':
        """
        Build configuration from a parsed YAML document

        Args:
            data: Parsed YAML (None for all defaults)

        Returns:
            AgentConfig
        """
        data = data or {}
        device = data.get('device', {}) or {}
        return cls(
            device_id=str(device.get('id', 'RVM-3101')),
            timing=_section(TimingConfig, data.get('timing')),
            motors=_section(MotorConfig, data.get('motors')),
            detection=_section(DetectionConfig, data.get('detection')),
            weight=_section(WeightConfig, data.get('weight')),
            diverter=_section(DiverterConfig, data.get('diverter')),
            mqtt=_section(MqttConfig, data.get('mqtt')),
            middleware=_section(MiddlewareConfig, data.get('middleware')),
            session=_section(SessionConfig, data.get('session')),
            logging=_section(LoggingConfig, data.get('logging')),
            health=_section(HealthConfig, data.get('health')),
        )


def load_config(config_path: str = 'config.yaml') -> AgentConfig:
    """
    Load configuration file

    Args:
        config_path: Path to YAML configuration

    Returns:
        AgentConfig
    """
    with open(config_path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f)

    config = AgentConfig.from_dict(data)
    logger.info("Configuration loaded from %s (device %s)", config_path, config.device_id)
    return config
