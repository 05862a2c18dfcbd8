"""
Utility Module
Actuator Gateway, Transport Channels, Configuration and Logger
"""

from .actuator_gateway import ActuatorGateway, HttpActuatorGateway
from .channels import MqttBackendChannel, WebSocketDeviceChannel
from .config import AgentConfig, TimingConfig, load_config
from .logger import setup_logger

__all__ = ['ActuatorGateway', 'HttpActuatorGateway', 'MqttBackendChannel',
           'WebSocketDeviceChannel', 'AgentConfig', 'TimingConfig', 'load_config',
           'setup_logger']
