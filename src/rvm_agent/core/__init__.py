"""
Core Logic Module
Classification Gate, Weight Normalizer, Command Dispatcher, Timer Supervisor,
Cycle Controller, Session Aggregator and Event Router
"""

from .classification import ClassificationGate
from .diverter import DiverterPolicy
from .dispatcher import CommandDispatcher
from .errors import (CalibrationError, ConcurrencyViolation, ProtocolError, RvmError,
                     TransientActuationError, WatchdogTimeout)
from .models import Category, Item, MachineState, Session
from .router import EventRouter, parse_backend_message, parse_device_message
from .session import SessionAggregator
from .state_machine import CycleController
from .watchdog import TimerClass, TimerSupervisor
from .weight import WeightNormalizer

__all__ = ['ClassificationGate', 'DiverterPolicy', 'CommandDispatcher', 'CalibrationError',
           'ConcurrencyViolation', 'ProtocolError', 'RvmError', 'TransientActuationError',
           'WatchdogTimeout', 'Category', 'Item', 'MachineState', 'Session', 'EventRouter',
           'parse_backend_message', 'parse_device_message', 'SessionAggregator',
           'CycleController', 'TimerClass', 'TimerSupervisor', 'WeightNormalizer']
