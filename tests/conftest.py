"""
Shared test fixtures: fake actuator gateway, recording publisher and a
controller factory with zero delays.
"""

import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'src'))

from rvm_agent.core.diverter import DiverterPolicy  # noqa: E402
from rvm_agent.core.dispatcher import CommandDispatcher  # noqa: E402
from rvm_agent.core.messages import (ErrorReport, Publisher, SessionUpdate,  # noqa: E402
                                     StatusUpdate)
from rvm_agent.core.state_machine import CycleController  # noqa: E402
from rvm_agent.core.watchdog import TimerSupervisor  # noqa: E402
from rvm_agent.utils.actuator_gateway import ActuatorGateway  # noqa: E402
from rvm_agent.utils.config import MotorConfig, TimingConfig  # noqa: E402


class Hold:
    """Blocks a gateway call until released"""

    def __init__(self):
        self.reached = asyncio.Event()
        self.release = asyncio.Event()


class FakeGateway(ActuatorGateway):
    """Records every call; failures and holds are injected per call"""

    def __init__(self):
        self.calls = []
        self.failures = {}
        self.holds = {}
        self.module_id = None

    def fail(self, *call, times: int = -1):
        """Fail matching calls `times` times (-1: always)"""
        self.failures[call] = times

    def hold(self, *call) -> Hold:
        hold = Hold()
        self.holds[call] = hold
        return hold

    def _match(self, table, call):
        for key in (call, call[:1]):
            if key in table:
                return key
        return None

    async def _record(self, *call):
        self.calls.append(call)

        key = self._match(self.failures, call)
        if key is not None and self.failures[key] != 0:
            if self.failures[key] > 0:
                self.failures[key] -= 1
            raise ConnectionError(f"{call[0]} failed")

        key = self._match(self.holds, call)
        if key is not None:
            hold = self.holds[key]
            hold.reached.set()
            await hold.release.wait()

    async def open_gate(self):
        await self._record('open_gate')

    async def close_gate(self):
        await self._record('close_gate')

    async def get_weight(self):
        await self._record('get_weight')

    async def calibrate_weight(self):
        await self._record('calibrate_weight')

    async def capture_photo(self):
        await self._record('capture_photo')

    async def move_diverter(self, position):
        await self._record('move_diverter', position)

    async def drive_motor(self, motor_id, mode):
        await self._record('drive_motor', motor_id, mode)

    async def request_module_id(self):
        await self._record('request_module_id')

    def actions(self):
        return [call[0] for call in self.calls]

    def count(self, *call):
        return sum(1 for c in self.calls if c[:len(call)] == call)


class RecordingPublisher(Publisher):
    """Keeps every outbound message"""

    def __init__(self):
        self.messages = []

    def publish(self, message):
        self.messages.append(message)

    def of_type(self, message_type):
        return [m for m in self.messages if isinstance(m, message_type)]

    def transitions(self):
        return [m.state for m in self.of_type(StatusUpdate) if m.previous is not None]

    def error_codes(self):
        return [m.code for m in self.of_type(ErrorReport)]

    def session_updates(self, state=None):
        updates = self.of_type(SessionUpdate)
        return [u for u in updates if state is None or u.state == state]


def build_controller(timing=None, gateway=None, diverter=None, **kwargs):
    """Wire a controller against a fake gateway; returns (controller, gateway, publisher)"""
    gateway = gateway or FakeGateway()
    publisher = RecordingPublisher()
    diverter = diverter or DiverterPolicy()
    timing = timing or TimingConfig.immediate()

    dispatcher = CommandDispatcher(gateway, MotorConfig(), diverter,
                                   timeout=timing.command_timeout,
                                   retry_backoff=timing.retry_backoff)
    controller = CycleController(dispatcher, TimerSupervisor(), publisher, timing,
                                 diverter=diverter, **kwargs)
    return controller, gateway, publisher


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def timing():
    return TimingConfig.immediate()
