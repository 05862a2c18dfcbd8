"""
Test command dispatcher retry, timeout and safe stop
"""

import asyncio

import pytest

from conftest import FakeGateway
from rvm_agent.core.diverter import DiverterPolicy
from rvm_agent.core.dispatcher import CommandDispatcher
from rvm_agent.core.errors import TransientActuationError
from rvm_agent.utils.config import MotorConfig


def make_dispatcher(gateway, timeout=10.0, diverter=None):
    return CommandDispatcher(gateway, MotorConfig(), diverter or DiverterPolicy(),
                             timeout=timeout, retry_backoff=0)


class TestCommandDispatcher:
    """Test CommandDispatcher"""

    def test_retry_then_success(self, gateway):
        """Test one failure is absorbed by the retry"""
        gateway.fail('open_gate', times=1)
        dispatcher = make_dispatcher(gateway)

        asyncio.run(dispatcher.critical('open_gate'))

        assert gateway.count('open_gate') == 2
        assert dispatcher.get_stats() == {'issued': 2, 'retried': 1, 'failed': 0}

    def test_critical_raises_after_retry(self, gateway):
        gateway.fail('calibrate_weight')
        dispatcher = make_dispatcher(gateway)

        with pytest.raises(TransientActuationError) as info:
            asyncio.run(dispatcher.critical('calibrate_weight'))

        assert info.value.action == 'calibrate_weight'
        assert isinstance(info.value.cause, ConnectionError)
        assert gateway.count('calibrate_weight') == 2

    def test_best_effort_returns_false(self, gateway):
        gateway.fail('close_gate')
        dispatcher = make_dispatcher(gateway)

        assert asyncio.run(dispatcher.best_effort('close_gate')) is False
        assert asyncio.run(dispatcher.best_effort('open_gate')) is True
        assert dispatcher.get_stats()['failed'] == 1

    def test_timeout_counts_as_failure(self, gateway):
        """Test a hung call is bounded by the timeout, then retried"""
        gateway.hold('get_weight')
        dispatcher = make_dispatcher(gateway, timeout=0.05)

        with pytest.raises(TransientActuationError) as info:
            asyncio.run(dispatcher.critical('get_weight'))

        assert isinstance(info.value.cause, asyncio.TimeoutError)
        assert gateway.count('get_weight') == 2

    def test_motor_codes(self, gateway):
        dispatcher = make_dispatcher(gateway)

        async def scenario():
            for mode in ('to_weight', 'to_diverter', 'reverse', 'stop'):
                await dispatcher.belt(mode)
            await dispatcher.compactor('start')
            await dispatcher.compactor('stop')

        asyncio.run(scenario())
        assert gateway.calls == [
            ('drive_motor', '02', '02'),
            ('drive_motor', '02', '03'),
            ('drive_motor', '02', '01'),
            ('drive_motor', '02', '00'),
            ('drive_motor', '04', '01'),
            ('drive_motor', '04', '00'),
        ]

    def test_safe_stop_continues_past_failures(self, gateway):
        """Test every stop step runs even when one fails"""
        gateway.fail('drive_motor', '04', '00')
        dispatcher = make_dispatcher(gateway)

        asyncio.run(dispatcher.safe_stop())

        assert gateway.actions() == ['drive_motor', 'drive_motor', 'drive_motor',
                                     'close_gate', 'move_diverter']
        assert gateway.calls[-1] == ('move_diverter', '01')

    def test_safe_stop_without_diverter(self, gateway):
        dispatcher = make_dispatcher(gateway, diverter=DiverterPolicy(enabled=False))
        asyncio.run(dispatcher.safe_stop())
        assert 'move_diverter' not in gateway.actions()

    def test_bind_module(self):
        gateway = FakeGateway()
        make_dispatcher(gateway).bind_module('0A')
        assert gateway.module_id == '0A'
