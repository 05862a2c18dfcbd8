"""
Test inbound message parsing and event routing
"""

import asyncio
import json

import pytest

from conftest import build_controller
from rvm_agent.core.errors import ProtocolError, RvmError
from rvm_agent.core.events import (BinFull, CaptureManually, ClassificationReady, EmergencyStop,
                                   EndSession, ForceReset, GetStatus, ModuleIdentified,
                                   ObjectDetected, SetManualMaterial, StartSession, WeightReady)
from rvm_agent.core.models import Category, MachineState
from rvm_agent.core.router import EventRouter, parse_backend_message, parse_device_message

PREFIX = 'rvm/RVM-3101'


class TestDeviceMessages:
    """Test device channel parsing"""

    def test_module_id(self):
        event = parse_device_message('{"function": "01", "moduleId": "09"}')
        assert event == ModuleIdentified(module_id='09')

    def test_ai_photo_string_payload(self):
        data = json.dumps({'className': '易拉罐', 'probability': 0.87, 'taskId': 12})
        event = parse_device_message(json.dumps({'function': 'aiPhoto', 'data': data},
                                                ensure_ascii=False))
        assert event == ClassificationReady(label='易拉罐', confidence=0.87, task_id='12')

    def test_ai_photo_dict_payload(self):
        event = parse_device_message({'function': 'aiPhoto',
                                      'data': {'className': 'bottle', 'probability': '0.4'}})
        assert event.confidence == 0.4
        assert event.task_id is None

    def test_weight(self):
        assert parse_device_message(b'{"function": "06", "data": "1000"}') == WeightReady(1000.0)

    @pytest.mark.parametrize('code,expected', [
        (4, ObjectDetected(code=4)),
        ('0', BinFull(bin_name='PET', code=0)),
        (1, BinFull(bin_name='METAL', code=1)),
        (3, BinFull(bin_name='GLASS', code=3)),
    ])
    def test_device_status(self, code, expected):
        assert parse_device_message({'function': 'deviceStatus', 'data': code}) == expected

    @pytest.mark.parametrize('raw', [
        'not json',
        '[1, 2]',
        '{"function": "99"}',
        '{"function": "01"}',
        '{"function": "06", "data": "heavy"}',
        '{"function": "deviceStatus", "data": 7}',
        '{"function": "aiPhoto", "data": "{}"}',
    ])
    def test_malformed(self, raw):
        with pytest.raises(ProtocolError):
            parse_device_message(raw)


class TestBackendMessages:
    """Test backend channel parsing"""

    def test_qr_scanned(self):
        event = parse_backend_message(f'{PREFIX}/qr/scanned', json.dumps({
            'sessionCode': 'abc', 'userId': 'U7', 'userName': 'Ana', 'timestamp': 1,
        }))
        assert isinstance(event, StartSession)
        assert event.token == 'abc'
        assert event.user_id == 'U7'
        assert event.user_data == {'userName': 'Ana'}
        assert not event.is_guest

    def test_guest_start(self):
        event = parse_backend_message(f'{PREFIX}/guest/start', '{"sessionId": "G-1"}')
        assert event.is_guest
        assert event.token == 'G-1'

    @pytest.mark.parametrize('action,expected', [
        ('emergencyStop', EmergencyStop()),
        ('endSession', EndSession()),
        ('takePhoto', CaptureManually()),
        ('forceReset', ForceReset()),
        ('getStatus', GetStatus()),
    ])
    def test_commands(self, action, expected):
        raw = json.dumps({'action': action})
        assert parse_backend_message(f'{PREFIX}/commands', raw) == expected

    def test_set_material(self):
        event = parse_backend_message(f'{PREFIX}/commands',
                                      '{"action": "setMaterial", "materialType": "glass"}')
        assert event == SetManualMaterial(category=Category.GLASS)

    def test_end_session_reason(self):
        event = parse_backend_message(f'{PREFIX}/commands',
                                      '{"action": "endSession", "reason": "user_left"}')
        assert event == EndSession(reason='user_left')

    @pytest.mark.parametrize('topic,raw', [
        (f'{PREFIX}/commands', '{"action": "selfDestruct"}'),
        (f'{PREFIX}/commands', '{"action": "setMaterial", "materialType": "paper"}'),
        (f'{PREFIX}/unknown', '{}'),
    ])
    def test_malformed(self, topic, raw):
        with pytest.raises(ProtocolError):
            parse_backend_message(topic, raw)


class TestEventRouter:
    """Test EventRouter dispatch"""

    def test_full_flow(self):
        """Test raw messages drive a complete accepted cycle"""
        async def scenario():
            controller, gateway, publisher = build_controller()
            router = EventRouter(controller)

            await router.route_backend(f'{PREFIX}/qr/scanned', '{"sessionCode": "S1"}')
            await router.route_device('{"function": "deviceStatus", "data": 4}')
            await controller.join()
            await router.route_device({'function': 'aiPhoto',
                                       'data': {'className': 'pet bottle', 'probability': 0.9}})
            await router.route_device('{"function": "06", "data": "40"}')
            await controller.join()
            await router.route_backend(f'{PREFIX}/commands', '{"action": "endSession"}')
            return controller, publisher, router

        controller, publisher, router = asyncio.run(scenario())
        assert controller.state == MachineState.IDLE
        summary = publisher.session_updates('session_complete')[0].summary
        assert summary['itemCount'] == 1
        assert summary['totalWeight'] == 39.5
        assert router.stats['dispatched'] == 5

    def test_malformed_counted(self):
        async def scenario():
            controller, gateway, publisher = build_controller()
            router = EventRouter(controller)
            assert await router.route_device('garbage') is None
            assert await router.route_backend(f'{PREFIX}/commands', '{}') is None
            return router

        router = asyncio.run(scenario())
        assert router.stats == {'dispatched': 0, 'malformed': 2, 'failed': 0}

    def test_handler_errors_isolated(self):
        """Test a failing handler is logged and the router keeps going"""
        async def scenario():
            controller, gateway, publisher = build_controller()
            router = EventRouter(controller)

            def broken(event):
                raise RuntimeError('handler bug')

            async def rejected(event):
                raise RvmError('refused', code='E405')

            router.handlers[GetStatus] = broken
            router.handlers[EmergencyStop] = rejected
            await router.dispatch(GetStatus())
            await router.dispatch(EmergencyStop())
            await router.route_device('{"function": "01", "moduleId": "0B"}')
            return router, gateway

        router, gateway = asyncio.run(scenario())
        assert router.stats['failed'] == 2
        assert gateway.module_id == '0B'
