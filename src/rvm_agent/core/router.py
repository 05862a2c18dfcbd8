"""
Event Router

Parses raw device (WebSocket) and backend (MQTT) messages into typed
events and dispatches them to the cycle controller. A failing handler
is logged; it never stops the consumer loop.
"""

import asyncio
import json
import logging
from typing import Dict, Optional, Union

from .errors import ProtocolError, RvmError
from .events import (BinFull, CaptureManually, ClassificationReady, EmergencyStop, EndSession,
                     Event, ForceReset, GetStatus, ModuleIdentified, ObjectDetected,
                     SetManualMaterial, StartSession, WeightReady)
from .models import Category

logger = logging.getLogger(__name__)

OBJECT_DETECTED_CODE = 4
BIN_NAMES = {0: 'PET', 1: 'METAL', 2: 'RIGHT', 3: 'GLASS'}

COMMAND_EVENTS = {
    'emergencyStop': EmergencyStop,
    'endSession': EndSession,
    'takePhoto': CaptureManually,
    'forceReset': ForceReset,
    'getStatus': GetStatus,
}


def _decode(raw: Union[str, bytes, Dict]) -> Dict:
    if isinstance(raw, dict):
        return raw
    try:
        if isinstance(raw, bytes):
            raw = raw.decode('utf-8')
        message = json.loads(raw)
    except (UnicodeDecodeError, ValueError) as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e
    if not isinstance(message, dict):
        raise ProtocolError(f"Expected JSON object, got {type(message).__name__}")
    return message


def parse_device_message(raw: Union[str, bytes, Dict]) -> Event:
    """
    Parse a device channel message

    Args:
        raw: JSON text or decoded dict with a `function` field

    Returns:
        Typed device event

    Raises:
        ProtocolError: Malformed or unrecognized message
    """
    message = _decode(raw)
    function = message.get('function')
    data = message.get('data')

    if function == '01':
        module_id = message.get('moduleId')
        if not module_id:
            raise ProtocolError("Module ID message without moduleId")
        return ModuleIdentified(module_id=str(module_id))

    if function == 'aiPhoto':
        result = _decode(data) if data is not None else {}
        if 'className' not in result:
            raise ProtocolError("aiPhoto result without className")
        try:
            confidence = float(result.get('probability') or 0)
        except (TypeError, ValueError) as e:
            raise ProtocolError(f"Invalid probability: {result.get('probability')!r}") from e
        task_id = result.get('taskId')
        return ClassificationReady(label=str(result['className']), confidence=confidence,
                                   task_id=str(task_id) if task_id is not None else None)

    if function == '06':
        try:
            return WeightReady(raw_value=float(data))
        except (TypeError, ValueError) as e:
            raise ProtocolError(f"Invalid weight value: {data!r}") from e

    if function == 'deviceStatus':
        try:
            code = int(data)
        except (TypeError, ValueError) as e:
            raise ProtocolError(f"Invalid device status: {data!r}") from e
        if code == OBJECT_DETECTED_CODE:
            return ObjectDetected(code=code)
        if code in BIN_NAMES:
            return BinFull(bin_name=BIN_NAMES[code], code=code)
        raise ProtocolError(f"Unknown device status code {code}")

    raise ProtocolError(f"Unknown device function {function!r}")


def parse_backend_message(topic: str, raw: Union[str, bytes, Dict]) -> Event:
    """
    Parse a backend channel message

    Args:
        topic: Full MQTT topic (matched on its suffix)
        raw: JSON payload

    Returns:
        Typed backend event

    Raises:
        ProtocolError: Malformed or unrecognized message
    """
    payload = _decode(raw)

    if topic.endswith('/qr/scanned'):
        user_data = {k: payload[k] for k in ('userName', 'userEmail') if k in payload}
        return StartSession(token=str(payload.get('sessionCode') or ''),
                            user_id=payload.get('userId'), user_data=user_data, is_guest=False)

    if topic.endswith('/guest/start'):
        token = payload.get('sessionCode') or payload.get('sessionId') or ''
        user_data = {'sessionId': payload['sessionId']} if 'sessionId' in payload else {}
        return StartSession(token=str(token), user_data=user_data, is_guest=True)

    if topic.endswith('/commands'):
        action = payload.get('action')
        if action == 'setMaterial':
            try:
                return SetManualMaterial(category=Category.parse(payload.get('materialType')))
            except ValueError as e:
                raise ProtocolError(f"Unknown material {payload.get('materialType')!r}") from e
        if action == 'endSession' and payload.get('reason'):
            return EndSession(reason=str(payload['reason']))
        event_type = COMMAND_EVENTS.get(action)
        if event_type is None:
            raise ProtocolError(f"Unknown command {action!r}")
        return event_type()

    raise ProtocolError(f"Unexpected topic {topic}")


class EventRouter:
    """Dispatch typed events to the cycle controller"""

    def __init__(self, controller):
        self.controller = controller
        self.handlers = {
            ModuleIdentified: controller.on_module_identified,
            ObjectDetected: controller.on_object_detected,
            ClassificationReady: controller.on_classification_ready,
            WeightReady: controller.on_weight_ready,
            BinFull: controller.on_bin_full,
            StartSession: controller.on_start_session,
            EndSession: controller.on_end_session,
            EmergencyStop: controller.on_emergency_stop,
            SetManualMaterial: controller.on_set_manual_material,
            CaptureManually: controller.on_capture_manually,
            ForceReset: controller.on_force_reset,
            GetStatus: controller.on_get_status,
        }
        self.stats = {'dispatched': 0, 'malformed': 0, 'failed': 0}

    async def dispatch(self, event: Event):
        """Run the handler for an event; errors are logged, never raised"""
        handler = self.handlers.get(type(event))
        if handler is None:
            logger.warning("No handler for %s", type(event).__name__)
            return

        self.stats['dispatched'] += 1
        logger.debug("Dispatching %s", event)
        try:
            result = handler(event)
            if asyncio.iscoroutine(result):
                await result
        except asyncio.CancelledError:
            raise
        except RvmError as e:
            self.stats['failed'] += 1
            logger.warning("%s rejected: [%s] %s", type(event).__name__, e.code, e)
        except Exception:
            self.stats['failed'] += 1
            logger.exception("Handler for %s failed", type(event).__name__)

    async def route_device(self, raw) -> Optional[Event]:
        """Parse and dispatch a device message"""
        try:
            event = parse_device_message(raw)
        except ProtocolError as e:
            self.stats['malformed'] += 1
            logger.warning("Malformed device message: %s", e)
            return None
        await self.dispatch(event)
        return event

    async def route_backend(self, topic: str, raw) -> Optional[Event]:
        """Parse and dispatch a backend message"""
        try:
            event = parse_backend_message(topic, raw)
        except ProtocolError as e:
            self.stats['malformed'] += 1
            logger.warning("Malformed backend message on %s: %s", topic, e)
            return None
        await self.dispatch(event)
        return event
