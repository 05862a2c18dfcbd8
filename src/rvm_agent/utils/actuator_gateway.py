"""
Actuator Gateway

Abstract hardware capability used by the command dispatcher, plus the
HTTP implementation talking to the local serial/camera middleware.
Results of weight, photo and module ID requests arrive asynchronously
on the device channel; these calls only trigger them.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

import aiohttp

from ..core.errors import RvmError

DEVICE_TYPE = 1


class ActuatorGateway(ABC):
    """Opaque actuation calls; each either completes or raises"""

    module_id: Optional[str] = None

    @abstractmethod
    async def open_gate(self):
        pass

    @abstractmethod
    async def close_gate(self):
        pass

    @abstractmethod
    async def get_weight(self):
        pass

    @abstractmethod
    async def calibrate_weight(self):
        pass

    @abstractmethod
    async def capture_photo(self):
        pass

    @abstractmethod
    async def move_diverter(self, position: str):
        pass

    @abstractmethod
    async def drive_motor(self, motor_id: str, mode: str):
        pass

    @abstractmethod
    async def request_module_id(self):
        pass

    def bind_module(self, module_id: str):
        self.module_id = module_id

    async def start(self):
        pass

    async def close(self):
        pass


class HttpActuatorGateway(ActuatorGateway):
    """
    Gateway over the local middleware's JSON/HTTP API

    Features:
    - One shared aiohttp session
    - Motor commands carry the bound module ID
    - Non-2xx responses raise
    """

    def __init__(self, base_url: str = 'http://localhost:8081', timeout: float = 10.0,
                 gate_motor: str = '01', gate_open: str = '03', gate_close: str = '00',
                 diverter_module: str = '09'):
        """
        Initialize HTTP Actuator Gateway

        Args:
            base_url: Middleware base URL
            timeout: HTTP request timeout (seconds)
            gate_motor: Gate motor ID
            gate_open: Gate open mode code
            gate_close: Gate close mode code
            diverter_module: Stepper (diverter) module ID
        """
        self.logger = logging.getLogger(__name__)
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.gate_motor = gate_motor
        self.gate_open = gate_open
        self.gate_close = gate_close
        self.diverter_module = diverter_module
        self.module_id = None
        self._session: Optional[aiohttp.ClientSession] = None

        self.logger.info("HttpActuatorGateway initialized: %s", self.base_url)

    async def start(self):
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={'Content-Type': 'application/json'},
            )

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
        self.logger.info("HttpActuatorGateway closed")

    async def _post(self, path: str, payload: Dict):
        await self.start()
        url = f"{self.base_url}{path}"
        self.logger.debug("POST %s %s", path, payload)
        async with self._session.post(url, json=payload) as response:
            response.raise_for_status()
            return await response.read()

    def _require_module(self, action: str) -> str:
        if not self.module_id:
            raise RvmError(f"Module ID not available for {action}", code='E504')
        return self.module_id

    async def _motor(self, motor_id: str, mode: str, action: str):
        await self._post('/system/serial/motorSelect', {
            'moduleId': self._require_module(action),
            'motorId': motor_id,
            'type': mode,
            'deviceType': DEVICE_TYPE,
        })

    async def open_gate(self):
        await self._motor(self.gate_motor, self.gate_open, 'open_gate')

    async def close_gate(self):
        await self._motor(self.gate_motor, self.gate_close, 'close_gate')

    async def drive_motor(self, motor_id: str, mode: str):
        await self._motor(motor_id, mode, 'drive_motor')

    async def get_weight(self):
        await self._post('/system/serial/getWeight',
                         {'moduleId': self._require_module('get_weight'), 'type': '00'})

    async def calibrate_weight(self):
        await self._post('/system/serial/weightCalibration',
                         {'moduleId': self._require_module('calibrate_weight'), 'type': '00'})

    async def capture_photo(self):
        await self._post('/system/camera/process', {})

    async def move_diverter(self, position: str):
        await self._post('/system/serial/stepMotorSelect', {
            'moduleId': self.diverter_module,
            'id': position,
            'type': position,
            'deviceType': DEVICE_TYPE,
        })

    async def request_module_id(self):
        await self._post('/system/serial/getModuleId', {})
        self.logger.info("Module ID requested")
