"""
Command Dispatcher: Logical Actuation Request → Gateway Call

Every call is bounded by a timeout and retried once. Critical commands
raise after the retry; best-effort commands only log.
"""

import asyncio
import logging
from typing import Dict

from .diverter import DiverterPolicy
from .errors import TransientActuationError


class CommandDispatcher:
    """Translate logical commands into actuator gateway calls"""

    def __init__(self, gateway, motors, diverter: DiverterPolicy,
                 timeout: float = 10.0, retry_backoff: float = 1.0, sleep=asyncio.sleep):
        """
        Initialize Command Dispatcher

        Args:
            gateway: ActuatorGateway implementation
            motors: MotorConfig with motor IDs and mode codes
            diverter: Diverter routing policy
            timeout: Per-call timeout (seconds)
            retry_backoff: Delay before the single retry (seconds)
            sleep: Awaitable sleep function
        """
        self.logger = logging.getLogger(__name__)
        self.gateway = gateway
        self.motors = motors
        self.diverter = diverter
        self.timeout = timeout
        self.retry_backoff = retry_backoff
        self._sleep = sleep

        self.stats = {'issued': 0, 'retried': 0, 'failed': 0}

    async def _call(self, action: str, *args):
        method = getattr(self.gateway, action)
        self.stats['issued'] += 1
        if self.timeout and self.timeout > 0:
            return await asyncio.wait_for(method(*args), self.timeout)
        return await method(*args)

    async def _attempt(self, action: str, *args):
        try:
            return await self._call(action, *args)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.warning("%s%s failed (%r), retrying", action, args or '', e)
            self.stats['retried'] += 1

        await self._sleep(self.retry_backoff)
        return await self._call(action, *args)

    async def critical(self, action: str, *args):
        """
        Issue a command whose failure aborts the current cycle

        Raises:
            TransientActuationError: Failed after one retry
        """
        try:
            return await self._attempt(action, *args)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.stats['failed'] += 1
            self.logger.error("Critical command %s%s failed after retry: %r", action, args or '', e)
            raise TransientActuationError(action, e) from e

    async def best_effort(self, action: str, *args) -> bool:
        """
        Issue a command whose failure is only logged

        Returns:
            True if the command succeeded
        """
        try:
            await self._attempt(action, *args)
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.stats['failed'] += 1
            self.logger.warning("Best-effort command %s%s failed: %r", action, args or '', e)
            return False

    def _belt_args(self, mode: str):
        return self.motors.belt_id, self.motors.belt_modes[mode]

    def _compactor_args(self, mode: str):
        return self.motors.compactor_id, self.motors.compactor_modes[mode]

    async def belt(self, mode: str, critical: bool = True):
        """Drive the conveyor belt: to_weight, to_diverter, reverse or stop"""
        issue = self.critical if critical else self.best_effort
        return await issue('drive_motor', *self._belt_args(mode))

    async def compactor(self, mode: str, critical: bool = True):
        """Drive the compactor: start or stop"""
        issue = self.critical if critical else self.best_effort
        return await issue('drive_motor', *self._compactor_args(mode))

    async def safe_stop(self):
        """Best-effort hardware stop: belt, compactor, gate, diverter home"""
        self.logger.warning("Safe stop requested")
        await self.belt('stop', critical=False)
        await self.compactor('stop', critical=False)
        await self.best_effort('close_gate')
        if self.diverter.enabled:
            await self.best_effort('move_diverter', self.diverter.home)

    def bind_module(self, module_id: str):
        """Attach the device module ID to outgoing gateway requests"""
        self.gateway.bind_module(module_id)
        self.logger.info("Gateway bound to module %s", module_id)

    def get_stats(self) -> Dict:
        """Get dispatcher statistics"""
        return dict(self.stats)
