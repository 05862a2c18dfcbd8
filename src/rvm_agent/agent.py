#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
RVM Agent Runtime

Wires configuration, actuator gateway, dispatcher, timers, cycle
controller and event router, then runs one consumer per input channel
on a single asyncio event loop.

Usage:
    rvm-agent --config config.yaml
    python run_agent.py --config config.yaml --log-level DEBUG
"""

import asyncio
import logging
import os
import signal
import sys
from typing import List, Optional

from .core.classification import ClassificationGate
from .core.diverter import DiverterPolicy
from .core.dispatcher import CommandDispatcher
from .core.messages import ConnectionStatus, HealthReport, Publisher
from .core.router import EventRouter
from .core.state_machine import CycleController
from .core.watchdog import TimerSupervisor
from .core.weight import WeightNormalizer
from .utils.actuator_gateway import ActuatorGateway, HttpActuatorGateway
from .utils.channels import MqttBackendChannel, WebSocketDeviceChannel
from .utils.config import AgentConfig, load_config
from .utils.logger import setup_logger


class RvmAgent:
    """
    Reverse vending machine agent

    Inputs:
    - Device channel (WebSocket): sensor, photo and weight results
    - Backend channel (MQTT): session start/end and operator commands
    - Timers: debounce, session expiry, cycle watchdog
    """

    def __init__(self, config: AgentConfig, gateway: Optional[ActuatorGateway] = None,
                 publisher: Optional[Publisher] = None):
        """
        Initialize RVM Agent

        Args:
            config: Agent configuration
            gateway: Actuator gateway (HTTP middleware gateway by default)
            publisher: Outbound publisher (MQTT backend channel by default)
        """
        self.logger = logging.getLogger(__name__)
        self.config = config
        timing = config.timing

        self.device_queue: asyncio.Queue = asyncio.Queue()
        self.backend_queue: asyncio.Queue = asyncio.Queue()

        self.gateway = gateway or HttpActuatorGateway(
            base_url=config.middleware.base_url,
            timeout=config.middleware.timeout,
            gate_motor=config.motors.gate_id,
            gate_open=config.motors.gate_modes['open'],
            gate_close=config.motors.gate_modes['close'],
            diverter_module=config.diverter.module_id,
        )

        self.backend: Optional[MqttBackendChannel] = None
        if publisher is None:
            self.backend = MqttBackendChannel(config.mqtt, config.device_id, config.topic_prefix,
                                              self.backend_queue,
                                              reconnect_delay=config.middleware.reconnect_delay)
            publisher = self.backend
        self.publisher = publisher

        diverter = DiverterPolicy(config.diverter.category_positions(),
                                  home=config.diverter.home, enabled=config.diverter.enabled)
        self.dispatcher = CommandDispatcher(self.gateway, config.motors, diverter,
                                            timeout=timing.command_timeout,
                                            retry_backoff=timing.retry_backoff)
        self.timers = TimerSupervisor()
        self.controller = CycleController(
            self.dispatcher, self.timers, self.publisher,
            gate=ClassificationGate(config.detection.category_thresholds()),
            weigher=WeightNormalizer(coefficient=config.weight.coefficient,
                                     max_attempts=config.weight.max_calibration_attempts,
                                     backoff=timing.calibration_backoff,
                                     reread_delay=timing.calibration_reread),
            diverter=diverter,
            timing=timing,
            min_valid_weight=config.detection.min_valid_weight,
            history_file=config.session.history_file,
        )
        self.router = EventRouter(self.controller)

        self.device = WebSocketDeviceChannel(config.middleware.ws_url, self.device_queue,
                                             reconnect_delay=config.middleware.reconnect_delay,
                                             on_connected=self._on_device_connected)

        self._tasks: List[asyncio.Task] = []
        self._stop_event: Optional[asyncio.Event] = None

    async def _on_device_connected(self):
        await self.dispatcher.best_effort('request_module_id')

    async def _consume_device(self):
        while True:
            raw = await self.device_queue.get()
            try:
                await self.router.route_device(raw)
            finally:
                self.device_queue.task_done()

    async def _consume_backend(self):
        while True:
            topic, payload = await self.backend_queue.get()
            try:
                await self.router.route_backend(topic, payload)
            finally:
                self.backend_queue.task_done()

    async def _heartbeat(self):
        interval = self.config.health.publish_interval
        while True:
            await asyncio.sleep(interval)
            self.publisher.publish(HealthReport(device_id=self.config.device_id,
                                                status=self.controller.get_status()))

    def request_stop(self):
        """Ask the run loop to shut down (signal handler)"""
        self.logger.info("Termination requested")
        if self._stop_event is not None:
            self._stop_event.set()

    async def run(self) -> int:
        """
        Run until a termination signal arrives

        Returns:
            Process exit code
        """
        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except NotImplementedError:
                # Windows event loops have no signal handler support
                pass

        await self.gateway.start()
        if self.backend is not None:
            self.backend.start()
        self.device.start()

        self._tasks = [
            loop.create_task(self._consume_device(), name='device-consumer'),
            loop.create_task(self._consume_backend(), name='backend-consumer'),
        ]
        if self.config.health.publish_interval > 0:
            self._tasks.append(loop.create_task(self._heartbeat(), name='heartbeat'))

        self.logger.info("RVM agent %s running", self.config.device_id)
        await self._stop_event.wait()
        await self.shutdown()
        return 0

    async def shutdown(self):
        """Publish offline, end any session, release channels"""
        self.logger.info("Shutting down RVM agent %s", self.config.device_id)
        self.publisher.publish(ConnectionStatus(device_id=self.config.device_id, status='offline'))

        try:
            await self.controller.shutdown('shutdown')
        except Exception as e:
            self.logger.error("Session shutdown failed: %s", e)

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        await self.timers.shutdown()
        await self.device.stop()
        if self.backend is not None:
            await self.backend.stop()
        await self.gateway.close()
        self.logger.info("RVM agent stopped")


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    import argparse

    parser = argparse.ArgumentParser(description='RVM Cycle/Session Agent')
    parser.add_argument(
        '--config',
        default='config.yaml',
        help='Path to configuration file'
    )
    parser.add_argument(
        '--log-level',
        help='Log level (overrides config; default: INFO)'
    )
    parser.add_argument(
        '--log-file',
        help='Optional log file (overrides config)'
    )

    args = parser.parse_args(argv)

    if not os.path.exists(args.config):
        print(f"Error: {args.config} not found")
        return 1

    config = load_config(args.config)
    setup_logger(level=args.log_level or config.logging.level,
                 log_file=args.log_file or config.logging.file)

    agent = RvmAgent(config)
    return asyncio.run(agent.run())


if __name__ == '__main__':
    sys.exit(main())
