"""
Transport Channels

WebSocket device channel (aiohttp) and MQTT backend channel (paho-mqtt).
Both feed raw messages into an asyncio queue consumed by the agent;
parsing happens in the event router.
"""

import asyncio
import json
import logging
from typing import Awaitable, Callable, Optional

import aiohttp
import paho.mqtt.client as mqtt

from ..core.messages import ConnectionStatus, OutboundMessage, Publisher

INBOUND_TOPICS = ('commands', 'qr/scanned', 'guest/start')


class WebSocketDeviceChannel:
    """
    Device/sensor channel over the middleware WebSocket

    Text frames are queued as-is. On disconnect the channel waits
    `reconnect_delay` seconds and reconnects.
    """

    def __init__(self, url: str, queue: asyncio.Queue, reconnect_delay: float = 5.0,
                 on_connected: Optional[Callable[[], Awaitable]] = None):
        """
        Initialize WebSocket Device Channel

        Args:
            url: WebSocket URL
            queue: Device event queue
            reconnect_delay: Fixed delay between connection attempts (seconds)
            on_connected: Coroutine function run after each connect
        """
        self.logger = logging.getLogger(__name__)
        self.url = url
        self.queue = queue
        self.reconnect_delay = reconnect_delay
        self.on_connected = on_connected

        self.connected = False
        self.messages_received = 0
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def start(self):
        if self._running:
            self.logger.warning("Device channel already running")
            return
        self._running = True
        self._task = asyncio.get_running_loop().create_task(self._run(), name='device-channel')

    async def _run(self):
        while self._running:
            try:
                async with aiohttp.ClientSession() as session:
                    async with session.ws_connect(self.url, heartbeat=30) as ws:
                        self.connected = True
                        self.logger.info("Device channel connected: %s", self.url)
                        if self.on_connected is not None:
                            await self.on_connected()
                        await self._receive(ws)
            except asyncio.CancelledError:
                raise
            except (aiohttp.ClientError, OSError) as e:
                self.logger.warning("[E302] Device channel error: %s", e)
            finally:
                self.connected = False

            if self._running:
                self.logger.info("Reconnecting device channel in %.0fs", self.reconnect_delay)
                await asyncio.sleep(self.reconnect_delay)

    async def _receive(self, ws):
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                self.messages_received += 1
                self.queue.put_nowait(msg.data)
            elif msg.type == aiohttp.WSMsgType.BINARY:
                self.messages_received += 1
                self.queue.put_nowait(msg.data.decode('utf-8', errors='replace'))
            elif msg.type == aiohttp.WSMsgType.ERROR:
                self.logger.warning("Device channel frame error: %s", ws.exception())
                break
        self.logger.warning("[E302] Device channel closed")

    async def stop(self):
        self._running = False
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        self.logger.info("Device channel stopped (%d messages)", self.messages_received)


class MqttBackendChannel(Publisher):
    """
    Backend channel over MQTT

    Features:
    - paho network loop in its own thread (loop_start)
    - Inbound messages handed to the asyncio queue thread-safely
    - Retained online/offline status with an `offline` last will
    """

    def __init__(self, config, device_id: str, topic_prefix: str, queue: asyncio.Queue,
                 loop: Optional[asyncio.AbstractEventLoop] = None, reconnect_delay: float = 5.0):
        """
        Initialize MQTT Backend Channel

        Args:
            config: MqttConfig
            device_id: Machine ID reported in status messages
            topic_prefix: Topic prefix, e.g. rvm/RVM-3101
            queue: Backend event queue receiving (topic, payload) tuples
            loop: Event loop owning the queue
            reconnect_delay: Fixed reconnect delay (seconds)
        """
        self.logger = logging.getLogger(__name__)
        self.config = config
        self.device_id = device_id
        self.topic_prefix = topic_prefix.rstrip('/')
        self.queue = queue
        self.loop = loop
        self.published = 0
        self._last_info = None

        self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2,
                                  client_id=f"rvm-agent-{device_id}")
        if config.username:
            self.client.username_pw_set(config.username, config.password)
        if config.tls:
            self.client.tls_set(ca_certs=config.ca_file)

        offline = ConnectionStatus(device_id=device_id, status='offline')
        self.client.will_set(self.topic(offline.topic), json.dumps(offline.to_payload()),
                             qos=1, retain=True)
        self.client.reconnect_delay_set(min_delay=max(int(reconnect_delay), 1),
                                        max_delay=max(int(reconnect_delay), 1))

        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_message = self._on_message

    def topic(self, suffix: str) -> str:
        return f"{self.topic_prefix}/{suffix}"

    def start(self):
        """Connect in the background; paho retries until the broker answers"""
        if self.loop is None:
            self.loop = asyncio.get_running_loop()
        self.client.connect_async(self.config.host, self.config.port, self.config.keepalive)
        self.client.loop_start()
        self.logger.info("Connecting to MQTT broker %s:%s", self.config.host, self.config.port)

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code.is_failure:
            self.logger.error("[E301] MQTT connection refused: %s", reason_code)
            return

        for suffix in INBOUND_TOPICS:
            client.subscribe(self.topic(suffix), qos=1)
        self.publish(ConnectionStatus(device_id=self.device_id, status='online'))
        self.logger.info("MQTT connected, subscribed under %s/", self.topic_prefix)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code.is_failure:
            self.logger.warning("[E301] MQTT disconnected: %s", reason_code)
        else:
            self.logger.info("MQTT disconnected")

    def _on_message(self, client, userdata, msg):
        # paho network thread: hand over to the event loop
        self.loop.call_soon_threadsafe(self.queue.put_nowait, (msg.topic, msg.payload))

    def publish(self, message: OutboundMessage) -> None:
        info = self.client.publish(self.topic(message.topic),
                                   json.dumps(message.to_payload(), ensure_ascii=False),
                                   qos=1, retain=message.retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            self.logger.warning("Publish to %s not queued (rc=%s)", message.topic, info.rc)
            return
        self.published += 1
        self._last_info = info

    async def stop(self):
        """Flush the last queued message, then disconnect"""
        if self.client.is_connected() and self._last_info is not None:
            try:
                await asyncio.get_running_loop().run_in_executor(
                    None, self._last_info.wait_for_publish, 2.0)
            except (ValueError, RuntimeError) as e:
                self.logger.warning("Pending messages not delivered: %s", e)

        self.client.disconnect()
        self.client.loop_stop()
        self.logger.info("MQTT channel stopped (%d messages published)", self.published)
