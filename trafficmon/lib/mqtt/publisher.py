import asyncio
import json
from dataclasses import dataclass

import paho.mqtt.client as mqtt
import structlog

from trafficmon.lib.constants import MQTT_BROKER, MQTT_KEEPALIVE_SECONDS, MQTT_PORT, MQTT_PUBLISH_TIMEOUT_SECONDS

log = structlog.get_logger(__name__)


@dataclass
class MQTTPublisherConfig:
    """
    Configuration for MQTTPublisher.
        - host/port/username/password: broker connection
        - publish_timeout: seconds to wait for each message to leave the client
        - dry_run: If True, messages are logged instead of being sent to the broker.
    """

    host: str = MQTT_BROKER
    port: int = MQTT_PORT
    username: str | None = None
    password: str | None = None
    client_id: str | None = None
    keepalive: int = MQTT_KEEPALIVE_SECONDS
    publish_timeout: float = MQTT_PUBLISH_TIMEOUT_SECONDS
    dry_run: bool = False


class MQTTPublisher:
    """
    At-most-once publisher (QoS 0). Failures are logged and reported as False, never raised:
    the next cycle republishes cumulative values anyway.
    """

    client: mqtt.Client | None
    config: MQTTPublisherConfig

    def __init__(self, config: MQTTPublisherConfig, client: mqtt.Client | None = None) -> None:
        self.config = config
        self.client = client
        self.published = 0
        self.failed = 0

        if config.dry_run:
            log.info("mqtt_dry_run", detail="messages will be logged, not sent")

    def _build_client(self) -> mqtt.Client:
        client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=self.config.client_id or "")
        if self.config.username:
            client.username_pw_set(self.config.username, self.config.password)
        return client

    async def connect(self) -> bool:
        if self.config.dry_run:
            return True

        if self.client is None:
            self.client = self._build_client()

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None, self.client.connect, self.config.host, self.config.port, self.config.keepalive
            )
        except (OSError, ValueError) as e:
            log.warning("mqtt_connect_failed", broker=self.config.host, port=self.config.port, error=str(e))
            return False

        self.client.loop_start()
        log.debug("mqtt_connected", broker=self.config.host, port=self.config.port)
        return True

    async def publish(self, topic: str, payload: dict, retain: bool = False) -> bool:
        body = json.dumps(payload, separators=(",", ":"))

        if self.config.dry_run:
            log.info("dry_run_publish", topic=topic, retain=retain, payload=body)
            self.published += 1
            return True

        if self.client is None:
            log.warning("mqtt_publish_failed", topic=topic, retain=retain, error="not connected")
            self.failed += 1
            return False

        try:
            info = self.client.publish(topic, body, qos=0, retain=retain)
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                raise RuntimeError(mqtt.error_string(info.rc))

            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, info.wait_for_publish, self.config.publish_timeout)
            if not info.is_published():
                raise TimeoutError(f"not acknowledged within {self.config.publish_timeout}s")
        except (RuntimeError, ValueError, OSError) as e:
            log.warning("mqtt_publish_failed", topic=topic, retain=retain, error=str(e) or type(e).__name__)
            self.failed += 1
            return False

        log.debug("mqtt_published", topic=topic, retain=retain, payload=body)
        self.published += 1
        return True

    async def close(self) -> None:
        if self.config.dry_run or self.client is None:
            return

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.client.disconnect)
        self.client.loop_stop()
