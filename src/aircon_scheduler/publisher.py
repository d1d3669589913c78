"""Power-command publishers.

The scheduling engine only depends on the :class:`Publisher` protocol.
:class:`MqttPublisher` is the production implementation: it publishes
``1``/``0`` to ``aircon/{device_id}/power`` as a retained message, so the
last commanded state survives a broker or device reconnect.
"""

from __future__ import annotations

import logging
from enum import StrEnum
from typing import Any, Protocol

import paho.mqtt.client as mqtt

from aircon_scheduler.config import MqttConfig

logger = logging.getLogger(__name__)


class PowerState(StrEnum):
    ON = "on"
    OFF = "off"

    @property
    def payload(self) -> str:
        return "1" if self is PowerState.ON else "0"


class PublishError(RuntimeError):
    """Raised when the broker client refuses a power command."""


class Publisher(Protocol):
    def publish(self, device_id: str, state: PowerState) -> None:
        """Hand a power command to the transport without blocking."""
        ...


class MqttPublisher:
    """Publishes retained power commands through paho-mqtt.

    ``publish`` only enqueues the message; paho's background network loop
    (started by :meth:`connect`) delivers it and reconnects on its own.
    """

    def __init__(self, config: MqttConfig, *, client: Any | None = None) -> None:
        self._config = config
        self._client = client or mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=config.client_id or "",
        )
        if config.username:
            self._client.username_pw_set(config.username, config.password)
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._started = False

    def topic_for(self, device_id: str) -> str:
        return self._config.topic_template.format(device_id=device_id)

    def connect(self) -> None:
        """Start connecting in the background; paho retries until it succeeds."""
        if self._started:
            return
        self._client.connect_async(
            self._config.host,
            self._config.port,
            keepalive=self._config.keepalive,
        )
        self._client.loop_start()
        self._started = True
        logger.info("MQTT connecting to %s:%s", self._config.host, self._config.port)

    def disconnect(self) -> None:
        if not self._started:
            return
        self._client.disconnect()
        self._client.loop_stop()
        self._started = False
        logger.info("Disconnected from MQTT server")

    def publish(self, device_id: str, state: PowerState) -> None:
        topic = self.topic_for(device_id)
        info = self._client.publish(
            topic,
            state.payload,
            qos=self._config.qos,
            retain=True,
        )
        if info.rc == mqtt.MQTT_ERR_NO_CONN and self._config.qos > 0:
            # paho keeps QoS>0 messages queued and sends them after reconnecting.
            logger.warning("MQTT offline, queued %s for %s", state.payload, topic)
            return
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise PublishError(
                f"MQTT publish to {topic} failed: {mqtt.error_string(info.rc)}"
            )
        logger.debug("Published %s to %s", state.payload, topic)

    # ------------------------------------------------------------------
    # paho callbacks (run on paho's network thread)
    # ------------------------------------------------------------------

    def _on_connect(self, client, userdata, flags, reason_code, properties) -> None:  # noqa: ARG002
        if reason_code.is_failure:
            logger.error("MQTT connection failed: %s", reason_code)
        else:
            logger.info("MQTT connected")

    def _on_disconnect(  # noqa: ARG002
        self, client, userdata, flags, reason_code, properties
    ) -> None:
        if reason_code.is_failure:
            logger.warning("MQTT offline, reconnecting: %s", reason_code)
        else:
            logger.info("MQTT disconnected")
