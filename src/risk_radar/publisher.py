"""MQTT state publisher.

Once a cascade has returned, the resulting machine, line and factory states
are published as retained JSON, one topic per entity:

    {prefix}/{factory_id}/{line_id}/{machine_id}/_state
    {prefix}/{factory_id}/{line_id}/_state
    {prefix}/{factory_id}/_state

Publishing is synchronous and runs in the caller's thread: connect, send
every message, wait for the acknowledgements, disconnect. A broker failure is
raised as ``DependencyFailure``; the cascade result it was built from is
already final at that point.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Union

import paho.mqtt.publish as mqtt_publish
from paho.mqtt import MQTTException

from .config import MQTTConfig
from .errors import DependencyFailure
from .models import CascadeResult, LineState, MachineState, ResetResult, format_timestamp, utc_now

logger = logging.getLogger(__name__)


@dataclass
class Message:
    """MQTT message to be published."""

    topic: str
    payload: Dict[str, Any]
    retain: bool = True
    qos: int = 1

    def to_mqtt(self) -> Dict[str, Any]:
        return {
            "topic": self.topic,
            "payload": json.dumps(self.payload),
            "qos": self.qos,
            "retain": self.retain,
        }


class StatePublisher:
    """Publishes factory state changes to an MQTT broker."""

    def __init__(self, mqtt_config: MQTTConfig, factory_id: str, dry_run: bool = False):
        self.mqtt_config = mqtt_config
        self.factory_id = factory_id
        self.dry_run = dry_run

    @property
    def base_topic(self) -> str:
        return f"{self.mqtt_config.topic_prefix}/{self.factory_id}"

    # --- Topics ---

    def machine_topic(self, machine: MachineState) -> str:
        return f"{self.base_topic}/{machine.line_id}/{machine.machine_id}/_state"

    def line_topic(self, line: LineState) -> str:
        return f"{self.base_topic}/{line.line_id}/_state"

    def factory_topic(self) -> str:
        return f"{self.base_topic}/_state"

    # --- Messages ---

    def messages_for(self, result: Union[CascadeResult, ResetResult]) -> List[Message]:
        """State messages for a cascade (machine, line, factory) or a reset
        (every restored machine, every line, the factory)."""
        timestamp = format_timestamp(utc_now())
        if isinstance(result, CascadeResult):
            machines, lines = [result.machine], [result.line]
        else:
            machines, lines = result.machines, result.lines

        messages = [self._message(self.machine_topic(m), m.to_dict(), timestamp) for m in machines]
        messages += [self._message(self.line_topic(l), l.to_dict(), timestamp) for l in lines]
        messages.append(self._message(self.factory_topic(), result.factory.to_dict(), timestamp))
        return messages

    def _message(self, topic: str, state: Dict[str, Any], timestamp: str) -> Message:
        return Message(topic=topic, payload={**state, "timestamp": timestamp}, qos=self.mqtt_config.qos)

    # --- Publishing ---

    def publish(self, messages: List[Message]) -> int:
        """Send messages and wait until the broker has them. Returns the count."""
        if not messages:
            return 0

        if self.dry_run:
            for msg in messages:
                logger.info(f"[DRY RUN] {msg.topic}: {json.dumps(msg.payload)[:100]}")
            return len(messages)

        auth = None
        if self.mqtt_config.username:
            auth = {"username": self.mqtt_config.username, "password": self.mqtt_config.password}

        logger.info(
            f"Publishing {len(messages)} messages to "
            f"{self.mqtt_config.broker}:{self.mqtt_config.port}"
        )
        try:
            mqtt_publish.multiple(
                [msg.to_mqtt() for msg in messages],
                hostname=self.mqtt_config.broker,
                port=self.mqtt_config.port,
                client_id=self.mqtt_config.client_id,
                auth=auth,
            )
        except (OSError, MQTTException) as e:
            logger.error(f"Failed to publish state: {e}")
            raise DependencyFailure("publish state", e) from e
        return len(messages)

    def publish_result(self, result: Union[CascadeResult, ResetResult]) -> int:
        return self.publish(self.messages_for(result))
