"""
MQTT message bus - mirrors mixer state and accepts remote commands.

Topics (base topic "dev/midi-to-xr18" by default):
    {base}{address}        state publications, JSON {type, value, raw_value}
                           and inbound state (JSON with "value" or a bare value)
    {base}{address}/set    commands: mixer JSON {address, args} forwarded
                           verbatim, or a bare value for {address}

Example:
    dev/midi-to-xr18/ch/01/mix/fader      {"type": "f", "value": 0.378, "raw_value": 64}
    dev/midi-to-xr18/ch/01/mix/on/set     {"address": "/ch/01/mix/on", "args": [{"type": "i", "value": 0}]}
"""

import json
import threading
from typing import Any, Callable, Iterable, List, Optional
from urllib.parse import urlparse

import paho.mqtt.client as mqtt

from mixbridge.log import get_logger

logger = get_logger(__name__)

DEFAULT_URL = "tcp://localhost:1883"
DEFAULT_BASE_TOPIC = "dev/midi-to-xr18"
DEFAULT_CLIENT_ID = "mixbridge"
DEFAULT_PORT = 1883

SET_SUFFIX = "/set"


# ============================================================================
# TOPICS
# ============================================================================

def state_topic(base_topic: str, address: str) -> str:
    return f"{base_topic}{address}"


def set_topic(base_topic: str, address: str) -> str:
    return f"{base_topic}{address}{SET_SUFFIX}"


def is_set_topic(topic: str) -> bool:
    return bool(topic) and topic.endswith(SET_SUFFIX)


def address_from_topic(base_topic: str, topic: str) -> Optional[str]:
    """Mixer address encoded in a state or set topic, or None if foreign.

    Examples:
        >>> address_from_topic("dev/x", "dev/x/ch/01/mix/on/set")
        '/ch/01/mix/on'
        >>> address_from_topic("dev/x", "other/ch/01") is None
        True
    """
    if not topic.startswith(base_topic):
        return None
    address = topic[len(base_topic):]
    if address.endswith(SET_SUFFIX):
        address = address[:-len(SET_SUFFIX)]
    if not address.startswith('/'):
        return None
    return address


def subscription_topics(base_topic: str, control_targets: Iterable[str],
                        feedback_addresses: Iterable[str]) -> List[str]:
    """Topics to subscribe: /set for every control target, state for feedback."""
    topics = [set_topic(base_topic, address) for address in control_targets]
    topics += [state_topic(base_topic, address) for address in feedback_addresses]
    return topics


def state_payload(value_type: str, value: Any, raw_value: Any) -> str:
    """JSON publication for a state change."""
    return json.dumps({"type": value_type, "value": value, "raw_value": raw_value})


def parse_broker_url(url: str):
    """Split tcp://host:port (or mqtt://) into (host, port).

    Raises:
        ValueError: If no host is present
    """
    parsed = urlparse(url if "://" in url else f"tcp://{url}")
    if not parsed.hostname:
        raise ValueError(f"Invalid MQTT URL: {url}")
    return parsed.hostname, parsed.port or DEFAULT_PORT


# ============================================================================
# CLIENT
# ============================================================================

class MessageBus:
    """paho-mqtt client wrapper.

    Subscriptions are (re)made on every connect so they survive broker
    reconnects. Inbound messages are passed to on_message(topic, payload_str).

    Args:
        url: Broker URL, e.g. tcp://localhost:1883
        base_topic: Prefix of every topic
        topics: Topics to subscribe on connect
        on_message: Inbound message handler
        client_id: MQTT client id
    """

    def __init__(self, url: str = DEFAULT_URL, base_topic: str = DEFAULT_BASE_TOPIC,
                 topics: Iterable[str] = (),
                 on_message: Optional[Callable[[str, str], None]] = None,
                 client_id: str = DEFAULT_CLIENT_ID):
        self.url = url
        self.host, self.port = parse_broker_url(url)
        self.base_topic = base_topic
        self.topics = list(topics)
        self.on_message = on_message
        self.connected = threading.Event()

        self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id)
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_message = self._on_message

    def start(self) -> None:
        """Connect asynchronously and start the network thread.

        Raises:
            OSError: If the broker host cannot be resolved
        """
        logger.info(f"Connecting to MQTT broker {self.host}:{self.port}")
        self.client.connect_async(self.host, self.port)
        self.client.loop_start()

    def stop(self) -> None:
        self.client.disconnect()
        self.client.loop_stop()

    def publish(self, address: str, payload: str) -> None:
        """Publish payload on the state topic of address.

        Raises:
            OSError: If the client rejects the publish
        """
        topic = state_topic(self.base_topic, address)
        info = self.client.publish(topic, payload)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise OSError(f"MQTT publish to {topic} failed: {mqtt.error_string(info.rc)}")

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code.is_failure:
            logger.warning(f"MQTT connect refused: {reason_code}")
            return

        logger.info("MQTT connected")
        self.connected.set()
        for topic in self.topics:
            logger.debug(f"Subscribing to MQTT topic: \"{topic}\"")
            result, _ = client.subscribe(topic)
            if result != mqtt.MQTT_ERR_SUCCESS:
                logger.warning(f"Failed to subscribe on MQTT topic '{topic}': {mqtt.error_string(result)}")
        logger.info(f"Subscribed to {len(self.topics)} MQTT topics")

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        self.connected.clear()
        logger.warning(f"MQTT disconnected: {reason_code}")

    def _on_message(self, client, userdata, message):
        payload = message.payload.decode('utf-8', errors='replace')
        logger.debug(f"Received message from \"{message.topic}\": {payload}")
        if self.on_message is None:
            return
        try:
            self.on_message(message.topic, payload)
        except Exception as e:
            logger.error(f"Bus message handler failed for {message.topic}: {e}")
