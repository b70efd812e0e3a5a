"""
MQTT protocol collaborator built on paho-mqtt.

paho runs its network loop on a background thread; every callback is handed
over to the asyncio event loop with call_soon_threadsafe so the ingestor, the
batcher and the topic store are only ever touched from the loop thread.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

import paho.mqtt.client as mqtt
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.properties import Properties
from paho.mqtt.subscribeoptions import SubscribeOptions

from topicscope.db.models import ConnectionProfile
from topicscope.ingest import Ingestor

logger = logging.getLogger(__name__)

STATUSES = {"disconnected", "connecting", "connected", "reconnecting", "error"}

_DEFAULT_PORTS = {
    "mqtt": 1883, "tcp": 1883,
    "mqtts": 8883, "ssl": 8883,
    "ws": 80, "wss": 443,
}


@dataclass
class SubscriptionSpec:
    filter: str                      # e.g. "#", "sensors/#"
    qos: int = 0
    no_local: bool = False
    retain_as_published: bool = False
    retain_handling: int = 0


@dataclass
class BrokerAddress:
    host: str
    port: int
    transport: str                   # tcp | websockets
    tls: bool
    path: str


def parse_broker_url(url: str) -> BrokerAddress:
    parsed = urlparse(url)
    scheme = parsed.scheme or "mqtt"
    if scheme not in _DEFAULT_PORTS:
        raise ValueError(f"Unsupported broker scheme '{scheme}'")
    if not parsed.hostname:
        raise ValueError(f"Broker URL '{url}' has no host")
    return BrokerAddress(
        host=parsed.hostname,
        port=parsed.port or _DEFAULT_PORTS[scheme],
        transport="websockets" if scheme in ("ws", "wss") else "tcp",
        tls=scheme in ("mqtts", "ssl", "wss"),
        path=parsed.path or "/mqtt",
    )


class MqttSession:
    """One broker connection feeding an Ingestor."""

    def __init__(self, ingestor: Ingestor, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self.ingestor = ingestor
        self.loop = loop
        self.status = "disconnected"
        self.last_error: Optional[str] = None
        self.subscriptions: list[SubscriptionSpec] = []
        self._client: Optional[mqtt.Client] = None

    def _set_status(self, status: str, error: Optional[str] = None) -> None:
        if status not in STATUSES:
            raise ValueError(f"Unknown connection status '{status}'")
        self.status = status
        if error is not None:
            self.last_error = error

    def _post(self, callback, *args) -> None:
        """Run callback on the event loop thread."""
        self.loop.call_soon_threadsafe(callback, *args)

    async def connect(
        self,
        profile: ConnectionProfile,
        subscriptions: Optional[list[SubscriptionSpec]] = None,
    ) -> None:
        if self._client is not None:
            self.disconnect()
        if self.loop is None:
            self.loop = asyncio.get_running_loop()

        self.subscriptions = subscriptions or [SubscriptionSpec(filter="#")]
        address = parse_broker_url(profile.url)

        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=profile.client_id or "",
            protocol=mqtt.MQTTv5,
            transport=address.transport,
        )
        if address.transport == "websockets":
            client.ws_set_options(path=address.path)
        if address.tls:
            client.tls_set()
        if profile.username:
            client.username_pw_set(profile.username, profile.password)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.on_subscribe = self._on_subscribe

        connect_props = None
        if profile.session_expiry:
            connect_props = Properties(PacketTypes.CONNECT)
            connect_props.SessionExpiryInterval = profile.session_expiry

        self._client = client
        self._set_status("connecting")
        self.last_error = None
        logger.info(f"Connecting to {address.host}:{address.port} ({address.transport}, tls={address.tls})")
        try:
            client.connect_async(
                address.host, address.port,
                keepalive=profile.keepalive,
                clean_start=profile.clean_start,
                properties=connect_props,
            )
            client.loop_start()
        except (OSError, ValueError) as e:
            logger.error(f"MQTT connection error: {type(e).__name__}: {e}")
            self._set_status("error", str(e))
            self._client = None
            raise

    def disconnect(self, flush_pending: bool = False) -> None:
        """Close the connection. Buffered messages are dropped unless flush_pending."""
        client = self._client
        self._client = None
        if client is not None:
            client.disconnect()
            client.loop_stop()
        if flush_pending:
            self.ingestor.flush()
        self.ingestor.disconnect()
        self._set_status("disconnected")
        logger.info("MQTT disconnected")

    # ── paho callbacks (network thread) ─────────────────────────────────────

    def _on_connect(self, client, userdata, flags, reason_code, properties) -> None:
        if reason_code.is_failure:
            logger.error(f"MQTT connect refused: {reason_code}")
            self._post(self._set_status, "error", str(reason_code))
            return
        logger.info("MQTT connected")
        self._post(self._set_status, "connected")
        topics = [
            (s.filter, SubscribeOptions(
                qos=s.qos,
                noLocal=s.no_local,
                retainAsPublished=s.retain_as_published,
                retainHandling=s.retain_handling,
            ))
            for s in self.subscriptions
        ]
        client.subscribe(topics)

    def _on_subscribe(self, client, userdata, mid, reason_codes, properties) -> None:
        failed = [str(rc) for rc in reason_codes if rc.is_failure]
        if failed:
            logger.error(f"Subscription error: {', '.join(failed)}")
            self._post(self._set_status, self.status, f"SUBSCRIPTION_ERROR: {', '.join(failed)}")
        else:
            logger.info(f"Subscribed: {[s.filter for s in self.subscriptions]}")

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties) -> None:
        if self._client is not client:
            return
        # Unexpected drop: paho's loop thread reconnects on its own
        logger.warning(f"MQTT connection lost ({reason_code}), reconnecting...")
        self._post(self._set_status, "reconnecting")

    def _on_message(self, client, userdata, msg) -> None:
        self._post(
            self._deliver, client,
            msg.topic, msg.payload, msg.qos, msg.retain, msg.dup,
            getattr(msg, "properties", None),
        )

    # ── event loop side ─────────────────────────────────────────────────────

    def _deliver(self, client, topic, payload, qos, retained, dup, properties) -> None:
        # Messages queued by a client that has since been disconnected are dropped
        if self._client is not client:
            return
        self.ingestor.receive(topic, payload, qos, retained, dup, properties)
