"""Publisher port and its aiomqtt implementation."""
from __future__ import annotations

import logging
from contextlib import AsyncExitStack
from enum import IntEnum
from typing import Callable, Optional, Protocol

from aiomqtt import Client, MqttError

from lhmmqtt.errors import ConnectFailure, PublishFailure

logger = logging.getLogger(__name__)


class DeliveryGuarantee(IntEnum):
    """MQTT quality-of-service levels."""

    AT_MOST_ONCE = 0
    AT_LEAST_ONCE = 1
    EXACTLY_ONCE = 2


class Publisher(Protocol):
    async def connect(self) -> None:
        ...

    async def disconnect(self) -> None:
        ...

    def is_connected(self) -> bool:
        ...

    async def publish(
        self,
        topic: str,
        payload: str,
        guarantee: DeliveryGuarantee,
        *,
        retain: bool = False,
    ) -> None:
        ...


class MqttPublisher:
    """One broker session per connect(); a reconnect builds a fresh aiomqtt client."""

    def __init__(
        self,
        hostname: str,
        port: int = 1883,
        *,
        username: Optional[str] = None,
        password: Optional[str] = None,
        identifier: Optional[str] = None,
        client_factory: Callable[..., Client] = Client,
    ) -> None:
        self.hostname = hostname
        self.port = port
        self._username = username
        self._password = password
        self._identifier = identifier
        self._client_factory = client_factory
        self._client: Client | None = None
        self._stack: AsyncExitStack | None = None
        self._connected = False
        self.last_error: Optional[str] = None

    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        if self._connected:
            return
        await self._close_session()
        logger.info("Connecting to MQTT broker %s:%s", self.hostname, self.port)
        client = self._client_factory(
            self.hostname,
            port=self.port,
            username=self._username,
            password=self._password,
            identifier=self._identifier,
        )
        stack = AsyncExitStack()
        try:
            await stack.enter_async_context(client)
        except MqttError as exc:
            self.last_error = str(exc)
            raise ConnectFailure(f"cannot connect to {self.hostname}:{self.port}: {exc}") from exc
        self._client = client
        self._stack = stack
        self._connected = True
        self.last_error = None
        logger.info("Connected to MQTT broker %s:%s", self.hostname, self.port)

    async def disconnect(self) -> None:
        if self._stack is None:
            return
        await self._close_session()
        logger.info("Disconnected from MQTT broker %s:%s", self.hostname, self.port)

    async def _close_session(self) -> None:
        stack, self._stack = self._stack, None
        self._client = None
        self._connected = False
        if stack is None:
            return
        try:
            await stack.aclose()
        except MqttError as exc:
            logger.warning("MQTT disconnect from %s:%s failed: %s", self.hostname, self.port, exc)

    async def publish(
        self,
        topic: str,
        payload: str,
        guarantee: DeliveryGuarantee,
        *,
        retain: bool = False,
    ) -> None:
        client = self._client
        if not self._connected or client is None:
            raise PublishFailure(topic, "not connected")
        try:
            await client.publish(topic, payload=payload, qos=int(guarantee), retain=retain)
        except MqttError as exc:
            self._connected = False
            self.last_error = str(exc)
            raise PublishFailure(topic, str(exc)) from exc
