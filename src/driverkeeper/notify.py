"""Delivery of terminal driver notifications."""

from __future__ import annotations

from typing import Callable, Protocol

import httpx
from loguru import logger

from driverkeeper.models import DriverState, DriverStateChanged


class NotificationSink(Protocol):
    """Receives the one terminal notification for each driver."""

    def send(self, message: DriverStateChanged) -> None: ...


class LoggingSink:
    """Logs the outcome; useful on its own when running a single driver."""

    def send(self, message: DriverStateChanged) -> None:
        if message.state == DriverState.FINISHED:
            logger.info(f"Driver '{message.driver_id}' finished")
        elif message.state == DriverState.ERROR:
            logger.error(f"Driver '{message.driver_id}' errored: {message.exception}")
        else:
            logger.warning(f"Driver '{message.driver_id}' ended in state {message.state.value}")


class CallbackSink:
    """Adapts a plain callable to the sink interface."""

    def __init__(self, callback: Callable[[DriverStateChanged], None]):
        self._callback = callback

    def send(self, message: DriverStateChanged) -> None:
        self._callback(message)


class HttpSink:
    """POSTs the notification as JSON to the cluster manager.

    Fire-and-forget: delivery failures are logged, never raised. The POST
    runs on the caller's thread, so a slow endpoint holds the driver thread
    for at most ``timeout`` seconds before the runner reports completion.
    """

    def __init__(self, url: str, timeout: float = 10.0, token: str | None = None):
        self.url = url
        self.timeout = timeout
        self.token = token

    def send(self, message: DriverStateChanged) -> None:
        headers = {}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            response = httpx.post(
                self.url,
                json=message.model_dump(mode="json"),
                headers=headers,
                timeout=self.timeout,
            )
            if response.status_code >= 400:
                logger.warning(
                    f"Notification for driver '{message.driver_id}' rejected: HTTP {response.status_code}"
                )
        except httpx.HTTPError as e:
            logger.warning(f"Failed to deliver notification for driver '{message.driver_id}': {e}")


class CompositeSink:
    """Sends to several sinks; one failing sink does not stop the others."""

    def __init__(self, *sinks: NotificationSink):
        self.sinks = list(sinks)

    def send(self, message: DriverStateChanged) -> None:
        for sink in self.sinks:
            try:
                sink.send(message)
            except Exception as e:
                logger.warning(f"Notification sink {type(sink).__name__} failed: {e}")
