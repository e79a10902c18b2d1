"""
gitwatch Triggers

Everything that can start a cycle or stop the engine:
- ScheduleTrigger: submit a run request every D
- WebhookTrigger: submit a run request on every HTTP request
- OnceTrigger: submit one request at startup, then exit with its outcome
- SignalListener: turn SIGINT/SIGTERM into shutdown requests

Triggers only ever talk to the engine through submit() and
request_shutdown(), so none of them wait for a cycle to finish.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import socket
from typing import Any, Optional, Protocol

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import PlainTextResponse
from starlette.routing import Route

from gitwatch import context as ctx
from gitwatch.context import CycleOutcome, RunRequest, TriggerOrigin
from gitwatch.duration import format_duration
from gitwatch.errors import ConfigError, ShutdownRequested, TriggerError

logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class Engine(Protocol):
    """What triggers need from the orchestrator."""

    def submit(self, request: RunRequest) -> asyncio.Future[CycleOutcome]:
        ...

    def request_shutdown(self, force: bool = False, exit_code: Optional[int] = None) -> None:
        ...


class Trigger:
    """Base class for trigger sources."""

    name = "trigger"

    async def start(self, engine: Engine) -> None:
        raise NotImplementedError

    async def stop(self) -> None:
        raise NotImplementedError


# ============================================================================
# Schedule
# ============================================================================


class ScheduleTrigger(Trigger):
    """
    Submits a run request right away, then every `delay` seconds.

    The interval does not depend on how long cycles take, requests that
    arrive during a cycle are coalesced by the engine.
    """

    name = "schedule"

    def __init__(self, delay: float):
        self.delay = delay
        self._task: Optional[asyncio.Task] = None

    @property
    def enabled(self) -> bool:
        return self.delay > 0

    async def start(self, engine: Engine) -> None:
        if not self.enabled:
            logger.debug("Schedule disabled")
            return

        logger.info(f"Starting schedule in every {format_duration(self.delay)}")
        self._task = asyncio.create_task(self._run(engine))

    async def _run(self, engine: Engine) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while True:
            engine.submit(RunRequest(
                TriggerOrigin.SCHEDULE,
                trigger_context={ctx.SCHEDULE_DELAY: format_duration(self.delay)},
            ))
            next_tick += self.delay
            await asyncio.sleep(max(0.0, next_tick - loop.time()))

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None


# ============================================================================
# Webhook
# ============================================================================


def parse_address(address: str) -> tuple[str, int]:
    """
    Parse host:port (or :port, or a bare port) for the webhook listener.

    Raises:
        ConfigError: If the port is missing or invalid.
    """
    text = str(address).strip()
    host, sep, port = text.rpartition(":")
    if not sep:
        host, port = "", text
    host = host.strip("[]") or "0.0.0.0"

    try:
        number = int(port)
    except ValueError:
        raise ConfigError(f"Invalid HTTP address {address!r}, use e.g. 0.0.0.0:1234")
    if not 0 <= number <= 65535:
        raise ConfigError(f"Invalid HTTP port {number}")

    return host, number


class WebhookEndpoint:
    """ASGI endpoint that accepts any method on any path."""

    def __init__(self, engine: Engine):
        self.engine = engine

    async def __call__(self, scope, receive, send) -> None:
        request = Request(scope, receive)
        url = request.url.path
        if request.url.query:
            url = f"{url}?{request.url.query}"

        logger.info(f"Received request on {request.method} {url}")
        self.engine.submit(RunRequest(
            TriggerOrigin.WEBHOOK,
            trigger_context={
                ctx.HTTP_METHOD: request.method,
                ctx.HTTP_URL: url,
            },
        ))

        response = PlainTextResponse("OK")
        await response(scope, receive, send)


class _Server(uvicorn.Server):
    """uvicorn server that leaves signal handling to the SignalListener."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class WebhookTrigger(Trigger):
    """
    Minimal HTTP server, every request triggers a check.

    Answers 200 "OK" right after submitting, the response never waits
    for the cycle.
    """

    name = "webhook"

    def __init__(self, address: str):
        self.host, self.port = parse_address(address)
        self._server: Optional[_Server] = None
        self._server_task: Optional[asyncio.Task] = None
        self._socket: Optional[socket.socket] = None

    def create_app(self, engine: Engine) -> Starlette:
        """Create the Starlette ASGI application."""
        routes = [
            Route("/{path:path}", WebhookEndpoint(engine)),
        ]
        return Starlette(routes=routes)

    def _bind(self) -> socket.socket:
        family = socket.AF_INET6 if ":" in self.host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self.port))
        except OSError as e:
            sock.close()
            raise TriggerError(f"Cannot start server on {self.host}:{self.port}: {e}")
        sock.set_inheritable(True)
        return sock

    async def start(self, engine: Engine) -> None:
        """
        Start listening in a background task.

        Raises:
            TriggerError: If the address cannot be bound.
        """
        self._socket = self._bind()
        # Report the real port when binding to port 0
        self.port = self._socket.getsockname()[1]

        config = uvicorn.Config(
            self.create_app(engine),
            log_level="warning",
            log_config=None,
            lifespan="off",
        )
        self._server = _Server(config)
        self._server_task = asyncio.create_task(self._server.serve(sockets=[self._socket]))

        while not self._server.started and not self._server_task.done():
            await asyncio.sleep(0.01)

        if self._server_task.done():
            error = self._server_task.exception()
            raise TriggerError(f"Cannot start server on {self.host}:{self.port}: {error}")

        logger.info(f"Listening on {self.host}:{self.port}...")

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self._server:
            self._server.should_exit = True

            if self._server_task:
                try:
                    await asyncio.wait_for(self._server_task, timeout=5.0)
                except asyncio.TimeoutError:
                    logger.warning("Webhook server shutdown timed out")
                    self._server_task.cancel()
                    try:
                        await self._server_task
                    except asyncio.CancelledError:
                        pass

            self._server = None
            self._server_task = None
            logger.debug("Webhook server stopped")

        if self._socket:
            self._socket.close()
            self._socket = None


# ============================================================================
# Once
# ============================================================================


class OnceTrigger(Trigger):
    """Runs a single check at startup, then asks the engine to exit."""

    name = "once"

    def __init__(self):
        self._task: Optional[asyncio.Task] = None
        self.outcome: Optional[CycleOutcome] = None

    async def start(self, engine: Engine) -> None:
        self._task = asyncio.create_task(self._run(engine))

    async def _run(self, engine: Engine) -> None:
        future = engine.submit(RunRequest(TriggerOrigin.STARTUP))
        try:
            self.outcome = await future
        except ShutdownRequested:
            logger.debug("Shutdown before the startup check finished")
            return

        logger.debug(f"Startup check {self.outcome}, exiting")
        engine.request_shutdown(exit_code=self.outcome.exit_code)

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None


# ============================================================================
# Signals
# ============================================================================


class SignalListener:
    """
    SIGINT/SIGTERM become shutdown requests.

    The first one asks for a graceful shutdown, the second one forces it.
    Inert where the event loop cannot install signal handlers.
    """

    def __init__(self, signals: tuple[Any, ...] = SHUTDOWN_SIGNALS):
        self.signals = signals
        self.received = 0
        self._engine: Optional[Engine] = None
        self._installed: list[Any] = []

    def start(self, engine: Engine) -> None:
        self._engine = engine
        loop = asyncio.get_running_loop()

        for sig in self.signals:
            try:
                loop.add_signal_handler(sig, self.handle, sig)
            except (NotImplementedError, RuntimeError) as e:
                logger.debug(f"Cannot handle {sig!r} on this platform: {e}")
                continue
            self._installed.append(sig)

    def handle(self, sig: int) -> None:
        """Handle a shutdown signal."""
        self.received += 1
        name = signal.Signals(sig).name

        if self.received == 1:
            logger.info(f"Received {name}, shutting down gracefully...")
            self._engine.request_shutdown()
        else:
            logger.warning(f"Received {name} again, terminating immediately")
            self._engine.request_shutdown(force=True)

    def stop(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._installed:
            loop.remove_signal_handler(sig)
        self._installed = []
