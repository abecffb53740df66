"""
Invest Gateway - Lifecycle Manager
==================================

What:  Startup gating, serving, signal-triggered shutdown and crash
       containment for the gateway process.

State machine:
    STARTING → PROBING → READY → STOPPING
                       ↘ ABORTED

Startup:
    1. Probe the data store (completes before any socket is bound).
    2. Unreachable, or the probe raised → log, ABORTED, exit code 1.
       No retry loop and no partial readiness.
    3. Reachable → build the app and the uvicorn server, bind, log the
       readiness summary, READY.

Shutdown:
    SIGTERM / SIGINT → log, stop accepting, exit 0 without waiting for
    in-flight requests to drain.

Crash containment:
    An exception escaping the main thread, a worker thread, or an asyncio
    task nobody awaited is logged and terminates the process with exit
    code 1.
"""

import asyncio
import enum
import logging
import os
import signal
import sys
import threading
from typing import Any, Callable, Dict, Mapping, Optional

import uvicorn

from invest_gateway.config import Settings, get_settings
from invest_gateway.database import DataStore
from invest_gateway.handlers import HandlerGroup
from invest_gateway.main import create_app, setup_logging

logger = logging.getLogger(__name__)

TERMINATION_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class LifecycleState(str, enum.Enum):
    STARTING = "starting"
    PROBING = "probing-dependency"
    READY = "ready"
    ABORTED = "aborted"
    STOPPING = "stopping"


class GatewayServer(uvicorn.Server):
    """
    uvicorn server that reports readiness to the lifecycle and exits on the
    first termination signal without draining connections.
    """

    def __init__(self, config: uvicorn.Config, lifecycle: "Lifecycle"):
        super().__init__(config)
        self.lifecycle = lifecycle

    async def startup(self, sockets=None) -> None:
        await super().startup(sockets=sockets)
        if self.started:
            self.lifecycle.mark_ready()

    def handle_exit(self, sig: int, frame) -> None:
        self.lifecycle.on_signal(sig)
        self.should_exit = True
        self.force_exit = True


class Lifecycle:
    """
    Drives one gateway process from probe to exit.

    Args:
        settings:       Configuration for the process.
        store:          Data store to probe; built from settings when omitted.
        handler_groups: Domain collaborators keyed by namespace name.
        server_factory: Builds the server once the probe passed (tests
                        substitute a fake and assert it is never called when
                        the probe fails).
        terminate:      Process exit used by crash containment.
    """

    def __init__(
        self,
        settings: Settings,
        store: Optional[DataStore] = None,
        handler_groups: Optional[Mapping[str, HandlerGroup]] = None,
        server_factory: Optional[Callable[["Lifecycle"], Any]] = None,
        terminate: Callable[[int], Any] = os._exit,
    ):
        self.settings = settings
        self.store = store or DataStore.from_settings(settings)
        self.handler_groups = handler_groups
        self.server_factory = server_factory or build_server
        self.terminate = terminate
        self.state = LifecycleState.STARTING

    # ── Startup ───────────────────────────────────────────────────────────

    async def probe(self) -> bool:
        """Single reachability probe; a raising probe counts as unreachable."""
        self.state = LifecycleState.PROBING
        logger.info("Testing data store connection...")
        try:
            return await self.store.ping()
        except Exception:
            logger.exception("Data store probe raised")
            return False

    async def run(self) -> int:
        """Probe, then serve until shutdown. Returns the process exit code."""
        if not await self.probe():
            self.state = LifecycleState.ABORTED
            logger.error("Data store connection failed, server startup aborted")
            await self.store.dispose()
            return 1

        self.install_crash_handlers(asyncio.get_running_loop())
        server = self.server_factory(self)
        try:
            await server.serve()
        finally:
            await self.store.dispose()
        return 0

    def mark_ready(self) -> None:
        self.state = LifecycleState.READY
        settings = self.settings
        logger.info("AI Investment Platform gateway started")
        logger.info("Server running on %s:%d", settings.host, settings.port)
        logger.info("Environment: %s", settings.environment)
        logger.info("Local URL: %s", settings.local_url)
        logger.info("API info: %s/api/info", settings.local_url)
        logger.info("Health check: %s/api/health", settings.local_url)
        logger.info("Server is ready to accept connections")

    # ── Shutdown ──────────────────────────────────────────────────────────

    def on_signal(self, sig: int) -> None:
        if self.state is LifecycleState.STOPPING:
            return
        self.state = LifecycleState.STOPPING
        logger.info("%s received, shutting down", signal.Signals(sig).name)

    def _exit_on_signal(self, sig: int, frame) -> None:
        self.on_signal(sig)
        raise SystemExit(0)

    def install_signal_handlers(self) -> None:
        """
        Process-level handlers for the termination signals.

        uvicorn replaces them while serving and re-raises the captured signal
        once it has stopped, which lands here and exits with status 0.
        """
        for sig in TERMINATION_SIGNALS:
            signal.signal(sig, self._exit_on_signal)

    # ── Crash containment ─────────────────────────────────────────────────

    def _fatal(self, description: str, exc: Optional[BaseException]) -> None:
        logger.critical("%s", description, exc_info=exc)
        self.terminate(1)

    def _excepthook(self, exc_type, exc, tb) -> None:
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc, tb)
            return
        self._fatal("Uncaught exception", exc)

    def _thread_excepthook(self, args: threading.ExceptHookArgs) -> None:
        # sys.exit() in a worker thread only ends that thread
        if issubclass(args.exc_type, SystemExit):
            return
        name = args.thread.name if args.thread else "unknown"
        self._fatal(f"Uncaught exception in thread {name}", args.exc_value)

    def _loop_exception_handler(
        self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]
    ) -> None:
        self._fatal(
            f"Unhandled asynchronous fault: {context.get('message', 'no message')}",
            context.get("exception"),
        )

    def install_crash_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        sys.excepthook = self._excepthook
        threading.excepthook = self._thread_excepthook
        if loop is not None:
            loop.set_exception_handler(self._loop_exception_handler)


def build_server(lifecycle: Lifecycle) -> GatewayServer:
    """Default server factory: the gateway app behind a uvicorn server."""
    settings = lifecycle.settings
    app = create_app(
        settings,
        store=lifecycle.store,
        handler_groups=lifecycle.handler_groups,
    )
    config = uvicorn.Config(
        app,
        host=settings.host,
        port=settings.port,
        log_config=None,
        server_header=False,
        proxy_headers=False,
    )
    return GatewayServer(config, lifecycle)


def main(
    settings: Optional[Settings] = None,
    handler_groups: Optional[Mapping[str, HandlerGroup]] = None,
) -> None:
    """Console entry point: `invest-gateway`."""
    settings = settings or get_settings()
    setup_logging(settings.log_level)
    lifecycle = Lifecycle(settings, handler_groups=handler_groups)
    lifecycle.install_signal_handlers()
    lifecycle.install_crash_handlers()
    sys.exit(asyncio.run(lifecycle.run()))
