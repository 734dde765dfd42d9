"""RelayService: wires up collaborators and runs the polling timer and ops server."""

from __future__ import annotations

import asyncio
import signal
import time
from typing import Any

import structlog
import uvicorn

from .composer import MessageComposer
from .config import RelayConfig
from .discord_sink import DiscordSink
from .forms_client import GoogleFormsClient
from .interface import FormSource, MessageSink
from .ledger import LedgerStore
from .logging import setup_logging
from .models import PassSummary, RelayStatus
from .ops import create_ops_app
from .reconciler import Reconciler

logger = structlog.get_logger()


class RelayService:
    """Long-running relay process.

    ``run()`` acquires source credentials (failure is fatal), starts the
    sink, loads the ledger and then runs concurrently via
    :class:`asyncio.TaskGroup`:

    * the timer loop, one reconciliation pass per interval
    * the FastAPI ops server (health probes and ``POST /check``)

    Collaborators default to the Google Forms client, the Discord sink and
    a file ledger built from *config*; tests inject fakes.
    """

    def __init__(
        self,
        config: RelayConfig,
        *,
        source_api: FormSource | None = None,
        sink: MessageSink | None = None,
        ledger: LedgerStore | None = None,
    ) -> None:
        self.config = config
        self.status: RelayStatus = RelayStatus.STARTING
        self.start_time: float = time.monotonic()

        self._source_api = source_api or GoogleFormsClient(config.forms, config.retry)
        self._sink = sink or DiscordSink(config.discord, config.retry)
        self._ledger = ledger or LedgerStore(config.ledger.path)
        self.reconciler = Reconciler(
            config.source_list,
            self._source_api,
            self._sink,
            self._ledger,
            MessageComposer(config.composer),
            require_reference_url=config.require_reference_url,
        )
        self._shutdown_event = asyncio.Event()

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    async def check_now(self) -> PassSummary:
        """Run one unscheduled pass; the timer schedule is left untouched."""
        return await self.reconciler.run_pass(trigger="manual")

    async def _run_timer_loop(self) -> None:
        """Pass, sleep for the interval (or until shutdown), repeat."""
        interval = self.config.check_interval_seconds
        logger.info("timer_loop_started", interval_seconds=interval)
        self.status = RelayStatus.RUNNING

        while not self._shutdown_event.is_set():
            try:
                await self.reconciler.run_pass(trigger="scheduled")
                self.status = RelayStatus.RUNNING
            except Exception:
                self.status = RelayStatus.DEGRADED
                logger.exception("pass_failed")

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
            except TimeoutError:
                pass

        logger.info("timer_loop_stopped")

    def health_details(self) -> dict[str, Any]:
        last = self.reconciler.last_pass
        return {
            "sources": [source.source_id for source in self.reconciler.sources],
            "ledger_path": str(self._ledger.path),
            "records_tracked": len(self._ledger.ledger),
            "passes_completed": self.reconciler.passes_completed,
            "records_delivered": self.reconciler.records_delivered,
            "pass_running": self.reconciler.busy,
            "last_pass_finished_at": (
                last.finished_at.isoformat() if last and last.finished_at else None
            ),
        }

    # ------------------------------------------------------------------
    # Ops server
    # ------------------------------------------------------------------

    async def _run_ops_server(self) -> None:
        app = create_ops_app(self)
        config = uvicorn.Config(
            app,
            host=self.config.health_host,
            port=self.config.health_port,
            log_level="warning",
        )
        server = uvicorn.Server(config)

        serve_task = asyncio.create_task(server.serve())
        await self._shutdown_event.wait()
        server.should_exit = True
        await serve_task

    # ------------------------------------------------------------------
    # Signal handling
    # ------------------------------------------------------------------

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()

        def _handle(sig: signal.Signals) -> None:
            logger.info("shutdown_signal_received", signal=sig.name)
            self._shutdown_event.set()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, _handle, sig)

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Start everything and run until shutdown.

        Raises :class:`formrelay.errors.AuthorizationError` if the source
        API cannot be authorized; nothing else escapes.
        """
        setup_logging(
            json=self.config.log_json,
            level=self.config.log_level,
            log_file=self.config.log_file,
            log_error_file=self.config.log_error_file,
        )
        self._install_signal_handlers()
        self.start_time = time.monotonic()
        logger.info(
            "relay_starting",
            relay=self.config.name,
            sources={
                source.source_id: source.destination.display_name or source.destination.channel_id
                for source in self.reconciler.sources
            },
        )

        await self._source_api.start()

        try:
            await self._sink.start()
            await self._ledger.load()
            async with asyncio.TaskGroup() as tg:
                tg.create_task(self._run_timer_loop())
                tg.create_task(self._run_ops_server())
        except* Exception:
            logger.exception("relay_task_group_error", relay=self.config.name)
        finally:
            self.status = RelayStatus.STOPPING
            await self._sink.stop()
            await self._source_api.stop()
            self.status = RelayStatus.STOPPED
            logger.info("relay_stopped", relay=self.config.name)
