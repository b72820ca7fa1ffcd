"""
Main entry point for the teller background service.
Runs payment ingestion, the provisioning worker, queue stats and the
heartbeat as independently scheduled tasks.
"""

import asyncio
import signal
from typing import Optional

import structlog

from teller.core.config import settings as default_settings, Settings
from teller.core.database import init_database, is_initialized, close_database
from teller.core.logging import setup_logging
from teller.models.health import AgentStatus
from teller.services.chain_client import ChainClient
from teller.services.health_service import HealthReporter
from teller.services.payment_ingestor import PaymentIngestor
from teller.services.provisioning_client import ProvisioningBackend, create_provisioning_backend
from teller.services.provisioning_worker import ProvisioningWorker
from teller.services.queue_service import PriorityQueue, get_priority_queue
from .clock import Clock, system_clock
from .task_scheduler import TaskScheduler

logger = structlog.get_logger(__name__)


class TellerService:
    """Coordinates the teller's background loops."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        chain_client=None,
        backend: Optional[ProvisioningBackend] = None,
        queue: Optional[PriorityQueue] = None,
        clock: Optional[Clock] = None
    ):
        self.settings = settings or default_settings
        self.clock = clock or system_clock
        self.chain_client = chain_client
        self.backend = backend
        self.queue = queue

        self._owns_chain_client = chain_client is None
        self._owns_backend = backend is None

        self.health = HealthReporter()
        self.ingestor: Optional[PaymentIngestor] = None
        self.worker: Optional[ProvisioningWorker] = None
        self.scheduler: Optional[TaskScheduler] = None

        self.running = False
        self._stop_task: Optional[asyncio.Task] = None
        self._last_error: Optional[str] = None

    async def initialize(self):
        """Initialize database, clients and scheduled tasks."""
        logger.info("Initializing teller service", agent=self.settings.agent_name)

        if not is_initialized():
            await init_database(self.settings.database_url)

        if self.chain_client is None:
            self.chain_client = ChainClient(self.settings)
            await self.chain_client.initialize()

        if self.backend is None:
            self.backend = create_provisioning_backend(self.settings)

        if self.queue is None:
            self.queue = get_priority_queue()

        self.ingestor = PaymentIngestor(self.chain_client, self.queue, self.settings)
        self.worker = ProvisioningWorker(self.queue, self.backend, self.clock, self.settings)

        self.scheduler = TaskScheduler(self.clock)
        self.scheduler.register_task(
            "payment_ingestion", self.ingestion_tick, self.settings.poll_interval_seconds
        )
        self.scheduler.register_task(
            "provisioning_worker", self.worker_tick, self.settings.worker_interval_seconds
        )
        self.scheduler.register_task(
            "queue_stats", self.stats_tick, self.settings.stats_interval_seconds
        )
        self.scheduler.register_task(
            "heartbeat", self.heartbeat_tick, self.settings.poll_interval_seconds
        )

        logger.info("Teller service initialized")

    async def ingestion_tick(self):
        results = await self.ingestor.poll()
        if self.ingestor.last_error:
            await self._report_error(self.ingestor.last_error)
        elif results:
            logger.info("New payments queued", count=len(results))

    async def worker_tick(self):
        outcome = await self.worker.process_next()
        if outcome is not None and not outcome.success:
            await self._report_error(f"Provisioning failed for {outcome.agent_id}: {outcome.error}")

    async def stats_tick(self):
        stats = await self.queue.stats()
        logger.info("Queue stats", **stats.to_dict())

    async def heartbeat_tick(self):
        if self._last_error is None:
            await self.health.report_status(self.settings.agent_name, AgentStatus.ONLINE)
        self._last_error = None

    async def _report_error(self, message: str):
        self._last_error = message
        await self.health.report_status(self.settings.agent_name, AgentStatus.ERROR, message)

    async def start(self):
        """Run the scheduled loops until stop() is called."""
        logger.info(
            "Starting teller service",
            poll_interval=self.settings.poll_interval_seconds,
            cooldown=self.settings.queue_cooldown_seconds,
        )
        self.running = True
        await self.health.report_status(self.settings.agent_name, AgentStatus.ONLINE)
        await self.scheduler.start()

    async def stop(self):
        """
        Stop scheduling, let the in-flight entry finish, then report offline.

        Repeated and concurrent calls all wait for the same shutdown.
        """
        if self._stop_task is None:
            self._stop_task = asyncio.ensure_future(self._shutdown())
        await asyncio.shield(self._stop_task)

    async def _shutdown(self):
        logger.info("Stopping teller service")

        if self.scheduler:
            self.scheduler.request_stop()
        if self.worker:
            await self.worker.shutdown()
        if self.scheduler:
            await self.scheduler.stop()

        if self._owns_chain_client and self.chain_client is not None:
            await self.chain_client.close()
        if self._owns_backend and self.backend is not None:
            await self.backend.close()

        await self.health.report_status(self.settings.agent_name, AgentStatus.OFFLINE)
        self.running = False
        logger.info("Teller service stopped")


async def main():
    """Main function to run the teller service."""
    setup_logging()
    default_settings.validate_required()

    service = TellerService()

    loop = asyncio.get_running_loop()

    def signal_handler(signum):
        logger.info("Received signal, shutting down", signal=signum)
        asyncio.create_task(service.stop())

    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, signal_handler, signum)

    try:
        await service.initialize()
        await service.start()
    except Exception as e:
        logger.error("Teller service failed", error=str(e))
        raise
    finally:
        await service.stop()
        await close_database()


if __name__ == "__main__":
    asyncio.run(main())
