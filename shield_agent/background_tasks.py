import asyncio
from datetime import datetime
from typing import List

import structlog

from .config import settings
from .error_handling import error_collector
from .monitoring import metrics_collector
from .orchestrator import agent
from .telemetry import log_event

logger = structlog.get_logger()

class BackgroundTaskManager:
    """Runs the periodic scan cycle and metrics reporting"""

    def __init__(self, scan_interval: int = None, metrics_interval: int = 3600):
        self.is_running = False
        self.tasks: List[asyncio.Task] = []
        self.scan_interval = scan_interval or settings.SCAN_INTERVAL_SECONDS
        self.metrics_interval = metrics_interval

    async def start(self):
        """Start all background tasks"""
        if self.is_running:
            logger.warning("Background tasks already running")
            return

        self.is_running = True
        logger.info("Starting background tasks", scan_interval_seconds=self.scan_interval)

        self.tasks.append(asyncio.create_task(self._scan_loop()))
        self.tasks.append(asyncio.create_task(self._metrics_report_loop()))

        await log_event("background_tasks_started", {
            "task_count": len(self.tasks),
            "interval_seconds": self.scan_interval
        })

    async def stop(self):
        """Stop all background tasks"""
        if not self.is_running:
            return

        logger.info("Stopping background tasks")
        self.is_running = False

        for task in self.tasks:
            task.cancel()

        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)

        self.tasks.clear()

        await log_event("background_tasks_stopped", {
            "stopped_at": datetime.utcnow().isoformat()
        })

    async def _scan_loop(self):
        """Scan cycle loop; a failed cycle is logged and the next one runs on schedule"""
        while self.is_running:
            try:
                if agent.scan_in_progress:
                    logger.info("Scan already in progress, skipping scheduled cycle")
                else:
                    summary = await agent.run_scan_cycle()
                    logger.info("Scheduled scan cycle finished", status=summary.status,
                                budget_used=summary.budget_used)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Error in scan loop", error=str(e))
                error_collector.record_error(e, {"task": "scan_loop"})
                metrics_collector.increment("scan_cycle_errors")
                await log_event("scan_cycle_error", {"error": str(e)}, "error")

            await asyncio.sleep(self.scan_interval)

    async def _metrics_report_loop(self):
        """Periodically log a snapshot of current metrics"""
        while self.is_running:
            await asyncio.sleep(self.metrics_interval)
            try:
                await log_event("metrics_snapshot", {
                    "metrics": metrics_collector.get_all_current_metrics(),
                    "errors": error_collector.get_error_summary(hours=1)["total_errors"]
                })
            except Exception as e:
                logger.error("Error reporting metrics", error=str(e))

# Global background task manager
background_task_manager = BackgroundTaskManager()
