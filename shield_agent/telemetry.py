from datetime import datetime
from typing import Dict

import httpx
import structlog

from .config import settings

logger = structlog.get_logger()

class EventSink:
    """Forwards structured agent events to the log sink service"""

    def __init__(self, sink_url: str = None, enabled: bool = None, transport: httpx.AsyncBaseTransport = None):
        self.sink_url = sink_url or settings.LOG_SINK_URL
        self.enabled = settings.ENABLE_LOG_SINK if enabled is None else enabled
        self.transport = transport

    async def log(self, event_type: str, data: Dict, level: str = "info"):
        """Send one structured event"""
        log_data = {
            "timestamp": datetime.utcnow().isoformat(),
            "service": "shield_agent",
            "event_type": event_type,
            "level": level,
            "data": data
        }

        try:
            async with httpx.AsyncClient(timeout=5.0, transport=self.transport) as client:
                response = await client.post(
                    f"{self.sink_url}/api/logs",
                    json=log_data,
                    headers={"Content-Type": "application/json"}
                )

            if response.status_code >= 400:
                logger.warning("Log sink rejected event", status_code=response.status_code,
                               event_type=event_type)

        except httpx.HTTPError as e:
            # Never fail the caller because the sink is down
            logger.warning("Error sending event to log sink", error=str(e), event_type=event_type)

# Global event sink instance
event_sink = EventSink()

async def log_event(event_type: str, data: Dict, level: str = "info"):
    """Log an agent event locally and forward it to the sink when enabled"""
    log_method = getattr(logger, level, logger.info)
    log_method(event_type, **data)

    if not event_sink.enabled:
        return

    await event_sink.log(event_type, data, level)
