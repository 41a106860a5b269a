"""Health aggregation across the downstream AI servers."""
import asyncio
import logging
from typing import Sequence

from models import HealthReport, ServerHealth
from proxy import ServiceClient

logger = logging.getLogger("story-relay.health")


class HealthAggregator:
    """Probes every downstream concurrently and merges the results.

    The relay itself is always reported as up: answering the request is proof
    of liveness. Each backend is reported independently. A probe that raises
    or overruns its own timeout counts as ``down``, so one slow backend costs
    at most its probe timeout and never the sum of all of them.
    """

    def __init__(self, clients: Sequence[ServiceClient]):
        self.clients = list(clients)

    async def _probe(self, client: ServiceClient) -> bool:
        try:
            return bool(await asyncio.wait_for(client.probe(), timeout=client.descriptor.probe_timeout))
        except Exception as e:
            logger.warning(f"{client.descriptor.name} probe did not complete: {e!r}")
            return False

    async def check(self) -> HealthReport:
        results = await asyncio.gather(*(self._probe(client) for client in self.clients))
        ai_servers = {
            client.descriptor.health_key: ServerHealth(status="up" if healthy else "down")
            for client, healthy in zip(self.clients, results)
        }
        logger.debug(f"Health check: {ai_servers}")
        return HealthReport(ai_servers=ai_servers)
