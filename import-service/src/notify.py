# import-service/src/notify.py
import abc
from typing import Any, Dict

import httpx

from log import get_logger

logger = get_logger(__name__)


class Notifier(abc.ABC):
    @abc.abstractmethod
    async def notify(self, address: str, job_id: str, result_summary: Dict[str, Any]) -> None:
        raise NotImplementedError  # pragma: no cover


class LogNotifier(Notifier):
    """Used when no webhook is configured."""

    async def notify(self, address, job_id, result_summary):
        logger.info("notify address=%s job_id=%s summary=%s", address, job_id, result_summary)


class WebhookNotifier(Notifier):
    def __init__(self, url: str, client: httpx.AsyncClient):
        self.url = url
        self.client = client

    async def notify(self, address, job_id, result_summary):
        response = await self.client.post(
            self.url,
            json={"address": address, "jobId": job_id, "resultSummary": result_summary},
            timeout=10.0,
        )
        response.raise_for_status()
