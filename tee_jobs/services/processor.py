import logging
from typing import Any, Optional, Protocol

import httpx

from tee_jobs.domain.models import PayloadRefs, ProcessorResult
from tee_jobs.settings import settings

logger = logging.getLogger(__name__)


class Processor(Protocol):
    async def process(self, refs: PayloadRefs, timeout_seconds: int) -> ProcessorResult:
        ...


class TeeProcessorClient:
    """
    Client for the TEE data processing service.

    Remote failures never raise; they come back as ``ProcessorResult(status="error")``
    so the consumer records them on the job.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        threshold: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or settings.TEE_PROCESSOR_URL).rstrip("/")
        self.threshold = threshold or settings.TEE_DEFAULT_THRESHOLD
        self.client = client or httpx.AsyncClient(base_url=self.base_url)

    @staticmethod
    def _build_body(refs: PayloadRefs, timeout_seconds: int, threshold: str) -> dict[str, Any]:
        return {
            "payload": {
                "timeout_secs": timeout_seconds,
                "args": [refs.blob_id, refs.onchain_file_id, refs.policy_id, threshold],
            }
        }

    async def process(self, refs: PayloadRefs, timeout_seconds: int) -> ProcessorResult:
        body = self._build_body(refs, timeout_seconds, self.threshold)
        logger.info(f"Calling TEE processor for blob {refs.blob_id} (timeout {timeout_seconds}s)")

        try:
            resp = await self.client.post("/process_data", json=body, timeout=timeout_seconds)
            resp.raise_for_status()
            result = resp.json() if resp.content else None
        except httpx.HTTPStatusError as e:
            logger.warning(f"TEE processor rejected blob {refs.blob_id}: HTTP {e.response.status_code}")
            return ProcessorResult(
                status="error",
                message=f"TEE data processing failed: HTTP {e.response.status_code} {e.response.text}".strip(),
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"TEE processor call failed for blob {refs.blob_id}: {e!r}")
            return ProcessorResult(status="error", message=f"TEE data processing failed: {e!r}")

        return ProcessorResult(
            status="success",
            data={
                "processed": True,
                "blobId": refs.blob_id,
                "onchainFileId": refs.onchain_file_id,
                "policyId": refs.policy_id,
                "result": result,
            },
        )

    async def close(self):
        await self.client.aclose()
