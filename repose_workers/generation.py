"""
Client for the external image-generation service.

One call per GenerationTask: the subject photo and a greyscale pose template
go in, one image URL comes out. Failures are classified so the coordinator
can decide whether a task is worth retrying:

  - TransientServiceError: 429/502/503/504, rate-limit errors embedded in a
    200 body, truncated JSON, transport errors and timeouts
  - TerminalServiceError:  everything else (4xx, missing image, bad payload)
"""

import logging
import time
from typing import Optional

import httpx

from . import config
from . import metrics
from .pipeline.errors import TerminalServiceError, TransientServiceError
from .pipeline.models import GenerationTask

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429, 502, 503, 504}
RATE_LIMIT_MARKERS = ("resource_exhausted", "429", "rate")

REPOSE_PROMPT = (
    "Repose the person in the input photo so that they match the body pose, "
    "camera angle and framing of the greyscale reference. Keep the crop of the "
    "reference exactly: do not widen the frame or show more of the body than it shows. "
    "Keep the person's face, hair, body shape, clothing, colours, logos and fabric "
    "unchanged, and keep the photographic look of the input. "
    "Return a single 3:4 portrait image."
)


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if value and value.strip().isdigit():
        return float(value.strip())
    return None


class GenerationClient:
    """
    Async client for an OpenAI-style chat-completions image endpoint.

    Pass `http_client` to share a connection pool or to inject a mock
    transport in tests; otherwise one is created on first use.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = config.GENERATION_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url if base_url is not None else config.GENERATION_API_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else config.GENERATION_API_KEY
        self.timeout = timeout
        self._client = http_client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def build_payload(self, task: GenerationTask) -> dict:
        content = [
            {"type": "text", "text": REPOSE_PROMPT},
            {"type": "text", "text": "INPUT PHOTO:"},
            {"type": "image_url", "image_url": {"url": task.source_url}},
        ]
        if task.pose_url:
            content.append({"type": "text", "text": "POSE REFERENCE:"})
            content.append({"type": "image_url", "image_url": {"url": task.pose_url}})

        return {
            "model": task.model,
            "messages": [{"role": "user", "content": content}],
            "modalities": ["image", "text"],
            "metadata": {
                "output_id": task.output_id,
                "run_id": task.run_id,
                "shot_type": task.shot_type,
            },
        }

    async def generate(self, task: GenerationTask) -> str:
        """Run one generation task and return the result image URL."""
        url = f"{self.base_url}/chat/completions"
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        start = time.time()
        try:
            response = await self._get_client().post(
                url, json=self.build_payload(task), headers=headers, timeout=self.timeout
            )
        except httpx.TimeoutException as e:
            raise TransientServiceError(f"Timeout after {time.time() - start:.0f}s") from e
        except httpx.TransportError as e:
            raise TransientServiceError(f"Network error: {e}") from e
        finally:
            metrics.record_latency("generation.call", (time.time() - start) * 1000)

        if response.status_code in RETRYABLE_STATUS_CODES:
            raise TransientServiceError(
                f"Generation service returned {response.status_code}",
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )
        if response.status_code >= 400:
            raise TerminalServiceError(
                f"Generation service error {response.status_code}: {response.text[:200]}"
            )

        try:
            result = response.json()
        except ValueError as e:
            raise TransientServiceError("Truncated response from generation service") from e

        choice = (result.get("choices") or [{}])[0]
        embedded = choice.get("error")
        if embedded:
            code = str(embedded.get("code", "unknown"))
            text = f"{code} {embedded.get('message', '')}".lower()
            if any(marker in text for marker in RATE_LIMIT_MARKERS):
                raise TransientServiceError(f"Rate limited: {code}")
            raise TerminalServiceError(f"Generation error: {code}")

        images = (choice.get("message") or {}).get("images") or []
        image_url = images[0].get("image_url", {}).get("url") if images else None
        if not image_url:
            raise TerminalServiceError("No image in generation response")

        logger.info(f"Generated {task.shot_type} for run {task.run_id} in {time.time() - start:.1f}s")
        return image_url
