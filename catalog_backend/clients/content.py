"""HTTP client for the external content service (service records)."""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp

from catalog_backend.core.metrics import CONTENT_FETCH_RETRIES_TOTAL, CONTENT_FETCH_TOTAL

logger = logging.getLogger(__name__)

# Fields whose change makes a record "modified" for sync purposes.
HASHED_FIELDS = ("name", "slug", "category", "short_description", "hero_image_url")


class ContentServiceError(RuntimeError):
    def __init__(self, message: str, *, status: Optional[int] = None, retryable: bool = False) -> None:
        super().__init__(message)
        self.status = status
        self.retryable = retryable


@dataclass
class ContentClientMetrics:
    requests: int = 0
    retries: int = 0
    failures: int = 0


def content_hash(record: Dict[str, Any]) -> str:
    """md5 hex digest over the identity-affecting fields of a raw record."""

    subset = {field: record.get(field) for field in HASHED_FIELDS}
    canonical = json.dumps(subset, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return hashlib.md5(canonical.encode("utf-8")).hexdigest()


class ContentServiceClient:
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        max_attempts: int = 3,
        retry_base_delay: float = 1.0,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._base_url = (base_url or "").strip().rstrip("/")
        self._timeout = timeout
        self._max_attempts = max(1, int(max_attempts))
        self._retry_base_delay = max(0.0, float(retry_base_delay))
        self._session = session
        self._owns_session = session is None
        self.metrics = ContentClientMetrics()
        self.last_request_meta: Dict[str, Any] = {}

    @classmethod
    def from_settings(cls, settings: Any) -> "ContentServiceClient":
        return cls(
            settings.content_service_url,
            timeout=settings.content_fetch_timeout_seconds,
            max_attempts=settings.content_fetch_max_attempts,
            retry_base_delay=settings.content_fetch_retry_base_delay,
        )

    @property
    def configured(self) -> bool:
        return bool(self._base_url)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self._timeout))
            self._owns_session = True
        return self._session

    async def fetch_services(self) -> List[Dict[str, Any]]:
        """GET ``{base}/services`` with linear-backoff retries.

        5xx responses, timeouts and connection errors are retried up to the
        attempt cap; any other failure raises immediately.
        """

        if not self._base_url:
            raise ContentServiceError("Content service URL is not configured")

        url = f"{self._base_url}/services"
        last_error: Optional[ContentServiceError] = None

        for attempt in range(1, self._max_attempts + 1):
            if attempt > 1:
                delay = self._retry_base_delay * (attempt - 1)
                self.metrics.retries += 1
                CONTENT_FETCH_RETRIES_TOTAL.inc()
                logger.warning(
                    "Content service fetch retry %d/%d in %.1fs: %s",
                    attempt,
                    self._max_attempts,
                    delay,
                    last_error,
                )
                await asyncio.sleep(delay)

            self.metrics.requests += 1
            try:
                payload = await self._get_json(url)
            except ContentServiceError as exc:
                self.last_request_meta = {"attempt": attempt, "status": exc.status, "error": str(exc)}
                if not exc.retryable:
                    self._record_failure("client_error")
                    raise
                last_error = exc
                continue

            records = self._extract_records(payload)
            self.last_request_meta = {"attempt": attempt, "status": 200, "count": len(records)}
            CONTENT_FETCH_TOTAL.labels(outcome="success").inc()
            return records

        self._record_failure("exhausted")
        raise last_error or ContentServiceError("Content service fetch failed", retryable=True)

    async def _get_json(self, url: str) -> Any:
        session = self._get_session()
        try:
            async with session.get(
                url,
                headers={"Accept": "application/json"},
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            ) as resp:
                if resp.status >= 500:
                    raise ContentServiceError(
                        f"Content service error: HTTP {resp.status}",
                        status=resp.status,
                        retryable=True,
                    )
                if resp.status >= 400:
                    raise ContentServiceError(
                        f"Content service error: HTTP {resp.status}",
                        status=resp.status,
                        retryable=False,
                    )
                return await resp.json(content_type=None)
        except asyncio.TimeoutError as exc:
            raise ContentServiceError(
                f"Content service request timed out after {self._timeout:.1f}s",
                retryable=True,
            ) from exc
        except aiohttp.ClientConnectionError as exc:
            raise ContentServiceError(f"Content service unreachable: {exc}", retryable=True) from exc
        except (aiohttp.ClientError, ValueError) as exc:
            raise ContentServiceError(f"Content service response invalid: {exc}", retryable=False) from exc

    @staticmethod
    def _extract_records(payload: Any) -> List[Dict[str, Any]]:
        if isinstance(payload, dict):
            payload = payload.get("data", [])
        if not isinstance(payload, list):
            raise ContentServiceError("Content service returned an unexpected payload shape")
        return [item for item in payload if isinstance(item, dict)]

    def _record_failure(self, outcome: str) -> None:
        self.metrics.failures += 1
        CONTENT_FETCH_TOTAL.labels(outcome=outcome).inc()

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None


__all__ = ["ContentClientMetrics", "ContentServiceClient", "ContentServiceError", "HASHED_FIELDS", "content_hash"]
