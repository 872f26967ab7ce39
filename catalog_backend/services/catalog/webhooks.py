"""Content-service webhooks: signature check, payload validation, cache upkeep."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from catalog_backend.core.cache import CacheKeys, CacheStore, ChangeKind
from catalog_backend.domain.errors import WebhookError
from catalog_backend.services.catalog.controller import ControllerResponse
from catalog_backend.services.catalog.sync import CatalogSyncJob

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = ("x-signature", "x-cms-signature")
MAX_WEBHOOK_LOGS = 100

WebhookEvent = Literal["service.created", "service.updated", "service.deleted", "services.bulk_update"]


class WebhookData(BaseModel):
    id: Optional[str] = None
    slug: Optional[str] = None  # legacy alias for id
    ids: Optional[List[str]] = None
    slugs: Optional[List[str]] = None  # legacy alias for ids
    action: Optional[str] = None

    @property
    def service_id(self) -> Optional[str]:
        return self.id or self.slug

    @property
    def service_ids(self) -> List[str]:
        return list(self.ids or self.slugs or [])


class WebhookPayload(BaseModel):
    event: WebhookEvent
    timestamp: str
    data: WebhookData = Field(default_factory=WebhookData)
    signature: Optional[str] = None


@dataclass(frozen=True)
class WebhookLog:
    id: str
    event: str
    timestamp: float
    success: bool
    processing_ms: float
    remote_ip: Optional[str] = None
    error: Optional[str] = None


class WebhookHandler:
    def __init__(
        self,
        cache: CacheStore,
        sync_job: CatalogSyncJob,
        *,
        secret: str = "",
        environment: str = "development",
    ):
        self.cache = cache
        self.sync_job = sync_job
        self._secret = secret or ""
        self._production = environment == "production"
        self._logs: Deque[WebhookLog] = deque(maxlen=MAX_WEBHOOK_LOGS)
        if not self._secret and self._production:
            logger.warning("CMS_WEBHOOK_SECRET not configured - signed webhooks will be rejected")

    @property
    def secret_configured(self) -> bool:
        return bool(self._secret)

    def verify_signature(self, raw_body: Union[bytes, str], signature: str) -> bool:
        if not self._secret:
            if not self._production:
                logger.debug("Signature verification skipped - no secret configured")
                return True
            logger.error("Signature verification failed - CMS_WEBHOOK_SECRET not configured")
            return False

        body = raw_body.encode("utf-8") if isinstance(raw_body, str) else raw_body
        expected = hmac.new(self._secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(signature.strip().lower().encode("utf-8"), expected.encode("ascii"))

    async def handle_request(
        self,
        raw_body: Union[bytes, str],
        headers: Mapping[str, str],
        remote_ip: Optional[str] = None,
    ) -> ControllerResponse:
        """Validate and process one delivery; always returns an envelope."""

        try:
            payload = WebhookPayload.model_validate(json.loads(raw_body))
        except (ValueError, ValidationError) as exc:
            logger.warning("Invalid webhook payload from %s: %s", remote_ip or "unknown", exc)
            errors = [err["msg"] for err in exc.errors()] if isinstance(exc, ValidationError) else ["Malformed JSON"]
            return ControllerResponse(400, {"success": False, "message": "Invalid webhook payload", "errors": errors})

        lowered = {key.lower(): value for key, value in headers.items()}
        signature = next((lowered[name] for name in SIGNATURE_HEADERS if lowered.get(name)), None)
        try:
            message = await self.handle(payload, raw_body, signature, remote_ip)
        except WebhookError as exc:
            return ControllerResponse(exc.status_code, {"success": False, "message": exc.message})
        except Exception:
            return ControllerResponse(500, {"success": False, "message": "Webhook processing failed"})
        return ControllerResponse(200, {"success": True, "message": message})

    async def handle(
        self,
        payload: WebhookPayload,
        raw_body: Union[bytes, str],
        signature: Optional[str] = None,
        remote_ip: Optional[str] = None,
    ) -> str:
        log_id = uuid.uuid4().hex
        started = time.perf_counter()
        service_id = payload.data.service_id
        logger.info(
            "Webhook received: event=%s service=%s signed=%s remote=%s",
            payload.event,
            service_id,
            bool(signature),
            remote_ip or "unknown",
            extra={"webhook_id": log_id},
        )

        try:
            if signature:
                if not self.verify_signature(raw_body, signature):
                    raise WebhookError("Invalid webhook signature", status_code=401)
            elif self._production and self._secret:
                raise WebhookError("Missing webhook signature header", status_code=401)

            await self._dispatch(payload, log_id)
        except Exception as exc:
            self._add_log(log_id, payload.event, started, remote_ip, error=str(exc))
            logger.error(
                "Webhook processing failed: event=%s service=%s error=%s",
                payload.event,
                service_id,
                exc,
                extra={"webhook_id": log_id},
            )
            raise

        self._add_log(log_id, payload.event, started, remote_ip)
        return "Webhook processed successfully"

    async def _dispatch(self, payload: WebhookPayload, log_id: str) -> None:
        service_id = payload.data.service_id
        if payload.event == "services.bulk_update":
            await self.sync_job.run_once()
            self.cache.invalidate_all()
            logger.info("Bulk update: full sync completed and cache reset")
            return

        if not service_id:
            logger.warning("%s event missing id/slug", payload.event, extra={"webhook_id": log_id})
            return

        self.cache.discard(CacheKeys.upstream_services())
        key = CacheKeys.service(service_id)
        if payload.event == "service.deleted":
            if not self.cache.invalidate(key):
                self.cache.record_change(ChangeKind.DELETED, key)
        else:
            self.cache.invalidate(key)
            kind = ChangeKind.ADDED if payload.event == "service.created" else ChangeKind.UPDATED
            self.cache.record_change(kind, key)
        self.cache.invalidate_catalog()
        self.cache.invalidate_categories()
        logger.info("Service cache invalidated after %s: %s", payload.event, service_id)

    def _add_log(
        self,
        log_id: str,
        event: str,
        started: float,
        remote_ip: Optional[str],
        *,
        error: Optional[str] = None,
    ) -> None:
        self._logs.appendleft(
            WebhookLog(
                id=log_id,
                event=event,
                timestamp=time.time(),
                success=error is None,
                processing_ms=(time.perf_counter() - started) * 1000,
                remote_ip=remote_ip,
                error=error,
            )
        )

    def get_logs(self) -> List[WebhookLog]:
        return list(self._logs)

    def get_stats(self) -> Dict[str, Any]:
        total = len(self._logs)
        successful = sum(1 for log in self._logs if log.success)
        avg_ms = sum(log.processing_ms for log in self._logs) / total if total else 0.0
        return {
            "total_received": total,
            "success_rate": successful / total * 100 if total else 100.0,
            "avg_processing_ms": round(avg_ms),
            "secret_configured": self.secret_configured,
        }


__all__ = ["WebhookData", "WebhookHandler", "WebhookLog", "WebhookPayload"]
