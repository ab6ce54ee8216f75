"""
Webhook ingestion pipeline.

Turns a webhook request body into an action, runs it through the
ActionProcessor under the request deadline, and renders the uniform
response envelope.

Request body:
    {"action": "<action of the flow>", "attributes": {...}, "metadata": {...}}

Success envelope:
    {"success": true, "action", "transaction_id", "entity_ids",
     "relationship_ids", "state_transition"?,
     "attributes": {"success", "entityType", "entityId", "summary": {...}},
     "metadata": {"processed_at", "processing_time_ms", "event_uuid"}}

Failure envelope:
    {"success": false, "action", "attributes": {"success": false,
     "summary": {"message"}}, "metadata": {...},
     "error": {"code", "message", "details": {..., "timestamp"}}}

Invariants:
    - Every request gets exactly one envelope, success or failure
    - Store failures never leak internal detail into the envelope
    - The outcome log write is best-effort and never fails the request
    - The deadline fires at await points only; store backends must not
      block the event loop (SqliteStore runs each call in a worker thread)

How to change safely:
    - Envelope keys are consumed by integrations; add keys, never rename
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from ..apply.processor import ActionProcessor, ActionResult
from ..errors import (
    EcaError,
    InternalError,
    NotFoundError,
    RequestTimeoutError,
    ValidationError,
    is_business_error,
)
from ..schema.actions import Flow
from ..schema.types import now_ms
from ..store.base import StoreBackend

logger = logging.getLogger(__name__)

LOGS_TABLE = "webhook_logs"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class WebhookPipeline:
    """Validates, processes and answers webhook requests.

    Attributes:
        request_timeout_seconds: Deadline for processing one request
    """

    def __init__(
        self,
        processor: ActionProcessor,
        store: StoreBackend,
        request_timeout_seconds: float = 10.0,
    ) -> None:
        self.processor = processor
        self.store = store
        self.request_timeout_seconds = request_timeout_seconds

    async def handle(
        self, flow: str, body: Any, tenant_id: str
    ) -> Tuple[int, Dict[str, Any]]:
        """Process one webhook request.

        Args:
            flow: Flow from the URL
            body: Decoded JSON body (None if it was not valid JSON)
            tenant_id: Tenant identifier

        Returns:
            (HTTP status, response envelope)
        """
        started = time.monotonic()
        action = body.get("action") if isinstance(body, dict) else None
        action = action if isinstance(action, str) else None

        try:
            action, attributes, metadata = self._parse(flow, body)
            result = await asyncio.wait_for(
                self.processor.process(flow, action, tenant_id, attributes, metadata),
                timeout=self.request_timeout_seconds,
            )
        except asyncio.TimeoutError:
            error = RequestTimeoutError(self.request_timeout_seconds)
            return await self._fail(flow, action, body, tenant_id, error, started)
        except EcaError as e:
            return await self._fail(flow, action, body, tenant_id, e, started)
        except Exception as e:
            error = InternalError("Internal error while processing the request")
            error.__cause__ = e
            return await self._fail(flow, action, body, tenant_id, error, started)

        envelope = self.success_envelope(action, result, started)
        await self._log_outcome(tenant_id, flow, action, body, "success", envelope, None, started)
        return 200, envelope

    def _parse(
        self, flow: str, body: Any
    ) -> Tuple[str, Dict[str, Any], Optional[Dict[str, Any]]]:
        try:
            Flow(flow)
        except ValueError:
            raise NotFoundError(
                f"Unknown flow '{flow}' (available: {', '.join(f.value for f in Flow)})",
                resource_type="flow",
                resource_id=flow,
            )

        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")

        action = body.get("action")
        if not isinstance(action, str) or not action.strip():
            raise ValidationError("Missing required field: action", field_name="action")

        # Raises UnsupportedEventError before any attribute checks
        self.processor.get_action(flow, action)

        attributes = body.get("attributes")
        if not isinstance(attributes, dict):
            raise ValidationError("attributes must be an object", field_name="attributes")

        metadata = body.get("metadata")
        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationError("metadata must be an object", field_name="metadata")
        return action, attributes, metadata

    # --- Envelopes ---

    @staticmethod
    def _metadata(started: float) -> Dict[str, Any]:
        return {
            "processed_at": _utc_now_iso(),
            "processing_time_ms": round((time.monotonic() - started) * 1000, 2),
            "event_uuid": str(uuid.uuid4()),
        }

    def success_envelope(self, action: str, result: ActionResult, started: float) -> Dict[str, Any]:
        envelope: Dict[str, Any] = {
            "success": True,
            "action": action,
            "transaction_id": result.transaction_id,
            "entity_ids": result.entity_ids,
            "relationship_ids": result.relationship_ids,
        }
        if result.state_transition:
            envelope["state_transition"] = result.state_transition
        envelope["attributes"] = {
            "success": True,
            "entityType": result.transaction_type,
            "entityId": result.transaction_id,
            "summary": result.summary(),
        }
        envelope["metadata"] = self._metadata(started)
        return envelope

    def failure_envelope(
        self, action: Optional[str], error: EcaError, started: float
    ) -> Dict[str, Any]:
        details = dict(error.details)
        details["timestamp"] = _utc_now_iso()
        return {
            "success": False,
            "action": action,
            "attributes": {"success": False, "summary": {"message": error.message}},
            "metadata": self._metadata(started),
            "error": {"code": error.code, "message": error.message, "details": details},
        }

    async def reject(
        self, flow: str, body: Any, tenant_id: str, error: EcaError
    ) -> Tuple[int, Dict[str, Any]]:
        """Answer a request refused before processing (e.g. authentication)."""
        action = body.get("action") if isinstance(body, dict) else None
        return await self._fail(
            flow, action if isinstance(action, str) else None, body, tenant_id, error, time.monotonic()
        )

    async def _fail(
        self,
        flow: str,
        action: Optional[str],
        body: Any,
        tenant_id: str,
        error: EcaError,
        started: float,
    ) -> Tuple[int, Dict[str, Any]]:
        log_extra = {
            "tenant_id": tenant_id,
            "flow": flow,
            "action": action,
            "error_code": error.code,
        }
        if is_business_error(error):
            logger.warning(f"Webhook rejected: {error.message}", extra=log_extra)
        else:
            logger.error(
                f"Webhook failed: {error.message}",
                extra=log_extra,
                exc_info=error.__cause__ or error,
            )

        envelope = self.failure_envelope(action, error, started)
        await self._log_outcome(
            tenant_id, flow, action, body, "failed", envelope, error.message, started
        )
        return error.http_status, envelope

    async def _log_outcome(
        self,
        tenant_id: str,
        flow: str,
        action: Optional[str],
        body: Any,
        status: str,
        envelope: Dict[str, Any],
        error_message: Optional[str],
        started: float,
    ) -> None:
        try:
            await self.store.insert_row(
                LOGS_TABLE,
                {
                    "id": str(uuid.uuid4()),
                    "tenant_id": tenant_id,
                    "flow": flow,
                    "action": action,
                    "payload": body if isinstance(body, dict) else {"raw": body},
                    "status": status,
                    "response": envelope,
                    "error_message": error_message,
                    "processing_time_ms": round((time.monotonic() - started) * 1000, 2),
                    "created_at": now_ms(),
                },
            )
        except (EcaError, TypeError, ValueError):
            logger.warning(
                "Failed to write webhook log",
                extra={"tenant_id": tenant_id, "flow": flow, "action": action},
                exc_info=True,
            )
