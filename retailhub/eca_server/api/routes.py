"""
API routes for the ECA server.

Provides the webhook endpoint plus read-only endpoints over transactions,
entities, snapshots, audit events and analytics. Every route is scoped to
the tenant from the X-Tenant-ID header (or the configured default); a
webhook posted with a tenant-bound credential uses that credential's tenant.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..analytics import segment_summary
from ..engine import EcaEngine
from ..errors import EcaError, NotFoundError, ValidationError
from ..schema.types import EntityType, SnapshotType, TransactionType
from .auth import WebhookAuthenticator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["RetailHub ECA"])


# --- Response Models ---


class PaginatedResponse(BaseModel):
    """Paginated list response."""

    items: list[dict[str, Any]]
    total: int
    offset: int
    limit: int
    has_more: bool


# --- Dependencies ---


def get_engine(request: Request) -> EcaEngine:
    """Get the engine from app state."""
    return request.app.state.engine


def get_authenticator(request: Request) -> WebhookAuthenticator:
    return request.app.state.authenticator


def get_requested_tenant_id(
    request: Request,
    x_tenant_id: str | None = Query(None, alias="X-Tenant-ID"),
) -> str | None:
    """Tenant named by the header or query param, if any."""
    return request.headers.get("X-Tenant-ID") or x_tenant_id or None


def get_tenant_id(
    request: Request,
    requested: str | None = Depends(get_requested_tenant_id),
) -> str:
    """Get tenant ID from header or query param."""
    return requested or request.app.state.settings.default_tenant_id


def _enum_param(enum_cls, value: str | None, name: str):
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(
            f"Invalid {name} '{value}' (expected one of: {', '.join(m.value for m in enum_cls)})",
            field_name=name,
        )


def _page(items: list[dict[str, Any]], total: int, offset: int, limit: int) -> PaginatedResponse:
    return PaginatedResponse(
        items=items,
        total=total,
        offset=offset,
        limit=limit,
        has_more=offset + len(items) < total,
    )


# --- Webhooks ---


@router.post("/webhooks/{flow}")
async def post_webhook(
    flow: str,
    request: Request,
    requested_tenant_id: str | None = Depends(get_requested_tenant_id),
    engine: EcaEngine = Depends(get_engine),
    authenticator: WebhookAuthenticator = Depends(get_authenticator),
    authorization: str | None = Header(None),
    x_api_key: str | None = Header(None),
):
    """
    Apply one action of a flow.

    Body: {"action": ..., "attributes": {...}, "metadata": {...}}.
    Always answers with a success or failure envelope. Credentials bound
    to a tenant write to that tenant; naming another one is refused.
    """
    tenant_id = requested_tenant_id or request.app.state.settings.default_tenant_id
    try:
        body = await request.json()
    except ValueError:
        body = None

    try:
        caller = authenticator.authenticate(flow, authorization=authorization, api_key=x_api_key)
        tenant_id = caller.tenant_id or tenant_id
        caller.check_tenant(requested_tenant_id)
    except EcaError as e:
        status, envelope = await engine.pipeline.reject(flow, body, tenant_id, e)
        return JSONResponse(status_code=status, content=envelope)

    status, envelope = await engine.pipeline.handle(flow, body, tenant_id)
    logger.debug(
        "Webhook answered",
        extra={"tenant_id": tenant_id, "flow": flow, "caller": caller.name, "status": status},
    )
    return JSONResponse(status_code=status, content=envelope)


@router.get("/flows")
async def list_flows(engine: EcaEngine = Depends(get_engine)):
    """Flows and the actions each accepts."""
    return {
        "flows": {
            flow.value: engine.action_table.actions_for(flow)
            for flow in engine.action_table.flows()
        }
    }


# --- Transactions ---


@router.get("/transactions", response_model=PaginatedResponse)
async def list_transactions(
    transaction_type: str | None = Query(None, alias="type", description="Transaction type"),
    status: str | None = Query(None, description="Status token"),
    external_id: str | None = Query(None, description="External id"),
    date_from: int | None = Query(None, description="Created at or after (Unix ms)"),
    date_to: int | None = Query(None, description="Created at or before (Unix ms)"),
    offset: int = Query(0, ge=0, description="Pagination offset"),
    limit: int = Query(50, ge=1, le=200, description="Page size"),
    tenant_id: str = Depends(get_tenant_id),
    engine: EcaEngine = Depends(get_engine),
):
    """List transactions, newest first."""
    tx_type = _enum_param(TransactionType, transaction_type, "type")
    store = engine.processor.transactions
    items = await store.list_transactions(
        tenant_id, tx_type, status, external_id, date_from, date_to, limit=limit, offset=offset
    )
    total = await store.count_transactions(
        tenant_id, tx_type, status, external_id, date_from, date_to
    )
    return _page([t.to_dict() for t in items], total, offset, limit)


@router.get("/transactions/{transaction_id}")
async def get_transaction(
    transaction_id: str,
    tenant_id: str = Depends(get_tenant_id),
    engine: EcaEngine = Depends(get_engine),
):
    """
    Get a transaction with its relationships.

    Includes outgoing edges (entities, items, referenced documents), incoming
    edges (documents referencing this one) and the allowed next statuses.
    """
    processor = engine.processor
    transaction = await processor.transactions.get(tenant_id, transaction_id)
    if transaction is None:
        raise NotFoundError(
            f"Transaction not found: {transaction_id}",
            resource_type="transaction",
            resource_id=transaction_id,
        )
    outgoing = await processor.relationships.list_from(tenant_id, transaction_id)
    incoming = await processor.relationships.list_to(tenant_id, transaction_id)
    return {
        **transaction.to_dict(),
        "next_statuses": engine.state_machine.next_states(
            transaction.transaction_type, transaction.status
        ),
        "relationships": [r.to_dict() for r in outgoing],
        "referenced_by": [r.to_dict() for r in incoming],
    }


# --- Entities ---


@router.get("/entities", response_model=PaginatedResponse)
async def list_entities(
    entity_type: str | None = Query(None, alias="type", description="Entity type"),
    external_id: str | None = Query(None, description="External id"),
    offset: int = Query(0, ge=0, description="Pagination offset"),
    limit: int = Query(50, ge=1, le=200, description="Page size"),
    tenant_id: str = Depends(get_tenant_id),
    engine: EcaEngine = Depends(get_engine),
):
    """List active entities, newest first."""
    kind = _enum_param(EntityType, entity_type, "type")
    store = engine.processor.entities
    items = await store.list_entities(tenant_id, kind, external_id, limit=limit, offset=offset)
    total = await store.count_entities(tenant_id, kind, external_id)
    return _page([e.to_dict() for e in items], total, offset, limit)


@router.get("/entities/{entity_id}")
async def get_entity(
    entity_id: str,
    tenant_id: str = Depends(get_tenant_id),
    engine: EcaEngine = Depends(get_engine),
):
    """Get an entity with the transactions pointing at it."""
    processor = engine.processor
    entity = await processor.entities.get(tenant_id, entity_id)
    if entity is None:
        raise NotFoundError(
            f"Entity not found: {entity_id}", resource_type="entity", resource_id=entity_id
        )
    incoming = await processor.relationships.list_to(tenant_id, entity_id)
    return {**entity.to_dict(), "referenced_by": [r.to_dict() for r in incoming]}


# --- Snapshots ---


@router.get("/snapshots", response_model=PaginatedResponse)
async def list_snapshots(
    snapshot_type: str | None = Query(None, alias="type", description="Snapshot type"),
    offset: int = Query(0, ge=0, description="Pagination offset"),
    limit: int = Query(50, ge=1, le=200, description="Page size"),
    tenant_id: str = Depends(get_tenant_id),
    engine: EcaEngine = Depends(get_engine),
):
    """List snapshots ordered by key."""
    kind = _enum_param(SnapshotType, snapshot_type, "type")
    snapshots = engine.processor.snapshots
    items = await snapshots.list_snapshots(tenant_id, kind, limit=limit, offset=offset)
    total = await snapshots.count_snapshots(tenant_id, kind)
    return _page([s.to_dict() for s in items], total, offset, limit)


@router.get("/snapshots/{key}")
async def get_snapshot(
    key: str,
    tenant_id: str = Depends(get_tenant_id),
    engine: EcaEngine = Depends(get_engine),
):
    """Get a snapshot by key (e.g. stock_<product_id>_<location_id>)."""
    snapshot = await engine.processor.snapshots.get(tenant_id, key)
    if snapshot is None:
        raise NotFoundError(f"Snapshot not found: {key}", resource_type="snapshot", resource_id=key)
    return snapshot.to_dict()


# --- Audit events ---


@router.get("/events", response_model=PaginatedResponse)
async def list_events(
    entity_id: str | None = Query(None, description="Filter by transaction id"),
    event_code: str | None = Query(None, description="Filter by event code"),
    offset: int = Query(0, ge=0, description="Pagination offset"),
    limit: int = Query(50, ge=1, le=200, description="Page size"),
    tenant_id: str = Depends(get_tenant_id),
    engine: EcaEngine = Depends(get_engine),
):
    """List audit events, newest first."""
    processor = engine.processor
    items = await processor.list_events(
        tenant_id, entity_id=entity_id, event_code=event_code, limit=limit, offset=offset
    )
    total = await processor.count_events(tenant_id, entity_id=entity_id, event_code=event_code)
    return _page([e.to_dict() for e in items], total, offset, limit)


# --- Analytics ---


@router.get("/analytics/rfm")
async def rfm_segmentation(
    date_from: int | None = Query(None, description="Window start (Unix ms)"),
    date_to: int | None = Query(None, description="Window end (Unix ms)"),
    include_inactive: bool = Query(True, description="Include customers without sales"),
    tenant_id: str = Depends(get_tenant_id),
    engine: EcaEngine = Depends(get_engine),
):
    """RFM segmentation of the tenant's customers."""
    customers = await engine.rfm.segment_customers(
        tenant_id, date_from, date_to, include_inactive=include_inactive
    )
    return {
        "customers": [c.to_dict() for c in customers],
        "summary": segment_summary(customers),
    }


@router.get("/analytics/rfm/{customer_external_id}")
async def customer_rfm(
    customer_external_id: str,
    date_from: int | None = Query(None, description="Window start (Unix ms)"),
    date_to: int | None = Query(None, description="Window end (Unix ms)"),
    tenant_id: str = Depends(get_tenant_id),
    engine: EcaEngine = Depends(get_engine),
):
    """RFM of one customer, scored against the whole cohort."""
    rfm = await engine.rfm.customer_rfm(tenant_id, customer_external_id, date_from, date_to)
    return rfm.to_dict()


@router.get("/analytics/products")
async def product_performance(
    date_from: int | None = Query(None, description="Window start (Unix ms)"),
    date_to: int | None = Query(None, description="Window end (Unix ms)"),
    location_external_id: str | None = Query(None, description="Only sales at this location"),
    top_n: int = Query(10, ge=1, le=100, description="Size of each ranking"),
    tenant_id: str = Depends(get_tenant_id),
    engine: EcaEngine = Depends(get_engine),
):
    """Best sellers and highest margin products."""
    return await engine.performance.product_performance(
        tenant_id, date_from, date_to, location_external_id, top_n
    )


@router.get("/analytics/locations")
async def location_performance(
    date_from: int | None = Query(None, description="Window start (Unix ms)"),
    date_to: int | None = Query(None, description="Window end (Unix ms)"),
    top_n: int = Query(10, ge=1, le=100, description="Number of locations"),
    tenant_id: str = Depends(get_tenant_id),
    engine: EcaEngine = Depends(get_engine),
):
    """Locations ranked by revenue."""
    return {
        "locations": await engine.performance.location_performance(
            tenant_id, date_from, date_to, top_n
        )
    }


@router.get("/analytics/sales-summary")
async def sales_summary(
    date_from: int | None = Query(None, description="Window start (Unix ms)"),
    date_to: int | None = Query(None, description="Window end (Unix ms)"),
    tenant_id: str = Depends(get_tenant_id),
    engine: EcaEngine = Depends(get_engine),
):
    """Sales totals over the window."""
    return await engine.performance.sales_summary(tenant_id, date_from, date_to)
