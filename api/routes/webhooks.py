"""Storefront webhook ingress.

Signatures are checked over the raw body before anything is parsed. Topics
that move no stock are acknowledged with 200 so the platform does not retry
them.
"""

import json
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from api.services.runtime import SyncRuntime, get_runtime
from core.models import Platform, Store
from core.observability import get_logger
from core.security import (
    SHOPIFY_SIGNATURE_HEADER,
    WOOCOMMERCE_SIGNATURE_HEADER,
    verify_signature,
)
from push.events import (
    SHOPIFY_WEBHOOK_TOPICS,
    OrderEvent,
    parse_shopify_order_event,
    parse_woocommerce_order_event,
    resolve_woocommerce_event,
)
from push.queue import enqueue_order_event
from storage.stores import get_store, get_store_integration

logger = get_logger(__name__)

router = APIRouter()

SHOPIFY_TOPIC_HEADER = "X-Shopify-Topic"
WOOCOMMERCE_EVENT_HEADER = "X-WC-Webhook-Event"
WOOCOMMERCE_TOPIC_HEADER = "X-WC-Webhook-Topic"


def _load_store(store_id: str, platform: Platform, runtime: SyncRuntime) -> Store:
    store = get_store(store_id, db_path=runtime.db_path)
    if store is None or store.platform != platform:
        raise HTTPException(status_code=404, detail=f"Store {store_id} not found")
    return store


def _check_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> None:
    if not secret:
        raise HTTPException(status_code=400, detail="Webhook secret not configured for this store")
    if not verify_signature(raw_body, signature, secret):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")


def _parse_json(raw_body: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(raw_body or b"{}")
    except ValueError:
        raise HTTPException(status_code=400, detail="Body is not valid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")
    return payload


def _enqueue(store: Store, event: OrderEvent, runtime: SyncRuntime) -> Dict[str, Any]:
    link = get_store_integration(store.id, db_path=runtime.db_path)
    if link is None:
        raise HTTPException(status_code=400, detail="Store has no active ledger integration")
    if not link.config.push.enabled:
        return {"success": True, "status": "push_disabled", "order_id": event.order_id}

    result = enqueue_order_event(event, store, link.integration_id, db_path=runtime.db_path)
    return {
        "success": True,
        "status": "queued",
        "order_id": result.order_id,
        "direction": result.direction,
        "queued": result.queued,
        "duplicates": result.duplicates,
        "skipped": result.skipped,
    }


@router.post("/shopify/{store_id}")
async def shopify_webhook(
    store_id: str,
    request: Request,
    runtime: SyncRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    raw_body = await request.body()
    store = _load_store(store_id, Platform.SHOPIFY, runtime)
    secret = store.credentials.get("api_secret") or store.credentials.get("webhook_secret")
    _check_signature(raw_body, request.headers.get(SHOPIFY_SIGNATURE_HEADER), secret)

    topic = request.headers.get(SHOPIFY_TOPIC_HEADER, "")
    if topic not in SHOPIFY_WEBHOOK_TOPICS:
        logger.info(f"Ignoring Shopify topic {topic!r} for store {store_id}")
        return {"success": True, "status": "ignored", "topic": topic}

    try:
        event = parse_shopify_order_event(topic, _parse_json(raw_body))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _enqueue(store, event, runtime)


@router.post("/woocommerce/{store_id}")
async def woocommerce_webhook(
    store_id: str,
    request: Request,
    runtime: SyncRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    raw_body = await request.body()
    store = _load_store(store_id, Platform.WOOCOMMERCE, runtime)

    event_header = request.headers.get(WOOCOMMERCE_EVENT_HEADER)
    topic_header = request.headers.get(WOOCOMMERCE_TOPIC_HEADER)
    if not event_header and not topic_header:
        # WooCommerce pings a new webhook with a form body and no event headers
        return {"success": True, "status": "ping"}

    _check_signature(
        raw_body,
        request.headers.get(WOOCOMMERCE_SIGNATURE_HEADER),
        store.credentials.get("webhook_secret"),
    )

    payload = _parse_json(raw_body)
    event_name = resolve_woocommerce_event(event_header, topic_header, payload)
    if event_name is None:
        logger.info(f"Ignoring WooCommerce event {event_header or topic_header!r} for store {store_id}")
        return {"success": True, "status": "ignored", "topic": topic_header or event_header}

    try:
        event = parse_woocommerce_order_event(event_name, payload)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _enqueue(store, event, runtime)
