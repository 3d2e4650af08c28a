from fastapi import APIRouter, HTTPException, Depends, Query
from pydantic import BaseModel, Field
from typing import Any, Optional
import logging
import re

from lending_history.core.config import settings
from lending_history.core.errors import (
    ErrorCode, ErrorResponse, HistoryError, InvalidAddressError, SchemaDiscoveryError
)
from lending_history.services.coingecko_prices import get_price_service, CoinGeckoPriceService
from lending_history.services.event_fetcher import get_event_fetcher, EventFetcher
from lending_history.services.event_store import get_event_store, EventStore
from lending_history.services.event_sync import (
    DEFAULT_MAX_DAYS, DEFAULT_MAX_EVENTS, EventSyncService, WalletRef
)

logger = logging.getLogger(__name__)
router = APIRouter()

ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")

STATUS_BY_CODE = {
    ErrorCode.MISSING_ENDPOINT: 400,
    ErrorCode.INVALID_ADDRESS: 400,
    ErrorCode.SCHEMA_DISCOVERY_FAILED: 422,
    ErrorCode.TRANSPORT_FAILED: 502,
    ErrorCode.STORE_FAILED: 500,
}


class SyncRequest(BaseModel):
    wallet_id: str
    address: str
    protocol: str
    chain: str
    max_days: int = Field(default=DEFAULT_MAX_DAYS, ge=1)
    max_events: int = DEFAULT_MAX_EVENTS
    from_timestamp: Optional[int] = None
    force_from_timestamp: bool = False
    include_prices: bool = False
    reset: bool = False


def validate_address(address: str) -> str:
    if not ADDRESS_PATTERN.match(address or ""):
        raise InvalidAddressError(address)
    return address.lower()


def error_detail(code: ErrorCode, message: str, details: Optional[str] = None, available_fields=None) -> dict:
    response = ErrorResponse(
        error_code=code,
        message=message,
        # Technical details stay out of production responses
        details=None if settings.is_production else details,
        available_fields=available_fields,
    )
    return response.model_dump(mode="json", exclude_none=True)


def to_http_exception(e: HistoryError) -> HTTPException:
    available = e.available_fields if isinstance(e, SchemaDiscoveryError) else None
    return HTTPException(
        status_code=STATUS_BY_CODE.get(e.code, 500),
        detail=error_detail(e.code, e.user_msg, e.details, available)
    )


def unexpected_error() -> HTTPException:
    return HTTPException(
        status_code=500,
        detail=error_detail(ErrorCode.UNKNOWN, "An unexpected error occurred.")
    )


@router.get("/history/events")
async def get_events(
    protocol: str,
    chain: str,
    address: str,
    from_timestamp: int = Query(default=0, ge=0),
    max_events: Optional[int] = Query(default=None, ge=1),
    fetcher: EventFetcher = Depends(get_event_fetcher)
) -> dict[str, Any]:
    """Fetch normalized lending events for a wallet straight from the subgraph"""
    try:
        wallet = validate_address(address)
        events = await fetcher.fetch_events(protocol, chain, wallet, from_timestamp, max_events)
        return {
            "status": "success",
            "data": {
                "protocol": protocol.lower(),
                "chain": chain.lower(),
                "address": wallet,
                "count": len(events),
                "events": [event.to_dict() for event in events],
            }
        }
    except HistoryError as e:
        logger.warning(f"History fetch failed for {address} on {protocol}/{chain}: {e}")
        raise to_http_exception(e)
    except Exception:
        logger.exception(f"Unexpected error fetching history for {address}")
        raise unexpected_error()


@router.get("/history/schema")
async def get_schema(
    protocol: str,
    chain: str,
    refresh: bool = False,
    fetcher: EventFetcher = Depends(get_event_fetcher)
) -> dict[str, Any]:
    """Show how the subgraph's event collections were discovered"""
    try:
        configs = await fetcher.describe_schema(protocol, chain, refresh=refresh)
        return {"status": "success", "data": {"protocol": protocol.lower(), "chain": chain.lower(), "configs": configs}}
    except HistoryError as e:
        logger.warning(f"Schema discovery failed for {protocol}/{chain}: {e}")
        raise to_http_exception(e)
    except Exception:
        logger.exception(f"Unexpected error describing schema for {protocol}/{chain}")
        raise unexpected_error()


@router.post("/history/events/sync")
async def sync_events(
    request: SyncRequest,
    fetcher: EventFetcher = Depends(get_event_fetcher),
    store: EventStore = Depends(get_event_store),
    prices: CoinGeckoPriceService = Depends(get_price_service)
) -> dict[str, Any]:
    """Sync a wallet's events into the event store"""
    try:
        wallet = WalletRef(
            id=request.wallet_id,
            address=validate_address(request.address),
            protocol=request.protocol.lower(),
            chain=request.chain.lower(),
        )
    except HistoryError as e:
        raise to_http_exception(e)

    service = EventSyncService(fetcher, store, price_lookup=prices)
    result = await service.sync_wallet(
        wallet,
        max_days=request.max_days,
        max_events=request.max_events,
        from_timestamp=request.from_timestamp,
        force_from_timestamp=request.force_from_timestamp,
        include_prices=request.include_prices,
        reset=request.reset,
    )
    if not result.ok:
        code = ErrorCode(result.error_code) if result.error_code else ErrorCode.UNKNOWN
        raise HTTPException(
            status_code=STATUS_BY_CODE.get(code, 500),
            detail=error_detail(code, "Event sync failed.", result.error)
        )

    return {
        "status": "success",
        "data": {
            "wallet_id": result.wallet_id,
            "synced": result.synced,
            "last_timestamp": result.last_timestamp,
            "event_type_counts": result.event_type_counts,
            "skipped": result.skipped,
            "truncated": result.truncated,
        }
    }


@router.get("/history/events/{wallet_id}")
async def get_stored_events(
    wallet_id: str,
    limit: Optional[int] = Query(default=None, ge=1),
    store: EventStore = Depends(get_event_store)
) -> dict[str, Any]:
    """Events previously synced for a wallet"""
    try:
        events = await store.list_events(wallet_id, limit)
        return {"status": "success", "data": {"wallet_id": wallet_id, "count": len(events), "events": events}}
    except HistoryError as e:
        logger.error(f"Could not load stored events for {wallet_id}: {e}")
        raise to_http_exception(e)
