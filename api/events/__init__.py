"""Chain event delivery endpoints.

An upstream watcher posts verified events here. Answers are chosen so that
delivery infrastructure can tell outcomes apart:
- 200 with outcome ``applied`` when the event changed local state
- 200 with outcome ``duplicate`` when it had already been applied
- 409 with code ``ORPHAN_EVENT`` when local state has no target for it
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request, status
from fastapi.responses import JSONResponse

from chain import ChainEvent, EventMethod
from errors import MarketError, DuplicateEvent, OrphanEvent
from notifications import safe_notify, TOPIC_EVENT_APPLIED, TOPIC_EVENT_ORPHANED
from reconciler import EventReconciler, DUPLICATE, ORPHAN
from ..errors import http_error

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(
    prefix="/events",
    tags=["Events"]
)


async def _reconcile(
    run: Callable[[], Awaitable[Dict[str, Any]]],
    event_info: Dict[str, Any],
    recipient: Optional[str],
    request: Request,
    background_tasks: BackgroundTasks
):
    notifier = getattr(request.app.state, 'notifier', None)

    try:
        result = await run()
    except DuplicateEvent as e:
        return {**event_info, "outcome": DUPLICATE, "message": str(e)}
    except OrphanEvent as e:
        background_tasks.add_task(
            safe_notify, notifier, recipient, TOPIC_EVENT_ORPHANED,
            {**event_info, "reason": str(e)}, False
        )
        return JSONResponse(
            status_code=e.http_status,
            content={"detail": {**e.to_dict(), **event_info, "outcome": ORPHAN}}
        )
    except MarketError as e:
        raise http_error(e)

    background_tasks.add_task(
        safe_notify, notifier, result.get('recipient'), TOPIC_EVENT_APPLIED, result, True
    )
    return result


@router.post("")
async def apply_event(event: ChainEvent, request: Request, background_tasks: BackgroundTasks):
    """Apply a verified chain event."""
    event_info = {"tx_hash": event.tx_hash, "method": event.method.value}
    return await _reconcile(
        lambda: EventReconciler().apply(event),
        event_info, event.counterparty, request, background_tasks
    )


@router.post("/{method}/{tx_hash}/refresh")
async def refresh_event(method: str, tx_hash: str, request: Request, background_tasks: BackgroundTasks):
    """Fetch a verified event by transaction hash and apply it."""
    fetcher = getattr(request.app.state, 'chain_fetcher', None)
    if fetcher is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "FETCHER_UNAVAILABLE", "message": "No chain log fetcher configured"}
        )

    try:
        event_method = EventMethod.parse(method)
    except MarketError as e:
        raise http_error(e)

    event_info = {"tx_hash": tx_hash.lower(), "method": event_method.value}
    return await _reconcile(
        lambda: EventReconciler(fetcher=fetcher).refresh(tx_hash, event_method),
        event_info, None, request, background_tasks
    )
