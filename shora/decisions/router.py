"""
Decisions API Router

Endpoints for council decisions: drafting, proposal, voting, resolution and
implementation. A WebSocket relay forwards place-scoped change events.
"""

import asyncio
import logging
from uuid import UUID

from fastapi import (
    APIRouter,
    Depends,
    HTTPException,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.responses import JSONResponse
from fastapi.websockets import WebSocketState

from shora.auth.dependencies import Actor, get_current_actor, parse_actor
from shora.core.events import Subscription
from shora.decisions.entities import Decision, can_user_vote, get_user_vote
from shora.decisions.enums import DecisionStatus
from shora.decisions.errors import (
    AlreadyVoted,
    Conflict,
    DecisionError,
    InvalidTransition,
    NotFound,
    PermissionDenied,
    PersistenceTimeout,
    ValidationError,
    VotingClosed,
)
from shora.decisions.schemas import (
    DecisionCreate,
    DecisionResponse,
    DecisionUpdate,
    ImplementRequest,
    ProposeRequest,
    ResolveRequest,
    TallyResponse,
    UserVoteResponse,
    VoteRequest,
    VoteResponse,
    tally_response,
)
from shora.decisions.services import DecisionLifecycleService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/decisions", tags=["decisions"])
ws_router = APIRouter(tags=["events"])


# =============================================================================
# Error translation
# =============================================================================

ERROR_STATUS: dict[type[DecisionError], int] = {
    NotFound: status.HTTP_404_NOT_FOUND,
    PermissionDenied: status.HTTP_403_FORBIDDEN,
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidTransition: status.HTTP_409_CONFLICT,
    VotingClosed: status.HTTP_409_CONFLICT,
    AlreadyVoted: status.HTTP_409_CONFLICT,
    Conflict: status.HTTP_409_CONFLICT,
    PersistenceTimeout: status.HTTP_503_SERVICE_UNAVAILABLE,
}


async def decision_error_handler(request: Request, exc: DecisionError) -> JSONResponse:
    """Translate engine errors into a stable JSON error body."""
    status_code = ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    body: dict[str, object] = {"error": exc.code, "detail": str(exc)}
    if isinstance(exc, InvalidTransition):
        body["current"] = exc.current
        body["requested"] = exc.requested
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status_code, content=body)


# =============================================================================
# Helper Functions
# =============================================================================


def get_service(request: Request) -> DecisionLifecycleService:
    """Dependency returning the engine built at startup."""
    return request.app.state.decision_service


def ensure_readable(actor: Actor, decision: Decision) -> None:
    if not actor.can_access_place(decision.place_id):
        raise PermissionDenied(f"User {actor.user_id} has no access to place {decision.place_id}")


def _respond(service: DecisionLifecycleService, decision: Decision) -> DecisionResponse:
    return DecisionResponse.from_entity(decision, service.clock())


# =============================================================================
# Collection endpoints
# =============================================================================


@router.get("", response_model=list[DecisionResponse])
async def list_decisions(
    place_id: UUID | None = Query(None, description="Filter by place"),
    shora_id: UUID | None = Query(None, description="Filter by council"),
    status_filter: DecisionStatus | None = Query(None, alias="status"),
    actor: Actor = Depends(get_current_actor),
    service: DecisionLifecycleService = Depends(get_service),
) -> list[DecisionResponse]:
    """List decisions visible to the caller, newest first."""
    if place_id is not None and not actor.can_access_place(place_id):
        raise PermissionDenied(f"User {actor.user_id} has no access to place {place_id}")
    decisions = await service.list_decisions(place_id=place_id, shora_id=shora_id, status=status_filter)
    return [_respond(service, d) for d in decisions if actor.can_access_place(d.place_id)]


@router.post("", response_model=DecisionResponse, status_code=status.HTTP_201_CREATED)
async def create_decision(
    payload: DecisionCreate,
    actor: Actor = Depends(get_current_actor),
    service: DecisionLifecycleService = Depends(get_service),
) -> DecisionResponse:
    """Create a draft decision."""
    decision = await service.create_decision(actor, **payload.model_dump())
    return _respond(service, decision)


@router.get("/active", response_model=list[DecisionResponse])
async def list_active_decisions(
    place_id: UUID | None = Query(None),
    actor: Actor = Depends(get_current_actor),
    service: DecisionLifecycleService = Depends(get_service),
) -> list[DecisionResponse]:
    """Drafts and proposals that are still in progress."""
    decisions = await service.list_active(place_id=place_id)
    return [_respond(service, d) for d in decisions if actor.can_access_place(d.place_id)]


@router.get("/lapsed", response_model=list[DecisionResponse])
async def list_lapsed_decisions(
    place_id: UUID | None = Query(None),
    actor: Actor = Depends(get_current_actor),
    service: DecisionLifecycleService = Depends(get_service),
) -> list[DecisionResponse]:
    """Proposals whose voting deadline passed and which still await resolve."""
    decisions = await service.list_lapsed(place_id=place_id)
    return [_respond(service, d) for d in decisions if actor.can_access_place(d.place_id)]


# =============================================================================
# Single decision
# =============================================================================


@router.get("/{decision_id}", response_model=DecisionResponse)
async def get_decision(
    decision_id: UUID,
    actor: Actor = Depends(get_current_actor),
    service: DecisionLifecycleService = Depends(get_service),
) -> DecisionResponse:
    decision = await service.get_decision(decision_id)
    ensure_readable(actor, decision)
    return _respond(service, decision)


@router.patch("/{decision_id}", response_model=DecisionResponse)
async def update_decision(
    decision_id: UUID,
    payload: DecisionUpdate,
    actor: Actor = Depends(get_current_actor),
    service: DecisionLifecycleService = Depends(get_service),
) -> DecisionResponse:
    """Edit a draft. Fields left out of the body are unchanged."""
    decision = await service.update_decision(
        actor, decision_id, **payload.model_dump(exclude_unset=True)
    )
    return _respond(service, decision)


@router.post("/{decision_id}/propose", response_model=DecisionResponse)
async def propose_decision(
    decision_id: UUID,
    payload: ProposeRequest | None = None,
    actor: Actor = Depends(get_current_actor),
    service: DecisionLifecycleService = Depends(get_service),
) -> DecisionResponse:
    payload = payload or ProposeRequest()
    decision = await service.propose(
        actor,
        decision_id,
        voting_deadline=payload.voting_deadline,
        eligible_voters=payload.eligible_voters,
    )
    return _respond(service, decision)


@router.post("/{decision_id}/resolve", response_model=DecisionResponse)
async def resolve_decision(
    decision_id: UUID,
    payload: ResolveRequest,
    actor: Actor = Depends(get_current_actor),
    service: DecisionLifecycleService = Depends(get_service),
) -> DecisionResponse:
    decision = await service.resolve(
        actor, decision_id, outcome=payload.outcome, override=payload.override
    )
    return _respond(service, decision)


@router.post("/{decision_id}/implement", response_model=DecisionResponse)
async def implement_decision(
    decision_id: UUID,
    payload: ImplementRequest | None = None,
    actor: Actor = Depends(get_current_actor),
    service: DecisionLifecycleService = Depends(get_service),
) -> DecisionResponse:
    payload = payload or ImplementRequest()
    decision = await service.implement(
        actor, decision_id, implementation_date=payload.implementation_date
    )
    return _respond(service, decision)


# =============================================================================
# Voting
# =============================================================================


@router.post("/{decision_id}/votes", response_model=TallyResponse)
async def cast_vote(
    decision_id: UUID,
    payload: VoteRequest,
    actor: Actor = Depends(get_current_actor),
    service: DecisionLifecycleService = Depends(get_service),
) -> TallyResponse:
    """Cast the caller's vote. Each council member votes once."""
    decision = await service.record_vote(
        actor,
        decision_id,
        payload.vote,
        reason=payload.reason,
        reason_persian=payload.reason_persian,
    )
    return tally_response(decision, service.clock())


@router.get("/{decision_id}/votes", response_model=TallyResponse)
async def get_tally(
    decision_id: UUID,
    actor: Actor = Depends(get_current_actor),
    service: DecisionLifecycleService = Depends(get_service),
) -> TallyResponse:
    decision = await service.get_decision(decision_id)
    ensure_readable(actor, decision)
    return tally_response(decision, service.clock())


@router.get("/{decision_id}/votes/me", response_model=UserVoteResponse)
async def get_my_vote(
    decision_id: UUID,
    actor: Actor = Depends(get_current_actor),
    service: DecisionLifecycleService = Depends(get_service),
) -> UserVoteResponse:
    decision = await service.get_decision(decision_id)
    ensure_readable(actor, decision)
    vote = get_user_vote(decision, actor.user_id)
    return UserVoteResponse(
        decision_id=decision.id,
        has_voted=vote is not None,
        can_vote=can_user_vote(decision, actor.user_id, service.clock()),
        vote=VoteResponse.from_entity(vote) if vote else None,
    )


# =============================================================================
# Place event relay
# =============================================================================


async def _forward(websocket: WebSocket, stream: Subscription) -> None:
    async for payload in stream:
        await websocket.send_text(payload)


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    # Clients only listen; anything they send is ignored
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


async def relay_events(websocket: WebSocket, stream: Subscription) -> None:
    """
    Forward ``stream`` to the socket until the client leaves or the stream ends.

    A second task reads from the socket so a disconnect is noticed even while
    the channel is quiet. The subscription is closed either way.
    """
    forward = asyncio.ensure_future(_forward(websocket, stream))
    watch = asyncio.ensure_future(_wait_for_disconnect(websocket))
    try:
        await asyncio.wait({forward, watch}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        forward.cancel()
        watch.cancel()
        results = await asyncio.gather(forward, watch, return_exceptions=True)
        await stream.aclose()

    for result in results:
        if isinstance(result, Exception) and not isinstance(result, WebSocketDisconnect):
            logger.warning("Event relay stopped: %s", result)


@ws_router.websocket("/ws/places/{place_id}")
async def place_events(websocket: WebSocket, place_id: UUID) -> None:
    """Forward decision events for one place to a connected client."""
    try:
        actor = parse_actor(
            websocket.headers.get("x-user-id"),
            websocket.headers.get("x-user-roles"),
            websocket.headers.get("x-user-permissions"),
            websocket.headers.get("x-place-scope"),
        )
    except HTTPException:
        await websocket.close(code=4401)
        return
    if not actor.can_access_place(place_id):
        await websocket.close(code=4403)
        return

    await websocket.accept()
    stream = websocket.app.state.publisher.subscribe(place_id)
    logger.info("Client %s joined place %s", actor.user_id, place_id)
    try:
        await relay_events(websocket, stream)
    finally:
        logger.info("Client %s left place %s", actor.user_id, place_id)

    if (
        websocket.client_state == WebSocketState.CONNECTED
        and websocket.application_state == WebSocketState.CONNECTED
    ):
        await websocket.close()
