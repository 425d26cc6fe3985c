from fastapi import APIRouter, Depends, HTTPException, status

from app.api.deps import get_relay
from app.core.exceptions import SessionNotFoundError
from app.schemas.interaction import InteractionSummary, StatusChangeRequest
from app.services.relay_engine import RelayEngine

router = APIRouter()


@router.patch("/{interaction_id}/status", response_model=InteractionSummary, response_model_by_alias=True)
async def update_interaction_status(
    interaction_id: str,
    request: StatusChangeRequest,
    relay: RelayEngine = Depends(get_relay),
):
    """
    Hand a status change made elsewhere (report filed, owner ignoring, manual
    resolve) to the relay so connected clients see it.
    """
    try:
        session = await relay.change_status(interaction_id, request.status)
    except SessionNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Interaction not found")
    return InteractionSummary.from_session(session)
