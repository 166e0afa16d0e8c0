"""
Commands feature: API routes for toggling switches.
"""

from fastapi import APIRouter, Depends

from classroom_sync.core.dependencies import get_current_user_id, get_dispatcher
from classroom_sync.features.commands.dispatcher import CommandDispatcher
from classroom_sync.features.commands.schemas import (
    BulkOutcome,
    BulkToggleRequest,
    ToggleOutcome,
    ToggleRequest,
)

router = APIRouter()


@router.post("/bulk/toggle", response_model=BulkOutcome)
async def bulk_toggle(
    data: BulkToggleRequest,
    user_id: str = Depends(get_current_user_id),
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
):
    """Set every switch on every connected device."""
    return await dispatcher.toggle_all(data.state)


@router.post("/bulk/type/{switch_type}", response_model=BulkOutcome)
async def bulk_toggle_by_type(
    switch_type: str,
    data: BulkToggleRequest,
    user_id: str = Depends(get_current_user_id),
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
):
    return await dispatcher.toggle_by_type(switch_type, data.state)


@router.post("/bulk/location/{location}", response_model=BulkOutcome)
async def bulk_toggle_by_location(
    location: str,
    data: BulkToggleRequest,
    user_id: str = Depends(get_current_user_id),
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
):
    return await dispatcher.toggle_by_location(location, data.state)


@router.post("/{device_id}/switches/{switch_id}/toggle", response_model=ToggleOutcome)
async def toggle_switch(
    device_id: str,
    switch_id: str,
    data: ToggleRequest | None = None,
    user_id: str = Depends(get_current_user_id),
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
):
    """Toggle one switch. The outcome says whether it was sent, queued or ignored."""
    desired = data.state if data else None
    return await dispatcher.request_toggle(device_id, switch_id, desired)
