"""
Devices feature: API routes for provisioning.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from classroom_sync.core.dependencies import get_current_user_id, get_device_service
from classroom_sync.core.exceptions import ProvisioningError, app_error_to_http
from classroom_sync.features.devices.models import Device
from classroom_sync.features.devices.schemas import DeviceCreate, ProvisionedDevice, SwitchesUpdate
from classroom_sync.features.devices.service import DeviceService

router = APIRouter()


@router.post("", response_model=ProvisionedDevice, status_code=status.HTTP_201_CREATED)
async def provision_device(
    data: DeviceCreate,
    user_id: str = Depends(get_current_user_id),
    service: DeviceService = Depends(get_device_service),
):
    """Register a device. The response is the only place the secret is ever shown."""
    try:
        device, secret = await service.provision(data)
    except ProvisioningError as e:
        raise app_error_to_http(e)
    return ProvisionedDevice(device=device, secret=secret)


@router.put("/{device_id}/switches", response_model=Device)
async def update_device_switches(
    device_id: str,
    data: SwitchesUpdate,
    user_id: str = Depends(get_current_user_id),
    service: DeviceService = Depends(get_device_service),
):
    try:
        device = await service.update_switches(device_id, data.switches)
    except ProvisioningError as e:
        raise app_error_to_http(e)
    if device is None:
        raise HTTPException(status_code=404, detail="Device not found")
    return device
