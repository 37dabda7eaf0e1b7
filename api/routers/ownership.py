from typing import List

from fastapi import APIRouter, Depends

from api.dependencies import get_transfer_orchestrator
from services.transfers.models import OwnershipVerification
from services.transfers.orchestrator import TransferOrchestrator

router = APIRouter(prefix="/ownership", tags=["Ownership"])


@router.get("/{user_id}", response_model=List[OwnershipVerification])
async def reconcile_user_holdings(
    user_id: str,
    orchestrator: TransferOrchestrator = Depends(get_transfer_orchestrator),
):
    """Verification for every product the user holds on the platform or the register."""
    return await orchestrator.reconcile_user_holdings(user_id)


@router.get("/{user_id}/{product_id}", response_model=OwnershipVerification)
async def verify_ownership(
    user_id: str,
    product_id: str,
    orchestrator: TransferOrchestrator = Depends(get_transfer_orchestrator),
):
    return await orchestrator.verify_ownership(user_id, product_id)
