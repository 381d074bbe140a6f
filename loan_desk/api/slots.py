"""
Physical slot and ordering endpoints
"""

from fastapi import APIRouter, Depends

from ..system import LoanDeskSystem
from .dependencies import get_system
from .schemas import AssignIndexRequest, ReleaseIndexRequest, ReorderRequest


router = APIRouter()


@router.post("/assignIndex")
async def assign_index(
    request: AssignIndexRequest,
    system: LoanDeskSystem = Depends(get_system)
):
    """Place a loan in a slot, displacing the current occupant"""
    evicted = await system.slots.assign_slot(request.account_no, request.index)
    return {"success": True, "displacedAccountNo": evicted}


@router.post("/releaseIndex")
async def release_index(
    request: ReleaseIndexRequest,
    system: LoanDeskSystem = Depends(get_system)
):
    previous = await system.slots.release_slot(request.account_no)
    return {"success": True, "previousIndex": previous}


@router.get("/slots")
async def get_slots(system: LoanDeskSystem = Depends(get_system)):
    """Occupied slots"""
    occupancy = await system.slots.occupancy()
    return {
        "capacity": system.slots.capacity,
        "slots": {str(index): account_no for index, account_no in occupancy.items()}
    }


@router.post("/backfill")
async def backfill_slots(system: LoanDeskSystem = Depends(get_system)):
    """Give free slots to unassigned loans"""
    assigned = await system.slots.backfill()
    return {"success": True, "assigned": assigned}


@router.post("/reorder")
async def reorder_loans(
    request: ReorderRequest,
    system: LoanDeskSystem = Depends(get_system)
):
    """Set each loan's order to its position in the submitted list"""
    await system.reorderer.reorder(request.loans, atomic=request.atomic)
    return {"success": True}
