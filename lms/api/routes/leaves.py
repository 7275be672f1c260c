"""
Leave Routes
Leave application and approval workflow
"""
from fastapi import APIRouter, Depends, Request
from typing import List, Optional
from beanie import PydanticObjectId

from lms.models.leave import (
    BulkDecisionRequest,
    BulkResult,
    DecisionRequest,
    ExtensionRequest,
    LeaveCreate,
    LeaveListResponse,
    LeaveRequest,
    LeaveResponse,
    LeaveStatus,
    LeaveUpdate,
    ShortenRequest,
)
from lms.models.user import User
from lms.api.routes.auth import get_current_user
from lms.services.workflow import workflow


router = APIRouter()


async def rate_limited_user(request: Request, current_user: User = Depends(get_current_user)) -> User:
    """Authenticated user, counted against the per-user rate limit"""
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is not None:
        await limiter.hit(f"user:{current_user.id}")
    return current_user


def to_response(leave: LeaveRequest) -> LeaveResponse:
    return LeaveResponse.model_validate(leave)


def to_list(leaves: List[LeaveRequest]) -> dict:
    return {"total": len(leaves), "leaves": [to_response(leave) for leave in leaves]}


@router.post("/", response_model=LeaveResponse)
async def create_draft(request: LeaveCreate, current_user: User = Depends(rate_limited_user)):
    """
    Save a leave request as a draft
    """
    return to_response(await workflow.create_draft(current_user, request))


@router.post("/submit", response_model=LeaveResponse)
async def apply_leave(request: LeaveCreate, current_user: User = Depends(rate_limited_user)):
    """
    Create and submit a leave request in one step
    """
    return to_response(await workflow.apply(current_user, request))


@router.get("/my", response_model=LeaveListResponse)
async def get_my_leaves(
    status: Optional[LeaveStatus] = None,
    current_user: User = Depends(get_current_user)
):
    """
    Leave requests of the current user
    """
    return to_list(await workflow.list_for_requester(current_user, status))


@router.get("/pending", response_model=LeaveListResponse)
async def get_pending_leaves(current_user: User = Depends(get_current_user)):
    """
    Requests waiting for the current user's decision
    """
    return to_list(await workflow.list_pending_for(current_user))


@router.post("/bulk/approve", response_model=BulkResult)
async def bulk_approve(request: BulkDecisionRequest, current_user: User = Depends(rate_limited_user)):
    """
    Approve several requests at their final stage; failures are reported per request
    """
    return await workflow.bulk_approve(request.ids, current_user, request.comment)


@router.post("/bulk/cancel", response_model=BulkResult)
async def bulk_cancel(request: BulkDecisionRequest, current_user: User = Depends(rate_limited_user)):
    return await workflow.bulk_cancel(request.ids, current_user, request.comment)


@router.get("/{leave_id}", response_model=LeaveResponse)
async def get_leave(leave_id: PydanticObjectId, current_user: User = Depends(get_current_user)):
    return to_response(await workflow.get_for_viewer(leave_id, current_user))


@router.get("/{leave_id}/versions")
async def get_leave_versions(leave_id: PydanticObjectId, current_user: User = Depends(get_current_user)):
    """
    Version history of a request, oldest first
    """
    versions = await workflow.versions(leave_id, current_user)
    return [
        {
            "version": v.version,
            "action": v.action,
            "actor_id": str(v.actor_id) if v.actor_id else None,
            "actor_role": v.actor_role,
            "created_at": v.created_at,
            "data": to_response(v.restore()),
        }
        for v in versions
    ]


@router.post("/{leave_id}/submit", response_model=LeaveResponse)
async def submit_draft(leave_id: PydanticObjectId, current_user: User = Depends(rate_limited_user)):
    return to_response(await workflow.submit(leave_id, current_user))


@router.post("/{leave_id}/forward", response_model=LeaveResponse)
async def forward_leave(
    leave_id: PydanticObjectId,
    request: Optional[DecisionRequest] = None,
    current_user: User = Depends(rate_limited_user)
):
    comment = request.comment if request else None
    return to_response(await workflow.forward(leave_id, current_user, comment))


@router.post("/{leave_id}/approve", response_model=LeaveResponse)
async def approve_leave(
    leave_id: PydanticObjectId,
    request: Optional[DecisionRequest] = None,
    current_user: User = Depends(rate_limited_user)
):
    comment = request.comment if request else None
    return to_response(await workflow.approve(leave_id, current_user, comment))


@router.post("/{leave_id}/reject", response_model=LeaveResponse)
async def reject_leave(
    leave_id: PydanticObjectId,
    request: DecisionRequest,
    current_user: User = Depends(rate_limited_user)
):
    return to_response(await workflow.reject(leave_id, current_user, request.comment))


@router.post("/{leave_id}/return", response_model=LeaveResponse)
async def return_leave(
    leave_id: PydanticObjectId,
    request: DecisionRequest,
    current_user: User = Depends(rate_limited_user)
):
    return to_response(await workflow.return_to_requester(leave_id, current_user, request.comment))


@router.post("/{leave_id}/resubmit", response_model=LeaveResponse)
async def resubmit_leave(
    leave_id: PydanticObjectId,
    request: Optional[LeaveUpdate] = None,
    current_user: User = Depends(rate_limited_user)
):
    changes = request.model_dump(exclude_none=True) if request else None
    return to_response(await workflow.resubmit(leave_id, current_user, changes))


@router.post("/{leave_id}/certificate", response_model=LeaveResponse)
async def attach_certificate(leave_id: PydanticObjectId, current_user: User = Depends(rate_limited_user)):
    return to_response(await workflow.attach_certificate(leave_id, current_user))


@router.post("/{leave_id}/cancel", response_model=LeaveResponse)
async def cancel_leave(
    leave_id: PydanticObjectId,
    request: Optional[DecisionRequest] = None,
    current_user: User = Depends(rate_limited_user)
):
    """
    Cancel a draft/returned request, or ask for cancellation of a submitted or approved one
    """
    reason = request.comment if request else None
    return to_response(await workflow.request_cancellation(leave_id, current_user, reason))


@router.post("/{leave_id}/cancellation/approve", response_model=LeaveResponse)
async def approve_cancellation(
    leave_id: PydanticObjectId,
    request: Optional[DecisionRequest] = None,
    current_user: User = Depends(rate_limited_user)
):
    comment = request.comment if request else None
    return to_response(await workflow.approve_cancellation(leave_id, current_user, comment))


@router.post("/{leave_id}/cancellation/reject", response_model=LeaveResponse)
async def reject_cancellation(
    leave_id: PydanticObjectId,
    request: Optional[DecisionRequest] = None,
    current_user: User = Depends(rate_limited_user)
):
    comment = request.comment if request else None
    return to_response(await workflow.reject_cancellation(leave_id, current_user, comment))


@router.post("/{leave_id}/recall", response_model=LeaveResponse)
async def recall_leave(
    leave_id: PydanticObjectId,
    request: Optional[DecisionRequest] = None,
    current_user: User = Depends(rate_limited_user)
):
    """
    Recall an employee from approved leave (HR / CEO)
    """
    comment = request.comment if request else None
    return to_response(await workflow.recall(leave_id, current_user, comment=comment))


@router.post("/{leave_id}/extend", response_model=LeaveResponse)
async def extend_leave(
    leave_id: PydanticObjectId,
    request: ExtensionRequest,
    current_user: User = Depends(rate_limited_user)
):
    """
    Request more days after approved leave that is under way; returns the new request
    """
    return to_response(await workflow.extend(leave_id, current_user, request.new_end_date, request.reason))


@router.post("/{leave_id}/shorten", response_model=LeaveResponse)
async def shorten_leave(
    leave_id: PydanticObjectId,
    request: ShortenRequest,
    current_user: User = Depends(rate_limited_user)
):
    return to_response(await workflow.shorten(leave_id, current_user, request.new_end_date, request.reason))


@router.post("/{leave_id}/partial-cancel", response_model=LeaveResponse)
async def partial_cancel_leave(
    leave_id: PydanticObjectId,
    request: Optional[DecisionRequest] = None,
    current_user: User = Depends(rate_limited_user)
):
    """
    Give up the remaining days of approved leave that is under way
    """
    reason = request.comment if request else None
    return to_response(await workflow.partial_cancel(leave_id, current_user, reason))


@router.post("/{leave_id}/fitness-certificate", response_model=LeaveResponse)
async def attach_fitness_certificate(leave_id: PydanticObjectId, current_user: User = Depends(rate_limited_user)):
    return to_response(await workflow.attach_fitness_certificate(leave_id, current_user))


@router.post("/{leave_id}/fitness-certificate/approve", response_model=LeaveResponse)
async def approve_fitness_certificate(
    leave_id: PydanticObjectId,
    request: Optional[DecisionRequest] = None,
    current_user: User = Depends(rate_limited_user)
):
    comment = request.comment if request else None
    return to_response(await workflow.approve_fitness_certificate(leave_id, current_user, comment))


@router.post("/{leave_id}/return-to-duty", response_model=LeaveResponse)
async def return_to_duty(leave_id: PydanticObjectId, current_user: User = Depends(rate_limited_user)):
    return to_response(await workflow.return_to_duty(leave_id, current_user))
