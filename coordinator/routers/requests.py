"""Oracle request endpoints: status lookup and node report submission."""

from fastapi import APIRouter, Depends

from coordinator.auth.middleware import AuthenticatedNode, verify_request
from coordinator.schemas.request import (
    FulfillmentResponse,
    PayoutResponse,
    ReportCreate,
    ReportResponse,
    RequestDetailResponse,
)
from coordinator.services.coordinator import Coordinator, get_coordinator

router = APIRouter(prefix="/requests", tags=["requests"])


@router.get("/{request_id}", response_model=RequestDetailResponse)
async def get_request(
    request_id: str,
    coordinator: Coordinator = Depends(get_coordinator),
) -> RequestDetailResponse:
    """Request state plus accepted reports in received order."""
    request = await coordinator.request(request_id)
    reports = await coordinator.reports(request_id)
    response = RequestDetailResponse.model_validate(request)
    response.reports = [ReportResponse.model_validate(r) for r in reports]
    return response


@router.post("/{request_id}/reports", response_model=FulfillmentResponse, status_code=201)
async def submit_report(
    request_id: str,
    data: ReportCreate,
    auth: AuthenticatedNode = Depends(verify_request),
    coordinator: Coordinator = Depends(get_coordinator),
) -> FulfillmentResponse:
    """Submit the authenticated node's answer for a request."""
    outcome = await coordinator.fulfill_oracle_request(request_id, auth.address, data.value)
    return FulfillmentResponse(
        request_id=outcome.request_id,
        node=outcome.node,
        received_order=outcome.received_order,
        complete=outcome.complete,
        final_value=outcome.final_value,
        payouts=[PayoutResponse.model_validate(p) for p in outcome.payouts],
        callback_delivered=(
            outcome.callback_result.delivered if outcome.callback_result is not None else None
        ),
    )
