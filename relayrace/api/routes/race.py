"""Raced operation endpoints: ticket acquisition and quota submission."""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from relayrace.api.dependencies import Services, get_services, get_session_key
from relayrace.core.errors import MalformedInput
from relayrace.monitoring.logger import get_logger
from relayrace.race.engine import RaceOutcome, RaceState
from relayrace.race.operations import OperationConfig, SubmitOperation, TicketOperation, build_request_headers

logger = get_logger(__name__)

ticket_router = APIRouter()
submit_router = APIRouter()


def outcome_response(outcome: RaceOutcome) -> JSONResponse:
    """Map a race outcome to an HTTP response.

    Args:
        outcome: Race outcome

    Returns:
        200 with the operation payload, 504 on timeout, 500 on fatal errors
    """
    if outcome.state == RaceState.SUCCESS:
        return JSONResponse(outcome.payload)
    if outcome.state == RaceState.TIMEOUT:
        return JSONResponse({"success": False, "message": outcome.message}, status_code=504)
    return JSONResponse({"success": False, "message": outcome.message}, status_code=500)


@ticket_router.get("/entry")
async def ticket_entry(
    request: Request,
    session_key: str = Depends(get_session_key),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Race ticket acquisition across relays.

    Returns:
        ``{data: {ticket}, success: true}`` or a timeout/error response
    """
    operation = TicketOperation(OperationConfig.for_ticket(), build_request_headers(request.headers))
    outcome = await services.engine.run(operation, session_key)
    return outcome_response(outcome)


@submit_router.post("/apply")
async def submit_apply(
    request: Request,
    session_key: str = Depends(get_session_key),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Race a quota submission across relays.

    Body: ``{uniqueId, ticket, quotas: [{tourismSubsidyId, foodSubsidyId?}]}``

    Returns:
        ``{success, isDuplicate, quotaIndex, response}`` or an error response
    """
    try:
        body = await request.json()
    except ValueError:
        body = None

    try:
        operation = SubmitOperation.from_body(
            body,
            OperationConfig.for_submit(),
            build_request_headers(request.headers, json_body=True),
        )
    except MalformedInput as e:
        logger.warning(f"Rejected submission | session={session_key} | {e}")
        return JSONResponse({"success": False, "message": str(e)}, status_code=400)

    outcome = await services.engine.run(operation, session_key)
    return outcome_response(outcome)
