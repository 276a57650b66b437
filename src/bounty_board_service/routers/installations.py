"""Installation registration endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse

from bounty_board_service.routers.tasks import outcome_response
from bounty_board_service.routers.users import provisioner
from bounty_board_service.routers.validation import authenticate, parse_json_body, parse_model
from bounty_board_service.schemas import CreateInstallationRequest

router = APIRouter()


@router.post("/installations", status_code=201)
async def create_installation(
    request: Request,
    authorization: str | None = Header(default=None),
) -> JSONResponse:
    """Register an installation owned by the acting user, with its own wallet."""
    user_id = authenticate(authorization)
    payload = parse_model(CreateInstallationRequest, parse_json_body(await request.body()))
    outcome = await provisioner().register_installation(payload.installation_id, user_id)
    return outcome_response(outcome, 201)
