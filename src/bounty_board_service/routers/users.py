"""Endpoints for user registration and the acting user's profile."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse

from bounty_board_service.core.state import get_app_state
from bounty_board_service.routers.tasks import outcome_response
from bounty_board_service.routers.validation import authenticate, parse_json_body, parse_model
from bounty_board_service.schemas import AddressBookEntryRequest, CreateUserRequest

if TYPE_CHECKING:
    from bounty_board_service.services.provisioning import AccountProvisioner
    from bounty_board_service.services.user_directory import UserDirectory

router = APIRouter()


def _user_directory() -> UserDirectory:
    state = get_app_state()
    if state.user_directory is None:
        msg = "User directory not initialized"
        raise RuntimeError(msg)
    return state.user_directory


def provisioner() -> AccountProvisioner:
    state = get_app_state()
    if state.provisioner is None:
        msg = "Account provisioner not initialized"
        raise RuntimeError(msg)
    return state.provisioner


@router.post("/users", status_code=201)
async def create_user(
    request: Request,
    authorization: str | None = Header(default=None),
) -> JSONResponse:
    """Register the acting user, with a custodial wallet unless ``skip_wallet`` is set."""
    user_id = authenticate(authorization)
    payload = parse_model(CreateUserRequest, parse_json_body(await request.body()))
    outcome = await provisioner().register_user(
        user_id, payload.username, with_wallet=not payload.skip_wallet
    )
    return outcome_response(outcome, 201)


@router.get("/users/me")
async def get_current_user(authorization: str | None = Header(default=None)) -> JSONResponse:
    user_id = authenticate(authorization)
    user = _user_directory().get_user(user_id)
    return JSONResponse(status_code=200, content={"data": user, "message": "User retrieved"})


@router.put("/users/me/address-book")
async def add_address_book_entry(
    request: Request,
    authorization: str | None = Header(default=None),
) -> JSONResponse:
    """Save an address; the book keeps the 20 most recent entries."""
    user_id = authenticate(authorization)
    payload = parse_model(AddressBookEntryRequest, parse_json_body(await request.body()))
    book = _user_directory().add_address_book_entry(user_id, payload.address, payload.name)
    return JSONResponse(
        status_code=200,
        content={"data": {"address_book": book}, "message": "Address book updated"},
    )
