"""
OTP endpoints
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from .auth import AuthoritySystem, get_system, http_error
from .schemas import AddressRequest, VerifyOTPRequest
from ..errors import BankSyncError


router = APIRouter()


@router.post("/issue")
async def issue_otp(
    request: AddressRequest,
    system: AuthoritySystem = Depends(get_system)
):
    """Issue a code for an address; delivery failures do not fail the request"""
    try:
        result = await system.otp_authority.issue(request.address)
    except BankSyncError as e:
        raise http_error(e)
    return {"success": True, "message": result.message, "expiresIn": result.expires_in}


@router.post("/verify")
async def verify_otp(
    request: VerifyOTPRequest,
    system: AuthoritySystem = Depends(get_system)
):
    """Verify a code; failures answer 400 with the reason and remaining attempts"""
    try:
        result = system.otp_authority.verify(request.address, request.code)
    except BankSyncError as e:
        raise http_error(e)

    if result.ok:
        return {"success": True, "message": result.message}

    content = {"success": False, "message": result.message, "reason": result.reason.value}
    if result.remaining_attempts is not None:
        content["remainingAttempts"] = result.remaining_attempts
    return JSONResponse(status_code=400, content=content)


@router.post("/clear")
async def clear_otp(
    request: AddressRequest,
    system: AuthoritySystem = Depends(get_system)
):
    try:
        system.otp_authority.clear(request.address)
    except BankSyncError as e:
        raise http_error(e)
    return {"success": True}


@router.post("/status")
async def otp_status(
    request: AddressRequest,
    system: AuthoritySystem = Depends(get_system)
):
    try:
        status = system.otp_authority.status(request.address)
    except BankSyncError as e:
        raise http_error(e)
    return {"verified": status.verified, "remainingSeconds": status.remaining_seconds}
