"""
OTP-gated login endpoints
"""

from typing import Dict

from fastapi import APIRouter, Depends

from .auth import AuthoritySystem, get_current_account, get_system, http_error
from .schemas import LoginRequest, LoginVerifyRequest
from ..errors import BankSyncError


router = APIRouter()


@router.post("/login")
async def login(request: LoginRequest, system: AuthoritySystem = Depends(get_system)):
    """Check credentials and send a one-time code"""
    try:
        challenge = await system.login.begin(request.email, request.password)
    except BankSyncError as e:
        raise http_error(e)
    return {
        "success": True,
        "message": challenge.message,
        "otpAddress": challenge.otp_address,
        "expiresIn": challenge.expires_in,
    }


@router.post("/login/verify")
async def verify_login(request: LoginVerifyRequest, system: AuthoritySystem = Depends(get_system)):
    """Exchange a verified code for session tokens"""
    try:
        session = system.login.complete(request.email, request.code)
    except BankSyncError as e:
        raise http_error(e)
    return {**session.to_dict(), "message": "Login successful"}


@router.get("/me")
async def me(account: Dict = Depends(get_current_account)):
    return {"user": account}
