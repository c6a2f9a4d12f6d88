"""
Record synchronization endpoints
"""

from fastapi import APIRouter, Depends, HTTPException, Query

from .auth import AuthoritySystem, get_system, http_error
from .schemas import (
    BalanceWriteRequest,
    BulkUserPolicyRequest,
    PolicyUpdateRequest,
    ProfileWriteRequest,
    RegistryWriteRequest,
    TransactionWriteRequest,
    UserPolicyUpdateRequest,
)
from ..errors import BankSyncError


router = APIRouter()


# Profile / balance

@router.get("/profile/{email}")
async def get_profile(email: str, system: AuthoritySystem = Depends(get_system)):
    try:
        profile = system.authority.get_profile(email)
    except BankSyncError as e:
        raise http_error(e)
    if profile is None:
        raise HTTPException(status_code=404, detail="Profile not found")
    return {"email": email.strip().lower(), "data": profile}


@router.post("/profile/{email}")
async def put_profile(
    email: str,
    request: ProfileWriteRequest,
    system: AuthoritySystem = Depends(get_system)
):
    """Shallow-merge fields into the profile"""
    try:
        profile = system.authority.put_profile(email, request.data)
    except BankSyncError as e:
        raise http_error(e)
    return {"success": True, "data": profile}


@router.get("/balance")
async def get_balance(email: str = Query(...), system: AuthoritySystem = Depends(get_system)):
    try:
        profile = system.authority.get_profile(email)
    except BankSyncError as e:
        raise http_error(e)
    if profile is None or "balance" not in profile:
        raise HTTPException(status_code=404, detail="Balance not found")
    return {"email": email.strip().lower(), "balance": profile["balance"], "lastUpdated": profile.get("lastUpdated")}


@router.post("/balance")
async def put_balance(request: BalanceWriteRequest, system: AuthoritySystem = Depends(get_system)):
    try:
        profile = system.authority.put_balance(request.email, request.balance)
    except BankSyncError as e:
        raise http_error(e)
    return {"success": True, "data": profile}


# Registry

@router.get("/registry")
async def get_registry(system: AuthoritySystem = Depends(get_system)):
    """All users; users is null until the registry is first written"""
    return {"users": system.authority.get_registry(), "lastUpdated": system.authority.registry_updated_at}


@router.post("/registry")
async def replace_registry(request: RegistryWriteRequest, system: AuthoritySystem = Depends(get_system)):
    """Replace the whole registry"""
    try:
        users, updated_at = system.authority.replace_registry(request.users)
    except BankSyncError as e:
        raise http_error(e)
    return {"success": True, "users": users, "lastUpdated": updated_at}


# Policies

@router.get("/policy/global")
async def get_global_policy(system: AuthoritySystem = Depends(get_system)):
    return {"policy": system.authority.get_global_policy()}


@router.post("/policy/global")
async def put_global_policy(request: PolicyUpdateRequest, system: AuthoritySystem = Depends(get_system)):
    try:
        policy = system.authority.put_global_policy(request.changes())
    except BankSyncError as e:
        raise http_error(e)
    return {"success": True, "policy": policy}


@router.get("/policy/user")
async def get_user_policies(system: AuthoritySystem = Depends(get_system)):
    return {"policies": system.authority.get_all_user_policies()}


# Declared before /policy/user/{user_id} so "bulk" is not taken for an id
@router.post("/policy/user/bulk")
async def put_user_policies_bulk(request: BulkUserPolicyRequest, system: AuthoritySystem = Depends(get_system)):
    try:
        policies = system.authority.put_user_policies_bulk(request.changes())
    except BankSyncError as e:
        raise http_error(e)
    return {"success": True, "policies": policies}


@router.get("/policy/user/{user_id}")
async def get_user_policy(user_id: str, system: AuthoritySystem = Depends(get_system)):
    policy = system.authority.get_user_policy(user_id)
    if policy is None:
        raise HTTPException(status_code=404, detail="Policy not found")
    return {"userId": user_id, "policy": policy}


@router.post("/policy/user/{user_id}")
async def put_user_policy(
    user_id: str,
    request: UserPolicyUpdateRequest,
    system: AuthoritySystem = Depends(get_system)
):
    try:
        policy = system.authority.put_user_policy(user_id, request.changes())
    except BankSyncError as e:
        raise http_error(e)
    return {"success": True, "userId": user_id, "policy": policy}


# Transactions

@router.get("/transactions/{email}")
async def get_transactions(email: str, system: AuthoritySystem = Depends(get_system)):
    try:
        transactions = system.authority.get_transactions(email)
    except BankSyncError as e:
        raise http_error(e)
    return {"email": email.strip().lower(), "transactions": transactions}


@router.post("/transactions")
async def append_transaction(request: TransactionWriteRequest, system: AuthoritySystem = Depends(get_system)):
    """Append an outcome record; an already known id is left untouched"""
    try:
        record, created = system.authority.append_transaction(request.email, request.transaction)
    except BankSyncError as e:
        raise http_error(e)
    return {"success": True, "created": created, "transaction": record}
