"""
Pydantic schemas for API requests
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# OTP schemas
class AddressRequest(BaseModel):
    address: str = Field(..., description="Email or phone the code is bound to")


class VerifyOTPRequest(BaseModel):
    address: str
    code: str


# Sync schemas
class ProfileWriteRequest(BaseModel):
    data: Dict[str, Any] = Field(..., description="Fields merged into the stored profile")


class BalanceWriteRequest(BaseModel):
    email: str
    balance: float


class RegistryWriteRequest(BaseModel):
    users: List[Dict[str, Any]]


class PolicyUpdateRequest(BaseModel):
    transfersEnabled: Optional[bool] = None
    successRate: Optional[int] = None
    dailyLimit: Optional[float] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class UserPolicyUpdateRequest(BaseModel):
    transfersEnabled: Optional[bool] = None
    successRate: Optional[int] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class BulkUserPolicyRequest(BaseModel):
    policies: Dict[str, UserPolicyUpdateRequest]

    def changes(self) -> Dict[str, Dict[str, Any]]:
        return {user_id: policy.changes() for user_id, policy in self.policies.items()}


class TransactionWriteRequest(BaseModel):
    email: str
    transaction: Dict[str, Any]


# Login schemas
class LoginRequest(BaseModel):
    email: str
    password: str


class LoginVerifyRequest(BaseModel):
    email: str
    code: str
