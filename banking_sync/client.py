"""
Authority Client Module

Async HTTP client a device uses to talk to the sync authority, plus an OTP
gateway that exposes the authority's OTP endpoints with the same interface
as the in-process gateway.
"""

from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx

from .errors import SyncUnavailable, ValidationError
from .logging_config import get_logger
from .otp import IssueResult, OTPStatus, VerificationResult, VerifyReason


logger = get_logger("banking_sync.client")


def _segment(value: str) -> str:
    """Escape a value used as one URL path segment"""
    return quote(value, safe="@")


class AuthorityClient:
    """REST client for the sync authority"""

    def __init__(
        self,
        base_url: str = "http://localhost:3001",
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
        expected: Tuple[int, ...] = (200,)
    ) -> httpx.Response:
        """
        Send a request and translate transport failures.

        Network errors and 5xx answers raise SyncUnavailable; a 400 raises
        ValidationError with the authority's message. Statuses listed in
        expected are returned to the caller.
        """
        try:
            response = await self._client.request(method, path, json=json, params=params)
        except httpx.HTTPError as e:
            logger.warning(f"Authority request {method} {path} failed: {e}")
            raise SyncUnavailable(f"Authority unreachable: {e}")

        if response.status_code in expected:
            return response
        if response.status_code >= 500:
            raise SyncUnavailable(f"Authority returned {response.status_code} for {method} {path}")
        if response.status_code in (400, 422):
            raise ValidationError(self._detail(response))
        raise SyncUnavailable(f"Unexpected status {response.status_code} for {method} {path}")

    @staticmethod
    def _detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text
        if isinstance(body, dict):
            return str(body.get("detail") or body.get("message") or body)
        return str(body)

    # OTP

    async def issue_otp(self, address: str) -> Dict[str, Any]:
        response = await self._request("POST", "/otp/issue", json={"address": address})
        return response.json()

    async def verify_otp(self, address: str, code: str) -> Dict[str, Any]:
        # Failed verifications come back as 400 with a structured body
        response = await self._request(
            "POST", "/otp/verify", json={"address": address, "code": code}, expected=(200, 400)
        )
        return response.json()

    async def clear_otp(self, address: str) -> bool:
        response = await self._request("POST", "/otp/clear", json={"address": address})
        return bool(response.json().get("success"))

    async def otp_status(self, address: str) -> Dict[str, Any]:
        response = await self._request("POST", "/otp/status", json={"address": address})
        return response.json()

    # Profile / balance

    async def get_profile(self, email: str) -> Optional[Dict[str, Any]]:
        response = await self._request("GET", f"/sync/profile/{_segment(email)}", expected=(200, 404))
        if response.status_code == 404:
            return None
        return response.json().get("data")

    async def put_profile(self, email: str, partial: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._request("POST", f"/sync/profile/{_segment(email)}", json={"data": partial})
        return response.json()["data"]

    async def put_balance(self, email: str, balance: float) -> Dict[str, Any]:
        response = await self._request("POST", "/sync/balance", json={"email": email, "balance": balance})
        return response.json()["data"]

    # Registry

    async def get_registry(self) -> Optional[List[Dict[str, Any]]]:
        response = await self._request("GET", "/sync/registry")
        return response.json().get("users")

    async def replace_registry(self, users: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        response = await self._request("POST", "/sync/registry", json={"users": users})
        return response.json()["users"]

    # Policies

    async def get_global_policy(self) -> Optional[Dict[str, Any]]:
        response = await self._request("GET", "/sync/policy/global")
        return response.json().get("policy")

    async def put_global_policy(self, partial: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._request("POST", "/sync/policy/global", json=partial)
        return response.json()["policy"]

    async def get_user_policies(self) -> Dict[str, Dict[str, Any]]:
        response = await self._request("GET", "/sync/policy/user")
        return response.json().get("policies") or {}

    async def get_user_policy(self, user_id: str) -> Optional[Dict[str, Any]]:
        response = await self._request("GET", f"/sync/policy/user/{_segment(user_id)}", expected=(200, 404))
        if response.status_code == 404:
            return None
        return response.json().get("policy")

    async def put_user_policy(self, user_id: str, partial: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._request("POST", f"/sync/policy/user/{_segment(user_id)}", json=partial)
        return response.json()["policy"]

    async def put_user_policies_bulk(self, policies: Dict[str, Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
        response = await self._request("POST", "/sync/policy/user/bulk", json={"policies": policies})
        return response.json()["policies"]

    # Transactions

    async def get_transactions(self, email: str) -> List[Dict[str, Any]]:
        response = await self._request("GET", f"/sync/transactions/{_segment(email)}")
        return response.json().get("transactions") or []

    async def append_transaction(self, email: str, transaction: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._request(
            "POST", "/sync/transactions", json={"email": email, "transaction": transaction}
        )
        return response.json()["transaction"]

    async def health_check(self) -> bool:
        """Check if the authority is reachable"""
        try:
            await self._request("GET", "/health")
            return True
        except SyncUnavailable:
            return False

    async def aclose(self) -> None:
        await self._client.aclose()


class RemoteOTPGateway:
    """OTP operations served by the authority over HTTP"""

    def __init__(self, client: AuthorityClient):
        self.client = client

    async def issue(self, address: str) -> IssueResult:
        body = await self.client.issue_otp(address)
        return IssueResult(
            address=address.strip().lower(),
            expires_in=int(body.get("expiresIn", 0)),
            message=body.get("message", "")
        )

    async def verify(self, address: str, code: str) -> VerificationResult:
        body = await self.client.verify_otp(address, code)
        if body.get("success"):
            return VerificationResult(True, VerifyReason.VERIFIED, body.get("message", ""))
        if "reason" not in body:
            # rejected as malformed input, not a failed verification
            raise ValidationError(str(body.get("detail") or body.get("message") or "Invalid verification request"))
        return VerificationResult(
            False,
            VerifyReason(body["reason"]),
            body.get("message", ""),
            remaining_attempts=body.get("remainingAttempts")
        )

    async def clear(self, address: str) -> bool:
        return await self.client.clear_otp(address)

    async def status(self, address: str) -> OTPStatus:
        body = await self.client.otp_status(address)
        return OTPStatus(
            verified=bool(body.get("verified")),
            remaining_seconds=int(body.get("remainingSeconds", 0))
        )
