"""
Default records for each synchronized family.

Used to seed a device cache that has never been written and to answer
per-user policy reads for users without an explicit entry.
"""

import copy
from typing import Any, Dict, List


DEFAULT_GLOBAL_POLICY: Dict[str, Any] = {
    "transfersEnabled": True,
    "successRate": 100,
    "dailyLimit": 100000,
}

DEFAULT_USER_POLICY: Dict[str, Any] = {
    "transfersEnabled": True,
    "successRate": 100,
}

DEFAULT_REGISTRY: List[Dict[str, Any]] = [
    {
        "id": "admin-001",
        "email": "admin@example.com",
        "fullName": "Admin User",
        "phone": "+1 (555) 000-0001",
        "password": "admin123",
        "balance": 0,
        "status": "active",
        "joinDate": "2025-01-01",
        "kycStatus": "verified",
        "role": "admin",
    },
    {
        "id": "cust-001",
        "email": "test@example.com",
        "fullName": "John Demo",
        "phone": "+1 (555) 000-0000",
        "password": "test123",
        "balance": 48392.50,
        "status": "active",
        "joinDate": "2025-06-15",
        "kycStatus": "verified",
    },
    {
        "id": "cust-002",
        "email": "demo@example.com",
        "gmailAddress": "demo.user@example.net",
        "fullName": "Demo User",
        "phone": "+1 (555) 111-1111",
        "password": "demo123",
        "balance": 22500.00,
        "status": "active",
        "joinDate": "2025-07-20",
        "kycStatus": "verified",
    },
    {
        "id": "cust-003",
        "email": "alice@example.com",
        "fullName": "Alice Johnson",
        "phone": "+1 (555) 222-2222",
        "password": "alice123",
        "balance": 15750.25,
        "status": "active",
        "joinDate": "2025-08-10",
        "kycStatus": "pending",
    },
]


def default_global_policy() -> Dict[str, Any]:
    return copy.deepcopy(DEFAULT_GLOBAL_POLICY)


def default_user_policy() -> Dict[str, Any]:
    return copy.deepcopy(DEFAULT_USER_POLICY)


def default_registry() -> List[Dict[str, Any]]:
    return copy.deepcopy(DEFAULT_REGISTRY)
