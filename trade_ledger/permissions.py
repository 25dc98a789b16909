from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List


@dataclass(frozen=True)
class PermissionDefinition:
    key: str
    label: str
    category: str
    action: str  # "view" or "operate"
    description: str = ""


PERMISSIONS: List[PermissionDefinition] = [
    PermissionDefinition(
        key="customer.view",
        label="View customers",
        category="Customers",
        action="view",
        description="Browse customers, their statements and outstanding balances.",
    ),
    PermissionDefinition(
        key="customer.manage",
        label="Manage customers",
        category="Customers",
        action="operate",
        description="Create, edit or delete customers (deleting removes their bills and payments).",
    ),
    PermissionDefinition(
        key="agent.view",
        label="View agents",
        category="Agents",
        action="view",
        description="Browse agents, their payments, settlements and pending balances.",
    ),
    PermissionDefinition(
        key="agent.manage",
        label="Manage agents",
        category="Agents",
        action="operate",
        description="Create, edit or delete agents and their conversion rates.",
    ),
    PermissionDefinition(
        key="supplier.view",
        label="View suppliers",
        category="Suppliers",
        action="view",
        description="Browse suppliers, their transactions and net balances.",
    ),
    PermissionDefinition(
        key="supplier.manage",
        label="Manage suppliers",
        category="Suppliers",
        action="operate",
        description="Create, edit or delete suppliers.",
    ),
    PermissionDefinition(
        key="bank.view",
        label="View bank accounts",
        category="Bank",
        action="view",
        description="Browse bank and wallet accounts and run reconciliation checks.",
    ),
    PermissionDefinition(
        key="bank.manage",
        label="Manage bank accounts",
        category="Bank",
        action="operate",
        description="Create or delete accounts, override balances and apply reconciliation.",
    ),
    PermissionDefinition(
        key="ledger.manage",
        label="Record ledger entries",
        category="Ledger",
        action="operate",
        description="Create, edit or delete bills, payments, settlements and supplier transactions.",
    ),
    PermissionDefinition(
        key="overview.view",
        label="View overview",
        category="Dashboard",
        action="view",
        description="Access the system overview and its live WebSocket feed.",
    ),
    PermissionDefinition(
        key="admin.manage",
        label="Manage staff",
        category="System",
        action="operate",
        description="Create, enable or disable staff accounts and configure permissions.",
    ),
]

PERMISSION_MAP: Dict[str, PermissionDefinition] = {perm.key: perm for perm in PERMISSIONS}
ALL_PERMISSION_KEYS = set(PERMISSION_MAP.keys())

ROLE_DEFAULT_PERMISSIONS: Dict[str, Dict[str, bool]] = {
    "accountant": {key: True for key in ALL_PERMISSION_KEYS if key != "admin.manage"},
    "clerk": {
        "customer.view": True,
        "agent.view": True,
        "supplier.view": True,
        "bank.view": True,
        "ledger.manage": True,
        "overview.view": True,
    },
}


def sanitize_permissions(raw: Dict[str, bool] | None) -> Dict[str, bool]:
    if not raw:
        return {}
    return {key: bool(value) for key, value in raw.items() if key in ALL_PERMISSION_KEYS}
