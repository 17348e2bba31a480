"""
Capability Constants and Definitions

WHY: Centralized capability codes keep the transition gates, the document
registry and the role defaults consistent. The gate tables in
transition_service and the manage/override capabilities in document_types
refer to these codes as plain strings.

DESIGN PRINCIPLES:
- Capabilities are granular (one decision per code)
- Default role mappings follow principle of least privilege
- Admin has all capabilities by default
"""

# =============================================================================
# PERMISSION CATEGORIES
# =============================================================================

class PermissionCategory:
    """Permission categories for organization."""
    ORDERS = "ORDERS"
    QUOTES = "QUOTES"
    EXPENSES = "EXPENSES"


# =============================================================================
# PERMISSION DEFINITIONS
# =============================================================================

# Each permission is defined as: (code, name, description, category)
PERMISSION_DEFINITIONS = [
    # ORDER PERMISSIONS
    (
        "MANAGE_ORDERS",
        "Manage Orders",
        "Create and edit production orders, items and payments",
        PermissionCategory.ORDERS
    ),
    (
        "APPROVE_STATUS_CHANGES",
        "Approve Status Changes",
        "Apply restricted order transitions (deliver on credit) and review requests for them",
        PermissionCategory.ORDERS
    ),
    (
        "EDIT_LOCKED_ORDERS",
        "Edit Locked Orders",
        "Edit orders past DRAFT without a request; review edit requests",
        PermissionCategory.ORDERS
    ),

    # QUOTE PERMISSIONS
    (
        "MANAGE_QUOTES",
        "Manage Quotes",
        "Create, send and convert quotes",
        PermissionCategory.QUOTES
    ),

    # EXPENSE PERMISSIONS
    (
        "MANAGE_EXPENSE_ORDERS",
        "Manage Expense Orders",
        "Create and edit expense orders",
        PermissionCategory.EXPENSES
    ),
    (
        "APPROVE_EXPENSE_ORDERS",
        "Approve Expense Orders",
        "Authorize and mark expense orders as paid; review authorization requests",
        PermissionCategory.EXPENSES
    ),
]


# =============================================================================
# DEFAULT ROLES
# =============================================================================

DEFAULT_ROLES = [
    ("admin", "Full system access"),
    ("manager", "Document management and approvals"),
    ("staff", "Day-to-day document entry"),
]


DEFAULT_ROLE_PERMISSIONS = {
    "admin": [code for code, _, _, _ in PERMISSION_DEFINITIONS],

    "manager": [
        "MANAGE_ORDERS",
        "APPROVE_STATUS_CHANGES",
        "MANAGE_QUOTES",
        "MANAGE_EXPENSE_ORDERS",
        "APPROVE_EXPENSE_ORDERS",
    ],

    "staff": [
        "MANAGE_ORDERS",
        "MANAGE_QUOTES",
        "MANAGE_EXPENSE_ORDERS",
    ],
}
