"""Role permission helper sets."""

from billing_api.db.enums.auth import Role

# Broker staff: full invoice access
BROKER_EMPLOYEES = frozenset(
    {
        Role.SUPER_ADMIN,
        Role.CLAIMS_EMPLOYEE,
        Role.OPERATIONS_EMPLOYEE,
        Role.ADMIN_EMPLOYEE,
    }
)

# Elevated edits (e.g. notes on cancelled invoices)
SUPER_ADMIN_ONLY = frozenset({Role.SUPER_ADMIN})

# Roles that can read invoice detail (CLIENT_ADMIN is scoped to own client)
ROLES_CAN_VIEW_INVOICES = BROKER_EMPLOYEES | {Role.CLIENT_ADMIN}
