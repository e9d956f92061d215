"""Auth-related enums."""

from enum import Enum


class Role(str, Enum):
    """
    Global user roles.

    - SUPER_ADMIN, CLAIMS_EMPLOYEE, OPERATIONS_EMPLOYEE, ADMIN_EMPLOYEE:
      broker staff (the broker-employee family)
    - AGENT: insurance agent
    - CLIENT_ADMIN: administrator of a client company (read access to own client)
    - AFFILIATE: insured person with app access
    """

    SUPER_ADMIN = "SUPER_ADMIN"
    CLAIMS_EMPLOYEE = "CLAIMS_EMPLOYEE"
    OPERATIONS_EMPLOYEE = "OPERATIONS_EMPLOYEE"
    ADMIN_EMPLOYEE = "ADMIN_EMPLOYEE"
    AGENT = "AGENT"
    CLIENT_ADMIN = "CLIENT_ADMIN"
    AFFILIATE = "AFFILIATE"

    @classmethod
    def has_value(cls, value: str) -> bool:
        """Check if value is a valid role."""
        return value in cls._value2member_map_
