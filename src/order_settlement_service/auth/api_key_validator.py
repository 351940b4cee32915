"""API key validation for staff and admin endpoints.

API keys are validated using simple string matching against configured sets
of valid keys. Admin keys also satisfy staff-level endpoints.
"""

from enum import Enum


class Role(str, Enum):
    """Access level granted by an API key."""

    STAFF = "staff"
    ADMIN = "admin"


class APIKeyValidator:
    """Validates API keys and resolves the role they grant."""

    def __init__(self, admin_keys: list[str], staff_keys: list[str] | None = None) -> None:
        """Initialize validator with the configured keys.

        Args:
            admin_keys: Keys for the admin and reporting surface
            staff_keys: Keys for kitchen staff order management

        Raises:
            ValueError: If no admin key is provided
        """
        if not admin_keys:
            raise ValueError("At least one admin API key must be provided")

        self.admin_keys = set(admin_keys)
        self.staff_keys = set(staff_keys or [])

    def role_for(self, api_key: str) -> Role | None:
        """Resolve the role granted by ``api_key``, or None if the key is unknown."""
        if api_key in self.admin_keys:
            return Role.ADMIN
        if api_key in self.staff_keys:
            return Role.STAFF
        return None

    def validate(self, api_key: str, required_role: Role = Role.ADMIN) -> bool:
        """Validate an API key for ``required_role``.

        Returns:
            bool: True if the key grants the role (admin satisfies staff)
        """
        role = self.role_for(api_key)
        if role is None:
            return False
        return role is Role.ADMIN or role is required_role
