"""Error taxonomy for the authorization subsystem.

Forbidden and NotFound are expected outcomes that request handlers turn
into client errors. ConfigurationError and StoreUnavailable are faults:
they are logged server-side with full context and collapse to a generic
denial for the caller.
"""

from __future__ import annotations


class AuthzError(Exception):
    """Base class for every error raised by cmms_authz."""


class Forbidden(AuthzError):
    """Principal is authenticated but lacks the required permission."""

    def __init__(self, principal_id: str | None, permissions: tuple[str, ...] = ()):
        self.principal_id = principal_id
        self.permissions = permissions
        needed = ", ".join(permissions) if permissions else "unspecified"
        super().__init__(f"Forbidden: principal={principal_id} required={needed}")


class NotFound(AuthzError):
    """A referenced entity does not exist."""

    kind = "entity"

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"{self.kind} not found: {key}")


class PrincipalNotFound(NotFound):
    kind = "principal"


class RoleNotFound(NotFound):
    kind = "role"


class BindingNotFound(NotFound):
    kind = "role binding"

    def __init__(self, principal_id: str, role_name: str):
        self.principal_id = principal_id
        self.role_name = role_name
        super().__init__(f"{principal_id}/{role_name}")


class RoleAlreadyExists(AuthzError):
    """Duplicate role creation attempt."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"role already exists: {name}")


class ConfigurationError(AuthzError):
    """A code path or stored record is inconsistent with the catalog."""


class UnknownPermissionError(ConfigurationError):
    """A permission string that is malformed or absent from the catalog."""

    def __init__(self, value: str):
        self.value = value
        super().__init__(f"unknown permission: {value!r}")


class StoreUnavailable(AuthzError):
    """The role/binding store could not be read."""
