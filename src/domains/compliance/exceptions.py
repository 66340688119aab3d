"""Errors raised by the compliance decision core.

Most failure modes surface as result objects rather than exceptions. The
classes here cover the cases that must not be silently absorbed: broken
configuration, unknown tenants and infrastructure failures inside a
store implementation.
"""


class ComplianceError(Exception):
    """Base class for compliance core errors."""


class InvalidConfigError(ComplianceError):
    """Regional or tenant configuration cannot be used as given."""


class StorageError(ComplianceError):
    """The backing store could not complete a read or write."""


class TenantNotFoundError(ComplianceError):
    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"Tenant {tenant_id} not found")
        self.tenant_id = tenant_id
