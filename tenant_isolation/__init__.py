"Tenant isolation for shared-schema SQLAlchemy applications."

from tenant_isolation.core.logging import get_structured_logger  # noqa: F401
from tenant_isolation.tenancy import (  # noqa: F401
    NoTenantSet,
    NotUnique,
    TenancyError,
    TenantMismatch,
    TenantNotFound,
    TenantScope,
    TenantSnapshot,
    TenantValidationError,
    UniquenessValidator,
    activate,
    clear,
    configure,
    current_tenant,
    current_tenant_id,
    find_tenant,
    install_tenant_guards,
    is_suppressed,
    register,
    scope_depth,
    snapshot,
    tenant_required,
    with_tenant,
    without_tenant,
)
from tenant_isolation.crud import TenantScopedRepository  # noqa: F401

__version__ = "0.1.0"
