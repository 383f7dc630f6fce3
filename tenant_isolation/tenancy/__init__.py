"Tenancy core: execution-unit tenant context, registry, and scope enforcement."

from .context import (  # noqa: F401
    TenantScope,
    TenantSnapshot,
    activate,
    clear,
    current_tenant,
    current_tenant_id,
    is_suppressed,
    scope_depth,
    snapshot,
    with_tenant,
    without_tenant,
)
from .errors import (  # noqa: F401
    NoTenantSet,
    NotUnique,
    TenancyError,
    TenantMismatch,
    TenantNotFound,
    TenantValidationError,
)
from .hooks import install_tenant_guards, mutation_guard, scope_enforcer  # noqa: F401
from .lookup import find_tenant  # noqa: F401
from .registry import configure, register, tenant_required  # noqa: F401
from .uniqueness import UniquenessValidator  # noqa: F401
