from .repository import TenantScopedRepository

__all__ = [
    "TenantScopedRepository",
]
