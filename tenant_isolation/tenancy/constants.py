"""
Constants for tenancy concerns.
"""

# Context variable holding the per-execution-unit tenant frame.
CONTEXT_VAR_NAME = "tenant_isolation_frame"

# Identity value meaning "no tenant active".
DEFAULT_TENANT_ID = None
