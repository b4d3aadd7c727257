from __future__ import annotations


class TenantPredicateError(RuntimeError):
    # Surface missing tenant predicates instead of silently widening a query.
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


def require_tenant_id(tenant_id: str | None) -> None:
    if not tenant_id:
        raise TenantPredicateError("Tenant predicate required but tenant_id is missing")


def tenant_predicate(model, tenant_id: str) -> object:
    # Build tenant predicates through a single helper to guarantee guard coverage.
    require_tenant_id(tenant_id)
    return model.tenant_id == tenant_id
