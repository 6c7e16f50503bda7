"""
Dependency injection for the caller identity
Project: Clinic Ledger

Authentication happens upstream. The gateway forwards the authenticated
user in request headers:

- X-Actor-Id: user UUID (required)
- X-Actor-Name: display name (optional)
- X-Actor-Permissions: comma separated capability names (optional)
"""

from typing import Annotated, Optional
from uuid import UUID

from fastapi import Depends, Header

from clinic_ledger.core.exceptions import AuthenticationError, AuthorizationError
from clinic_ledger.schemas.actor import Actor, Permission


async def get_current_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_name: Optional[str] = Header(None),
    x_actor_permissions: Optional[str] = Header(None),
) -> Actor:
    """
    Build the Actor for the current request.

    Raises:
        AuthenticationError: If the identity header is missing or malformed
    """
    if not x_actor_id:
        raise AuthenticationError("Missing X-Actor-Id header")

    try:
        actor_id = UUID(x_actor_id)
    except ValueError:
        raise AuthenticationError("Invalid X-Actor-Id header")

    permissions = set()
    for raw in (x_actor_permissions or "").split(","):
        name = raw.strip().upper()
        if not name:
            continue
        try:
            permissions.add(Permission(name))
        except ValueError:
            # Capabilities of other subsystems are irrelevant here
            continue

    return Actor(
        id=actor_id,
        name=x_actor_name or None,
        permissions=frozenset(permissions),
    )


def require_permission(*required: Permission):
    """
    Factory for a dependency that checks the actor's capabilities.

    Example:
        @router.post("/invoices")
        async def create_invoice(
            actor: Actor = Depends(require_permission(Permission.CREATE_INVOICE))
        ):
            ...
    """
    async def permission_checker(
        actor: Annotated[Actor, Depends(get_current_actor)]
    ) -> Actor:
        missing = [p.value for p in required if not actor.has(p)]
        if missing:
            raise AuthorizationError(
                f"Access denied. Required permission: {', '.join(missing)}"
            )
        return actor

    return permission_checker


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
InvoiceEditor = Annotated[Actor, Depends(require_permission(Permission.CREATE_INVOICE))]


__all__ = [
    "get_current_actor",
    "require_permission",
    "CurrentActor",
    "InvoiceEditor",
]
