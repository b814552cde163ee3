from __future__ import annotations

from typing import Callable, Optional, Union

from fastapi import Depends, Header, HTTPException, Request, status

from ..context import GovernanceContext
from ..schemas import AccessDecision, Action, Actor
from .middleware import client_ip


def get_context(request: Request) -> GovernanceContext:
    return request.app.state.governance


# ---------------------------------------------------------------------------
# Caller identity
# ---------------------------------------------------------------------------

def get_actor(
    request: Request,
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
    x_session_id: Optional[str] = Header(None),
    user_agent: Optional[str] = Header(None),
) -> Actor:
    """
    Identity is resolved upstream (auth proxy / session layer) and forwarded
    as headers:
      - X-User-Id:   opaque user id
      - X-User-Role: patient | doctor | admin
    Unknown roles are passed through and denied by the gate.
    """
    if not x_user_id or not x_user_role:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED,
                            detail="No caller identity provided.")
    return Actor(
        id=x_user_id,
        role=x_user_role,
        ip=client_ip(request),
        user_agent=user_agent,
        session_id=x_session_id,
    )


# ---------------------------------------------------------------------------
# Permission guard
# ---------------------------------------------------------------------------

def require_permission(
    resource_type: str,
    action: Union[Action, str],
    resource_param: Optional[str] = None,
    default_resource_id: str = "*",
) -> Callable[..., AccessDecision]:
    """Dependency factory: 403 unless the gate grants ``action``.

    ``resource_param`` names the path parameter holding the resource id.
    The response detail is deliberately generic; the exact reason is
    recorded in the audit trail only.
    """
    action = Action(action)

    def dependency(
        request: Request,
        actor: Actor = Depends(get_actor),
        context: GovernanceContext = Depends(get_context),
    ) -> AccessDecision:
        resource_id = default_resource_id
        if resource_param is not None:
            resource_id = str(request.path_params.get(resource_param, default_resource_id))
        decision = context.gate.check_permission(actor, resource_type, resource_id, action)
        if not decision.granted:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN,
                                detail="Access denied.")
        return decision

    return dependency
