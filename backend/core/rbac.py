"""Role-Based Access Control (RBAC) for workflow steps.

Implements the ``Authorization`` hook the runtime consults after its
built-in role-scope and assignment checks. Permissions are plain codes of
the form ``steps.<action_type>`` granted per role, with wildcard support.

Usage:
    authorization = RolePermissionAuthorization({
        Role.LAWYER: {"steps.*"},
        Role.CLIENT: {"steps.payment", "steps.signature", "steps.request_doc"},
    })
    runtime = WorkflowRuntime(store, authorization=authorization)
"""

import logging
from typing import Iterable, Mapping, Optional

from app.config import get_settings
from core.constants import Role
from workflow.models import Actor, Step

logger = logging.getLogger(__name__)


def step_permission(step: Step) -> str:
    """Permission code required to act on ``step``."""
    return f"steps.{step.action_type.value.lower()}"


def _check_permission(user_perms: set[str], required: str) -> bool:
    """Check if granted permissions satisfy the required permission.

    Supports wildcard: "steps.*" matches "steps.approval", "steps.payment", etc.
    """
    if required in user_perms:
        return True

    for perm in user_perms:
        if perm == "*":
            return True
        if perm.endswith(".*"):
            prefix = perm[:-2]
            if required.startswith(prefix + "."):
                return True

    return False


class RolePermissionAuthorization:
    """Grants step permissions per role.

    Roles with no grants at all are allowed in development/testing so a
    fresh install is not locked out, and denied in production.
    """

    def __init__(
        self,
        grants: Optional[Mapping[Role, Iterable[str]]] = None,
        strict: Optional[bool] = None,
    ):
        self._grants: dict[Role, set[str]] = {
            role: set(perms) for role, perms in (grants or {}).items()
        }
        self._strict = get_settings().is_production if strict is None else strict

    def grant(self, role: Role, *permissions: str) -> None:
        self._grants.setdefault(role, set()).update(permissions)

    def permissions_for(self, role: Role) -> set[str]:
        return set(self._grants.get(role, set()))

    def actor_can_act(self, actor: Actor, step: Step) -> bool:
        if actor.is_admin:
            return True

        perms = self._grants.get(actor.role)
        required = step_permission(step)

        if not perms:
            if self._strict:
                logger.warning(
                    "RBAC denied: actor=%s role=%s has no permissions assigned (strict mode)",
                    actor.id,
                    actor.role.value,
                )
                return False
            logger.debug(
                "RBAC: no permissions configured for role %s, allowing access (bootstrap mode)",
                actor.role.value,
            )
            return True

        if not _check_permission(perms, required):
            logger.warning(
                "RBAC denied: actor=%s permission=%s available=%s",
                actor.id,
                required,
                sorted(perms),
            )
            return False

        return True
