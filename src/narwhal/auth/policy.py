"""
File-loaded RBAC back-end and back-end selection.

The file back-end reads a casbin model and a CSV policy once at startup.
Construction fails closed: a missing, unreadable, or invalid policy raises
PolicyLoadError and the service must not start.
"""

import os
import threading
from typing import List, Optional, Set

import casbin
from loguru import logger

from .permissions import BuiltinRBAC, Permission, RBACEngine, perm

RBAC_BUILTIN = "builtin"
RBAC_FILE = "file"
RBAC_CASBIN = "casbin"  # accepted alias of "file"


class PolicyLoadError(Exception):
    """RBAC policy could not be loaded."""


class FileRBAC(RBACEngine):
    """
    casbin-backed RBAC evaluator.

    Policy lines have the form ``p, <role>, <resource>, <action>`` where
    resource and action may be ``*``. Grouping lines ``g, <role>, <parent>``
    let a role inherit another role's grants.
    """

    def __init__(self, model_path: str, policy_path: str):
        """
        Load model and policy.

        Args:
            model_path: Path to the casbin model (.conf)
            policy_path: Path to the CSV policy

        Raises:
            PolicyLoadError: If either file is missing or invalid
        """
        for label, path in (("model", model_path), ("policy", policy_path)):
            if not path:
                raise PolicyLoadError(f"RBAC {label} path is not configured")
            if not os.path.isfile(path):
                raise PolicyLoadError(f"RBAC {label} file not found: {path}")

        try:
            self._enforcer = casbin.Enforcer(model_path, policy_path)
        except Exception as e:
            raise PolicyLoadError(f"Failed to load RBAC policy: {e}") from e

        self._lock = threading.RLock()
        self._validate_rules()
        logger.info(f"Loaded RBAC policy from {policy_path} ({len(self._enforcer.get_policy())} rules)")

    def _validate_rules(self) -> None:
        rules = self._enforcer.get_policy()
        if not rules:
            raise PolicyLoadError("RBAC policy contains no rules")
        for rule in rules:
            if len(rule) < 3:
                raise PolicyLoadError(f"Malformed RBAC rule: {rule}")
            try:
                perm(rule[1], rule[2])
            except ValueError as e:
                raise PolicyLoadError(f"Invalid RBAC rule {rule}: {e}") from e

    def check_permission(self, role: str, resource: str, action: str) -> bool:
        with self._lock:
            try:
                return bool(self._enforcer.enforce(role, resource, action))
            except Exception as e:
                logger.error(f"RBAC enforce failed for {role} {resource}:{action}: {e}")
                return False

    def role_permissions(self, role: str) -> Set[Permission]:
        with self._lock:
            rules = self._enforcer.get_filtered_policy(0, role)
        return {perm(rule[1], rule[2]) for rule in rules}

    def add_permission(self, role: str, resource: str, action: str) -> None:
        grant = perm(resource, action)
        with self._lock:
            self._enforcer.add_policy(role, grant.resource, grant.action)

    def remove_permission(self, role: str, resource: str, action: str) -> None:
        with self._lock:
            self._enforcer.remove_policy(role, resource, action)

    def roles(self) -> List[str]:
        with self._lock:
            return sorted(set(self._enforcer.get_all_subjects()))


def create_rbac(
    kind: str = RBAC_BUILTIN,
    model_path: Optional[str] = None,
    policy_path: Optional[str] = None,
) -> RBACEngine:
    """
    Build the configured RBAC back-end.

    Args:
        kind: "builtin" or "file" ("casbin" is accepted as an alias)
        model_path: casbin model path (file mode)
        policy_path: CSV policy path (file mode)

    Returns:
        RBAC engine

    Raises:
        PolicyLoadError: File mode could not load its policy
        ValueError: Unknown kind
    """
    kind = (kind or RBAC_BUILTIN).lower()

    if kind == RBAC_BUILTIN:
        logger.info("Using built-in RBAC policy")
        return BuiltinRBAC()

    if kind in (RBAC_FILE, RBAC_CASBIN):
        return FileRBAC(model_path or "", policy_path or "")

    raise ValueError(f"unknown RBAC type: {kind!r}")
