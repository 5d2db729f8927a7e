"""
realm/relationships.py -- Find the user/role <-> user-role relationship names.

A realm needs four relationship names to walk and edit role memberships:

    user_user_roles_relationship   User     -> UserRole  (many, LEFT join)
    role_user_roles_relationship   Role     -> UserRole  (many, LEFT join)
    user_relationship              UserRole -> User      (single)
    role_relationship              UserRole -> Role      (single)

Each may be declared explicitly in the realm settings, which skips discovery
entirely. Undeclared names are discovered from Schema.list_relationships().
Discovery must find exactly one candidate: zero or several candidates raise
ConfigError and the realm has to name the relationship explicitly.
"""

from __future__ import annotations

import logging

from core.errors import ConfigError
from datastore.facade import JOIN_LEFT, MULTI, SINGLE, Relationship, Schema

logger = logging.getLogger("realmauth.realm")


def _is_many_to(rel: Relationship, target: str) -> bool:
    return (
        rel.target == target
        and rel.multiplicity == MULTI
        and rel.join_type == JOIN_LEFT
        and len(rel.condition) == 1
    )


def _is_single_to(rel: Relationship, target: str) -> bool:
    return rel.target == target and rel.multiplicity == SINGLE and len(rel.condition) == 1


def _pick(candidates: list[str], source: str, target: str) -> str:
    if len(candidates) != 1:
        found = ", ".join(candidates) if candidates else "none"
        raise ConfigError(
            f"ambiguous or missing relationship from {source} to {target} (candidates: {found}); "
            "name it explicitly in the realm settings"
        )
    return candidates[0]


def _check_declared(schema: Schema, source: str, name: str) -> str:
    if name not in {rel.name for rel in schema.list_relationships(source)}:
        raise ConfigError(f"Relationship {name!r} is not declared on {source}")
    return name


def many_to_join(schema: Schema, source: str, join_entity: str, declared: str | None = None) -> str:
    """Name of the has-many relationship from `source` (User or Role) to the join entity."""
    if declared:
        return _check_declared(schema, source, declared)
    candidates = [rel.name for rel in schema.list_relationships(source) if _is_many_to(rel, join_entity)]
    name = _pick(candidates, source, join_entity)
    logger.debug("Discovered relationship %s.%s -> %s", source, name, join_entity)
    return name


def join_to_single(schema: Schema, join_entity: str, target: str, declared: str | None = None) -> str:
    """Name of the belongs-to relationship from the join entity back to `target`."""
    if declared:
        return _check_declared(schema, join_entity, declared)
    candidates = [rel.name for rel in schema.list_relationships(join_entity) if _is_single_to(rel, target)]
    name = _pick(candidates, join_entity, target)
    logger.debug("Discovered relationship %s.%s -> %s", join_entity, name, target)
    return name
