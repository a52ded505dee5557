from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Principal:
    """Caller identity taken from an already-issued bearer token.

    The upstream auth service authenticates users and assigns roles;
    this service only reads the verified claims.

        user_id: `sub` claim, owner of every progress event in the request
        roles:   `roles` claim; "admin" unlocks dead-letter review/rebuild
    """

    user_id: str
    roles: frozenset[str]

    def has_role(self, role: str) -> bool:
        return role in self.roles
