from __future__ import annotations

ROLE_PERMS: dict[str, set[str]] = {
    "viewer": {"event.view", "state.view"},
    "operator": {"event.view", "event.submit", "state.view"},
    "supervisor": {"event.view", "event.submit", "event.approve", "state.view", "sync.run"},
    "admin": {"*"},
}


def has_perm(roles: list[str], perm: str) -> bool:
    for r in roles:
        perms = ROLE_PERMS.get(r, set())
        if "*" in perms or perm in perms:
            return True
    return False
