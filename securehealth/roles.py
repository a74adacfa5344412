"""
Role hierarchy – expands declared roles into their inherited closure.
"""

from typing import Dict, FrozenSet, Iterable, List, Mapping

import structlog

from securehealth.errors import ConfigurationError

logger = structlog.get_logger()


def _find_cycle(implies: Mapping[str, FrozenSet[str]]) -> List[str]:
    """Return one cycle as a role path (first role repeated at the end), or []."""
    WHITE, GREY, BLACK = 0, 1, 2
    colour = {role: WHITE for role in implies}
    stack: List[str] = []

    def visit(role: str) -> List[str]:
        colour[role] = GREY
        stack.append(role)
        for implied in sorted(implies.get(role, ())):
            state = colour.get(implied, WHITE)
            if state == GREY:
                return stack[stack.index(implied):] + [implied]
            if state == WHITE and implied in implies:
                found = visit(implied)
                if found:
                    return found
        stack.pop()
        colour[role] = BLACK
        return []

    for role in sorted(implies):
        if colour[role] == WHITE:
            found = visit(role)
            if found:
                return found
    return []


def _check_role_name(role) -> None:
    # Audit entries store roles comma-joined.
    if not isinstance(role, str) or not role or "," in role:
        raise ConfigurationError(f"Invalid role name: {role!r}")


class RoleHierarchy:
    """
    Immutable role -> implied-roles table with a precomputed closure.

    The closure is computed once at load, so `expand` is a pure lookup and
    safe to call from any number of request threads.
    """

    def __init__(self, implies: Mapping[str, Iterable[str]]):
        table: Dict[str, FrozenSet[str]] = {}
        for role, implied in implies.items():
            _check_role_name(role)
            if isinstance(implied, str) or not isinstance(implied, (list, tuple, set, frozenset)):
                raise ConfigurationError(
                    f"Implied roles for '{role}' must be a list, not {type(implied).__name__}."
                )
            for name in implied:
                _check_role_name(name)
            table[role] = frozenset(implied)
        # Roles that only appear on the right-hand side are leaves.
        for implied in list(table.values()):
            for role in implied:
                table.setdefault(role, frozenset())

        cycle = _find_cycle(table)
        if cycle:
            raise ConfigurationError(
                "Cyclic role implication: " + " -> ".join(cycle)
            )

        self._implies = table
        self._closure = {role: self._close(role) for role in table}

    def _close(self, role: str) -> FrozenSet[str]:
        seen = {role}
        pending = [role]
        while pending:
            for implied in self._implies[pending.pop()]:
                if implied not in seen:
                    seen.add(implied)
                    pending.append(implied)
        return frozenset(seen)

    @property
    def roles(self) -> FrozenSet[str]:
        return frozenset(self._implies)

    def implied_by(self, role: str) -> FrozenSet[str]:
        return self._implies.get(role, frozenset())

    def expand(self, declared_roles: Iterable[str]) -> FrozenSet[str]:
        """Transitive closure of *declared_roles*. Unknown roles grant nothing."""
        expanded = set()
        for role in declared_roles:
            closure = self._closure.get(role)
            if closure is None:
                logger.warning("Ignoring undeclared role", role=role)
                continue
            expanded |= closure
        return frozenset(expanded)

    def __eq__(self, other):
        if not isinstance(other, RoleHierarchy):
            return NotImplemented
        return self._implies == other._implies

    def __repr__(self):
        return f"RoleHierarchy({len(self._implies)} roles)"
