"""
Authorization policy: an ordered table of (method, path glob) -> requirement.
First matching rule wins; unmatched requests require authentication.
Globs: `**` spans any number of path segments (including none), `*` stays within one.
"""
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

ANY_METHOD = "*"


class RequirementKind(str, Enum):
    PERMIT_ALL = "permit_all"
    AUTHENTICATED = "authenticated"
    ANY_AUTHORITY = "any_authority"


@dataclass(frozen=True)
class Requirement:
    kind: RequirementKind
    authorities: frozenset[str] = frozenset()

    def __str__(self) -> str:
        if self.kind is RequirementKind.ANY_AUTHORITY:
            return f"any of {sorted(self.authorities)}"
        return self.kind.value


def permit_all() -> Requirement:
    return Requirement(RequirementKind.PERMIT_ALL)


def authenticated() -> Requirement:
    return Requirement(RequirementKind.AUTHENTICATED)


def has_any_authority(*authorities: str) -> Requirement:
    if not authorities:
        raise ValueError("has_any_authority needs at least one authority")
    return Requirement(RequirementKind.ANY_AUTHORITY, frozenset(authorities))


def compile_glob(pattern: str) -> re.Pattern:
    if not pattern.startswith("/"):
        raise ValueError(f"Path pattern must start with '/': {pattern!r}")
    out = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("/**", i):
            out.append("(?:/.*)?")
            i += 3
        elif pattern[i] == "*":
            out.append("[^/]*")
            i += 1
        else:
            out.append(re.escape(pattern[i]))
            i += 1
    return re.compile("^" + "".join(out) + "$")


def normalize_path(path: str) -> str:
    if len(path) > 1 and path.endswith("/"):
        return path.rstrip("/") or "/"
    return path or "/"


def _parse_methods(methods: str | Iterable[str] | None) -> frozenset[str] | None:
    if methods is None:
        return None
    if isinstance(methods, str):
        methods = methods.replace(",", "/").split("/")
    parsed = frozenset(m.strip().upper() for m in methods if m.strip())
    if not parsed or ANY_METHOD in parsed:
        return None
    return parsed


@dataclass(frozen=True)
class PolicyRule:
    pattern: str
    requirement: Requirement
    methods: frozenset[str] | None = None  # None = any method
    _regex: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "_regex", compile_glob(self.pattern))

    def matches(self, method: str, path: str) -> bool:
        if self.methods is not None and method.upper() not in self.methods:
            return False
        return self._regex.match(path) is not None

    def describe(self) -> str:
        methods = "/".join(sorted(self.methods)) if self.methods else ANY_METHOD
        return f"{methods} {self.pattern}"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    status: int  # 200 allow, 401 unauthenticated, 403 insufficient authority
    reason: str
    rule: str | None = None


class PolicyEngine:
    """Immutable once built; decide() depends only on its arguments."""

    def __init__(self, rules: Iterable[PolicyRule], default: Requirement | None = None):
        self.rules: tuple[PolicyRule, ...] = tuple(rules)
        self.default = default or authenticated()

    @classmethod
    def from_table(cls, rows: Iterable[tuple[str, str, Requirement]], default: Requirement | None = None) -> "PolicyEngine":
        """
        Build from declarative rows (method, path glob, requirement).
        Method may be "GET", "POST/PUT/DELETE" or "*".
        """
        return cls(
            (PolicyRule(pattern=path, requirement=req, methods=_parse_methods(method)) for method, path, req in rows),
            default=default,
        )

    def match(self, method: str, path: str) -> PolicyRule | None:
        path = normalize_path(path)
        for rule in self.rules:
            if rule.matches(method, path):
                return rule
        return None

    def decide(self, method: str, path: str, authorities: frozenset[str] | None) -> Decision:
        """
        `authorities` is None for anonymous callers, a (possibly empty) set otherwise.
        """
        rule = self.match(method, path)
        requirement = rule.requirement if rule else self.default
        label = rule.describe() if rule else "default"

        if requirement.kind is RequirementKind.PERMIT_ALL:
            return Decision(True, 200, "permit_all", label)
        if authorities is None:
            return Decision(False, 401, "authentication required", label)
        if requirement.kind is RequirementKind.AUTHENTICATED:
            return Decision(True, 200, "authenticated", label)
        if requirement.authorities & authorities:
            return Decision(True, 200, "authority granted", label)
        return Decision(False, 403, f"requires {requirement}", label)
