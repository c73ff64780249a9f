from __future__ import annotations

from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from typing import Any, Iterable, Iterator, Mapping, Sequence

from dualwrite.core.diff_engine import join_path, split_path
from dualwrite.core.types import (
    DiffOp,
    MISSING,
    OP_REMOVE,
    SEVERITY_ERROR,
    SEVERITY_INFO,
    SEVERITY_WARNING,
)
from dualwrite.logging_utils import get_logger

logger = get_logger(__name__)

DEFAULT_ENDPOINT = "*"


def path_matches(path: str, pattern: str) -> bool:
    """
    - "amount": a key named amount at any depth
    - "/items/*/amount": JSON-pointer glob, also matches everything below it
    """
    if not pattern:
        return False
    if not pattern.startswith("/"):
        return pattern in split_path(path)
    p_tokens = pattern.split("/")[1:]
    tokens = path.split("/")[1:] if path else []
    if len(tokens) < len(p_tokens):
        return False
    return all(fnmatchcase(t, p) for t, p in zip(tokens, p_tokens))


def _nested_paths(value: Any, base: str, limit: int = 256) -> Iterator[str]:
    stack: list[tuple[Any, str, int]] = [(value, base, 0)]
    seen = 0
    while stack and seen < limit:
        v, p, depth = stack.pop()
        if depth > 16:
            continue
        if isinstance(v, Mapping):
            for k in v:
                child = join_path(p, k)
                seen += 1
                yield child
                stack.append((v[k], child, depth + 1))
        elif isinstance(v, (list, tuple)):
            for i, item in enumerate(v):
                stack.append((item, join_path(p, i), depth + 1))


def touched_paths(op: DiffOp) -> list[str]:
    paths = [op.path]
    if op.value is not MISSING and isinstance(op.value, (Mapping, list, tuple)):
        paths.extend(_nested_paths(op.value, op.path))
    return paths


@dataclass(frozen=True)
class EndpointRules:
    critical_paths: tuple[str, ...] = ()
    volatile_paths: tuple[str, ...] = ()
    required_paths: tuple[str, ...] = ()

    @classmethod
    def build(
        cls,
        critical: Iterable[str] = (),
        volatile: Iterable[str] = (),
        required: Iterable[str] = (),
    ) -> "EndpointRules":
        return cls(
            critical_paths=tuple(str(x) for x in critical),
            volatile_paths=tuple(str(x) for x in volatile),
            required_paths=tuple(str(x) for x in required),
        )

    @classmethod
    def from_mapping(cls, d: Mapping[str, Any]) -> "EndpointRules":
        def _list(*names: str) -> list[str]:
            for n in names:
                v = d.get(n)
                if v is None:
                    continue
                if isinstance(v, str):
                    return [x.strip() for x in v.split(",") if x.strip()]
                return [str(x) for x in v]
            return []

        return cls.build(
            critical=_list("critical", "criticalPaths", "critical_paths"),
            volatile=_list("volatile", "volatilePaths", "volatile_paths"),
            required=_list("required", "requiredPaths", "required_paths"),
        )

    def is_volatile(self, path: str) -> bool:
        return any(path_matches(path, p) for p in self.volatile_paths)

    def is_critical(self, path: str) -> bool:
        return any(path_matches(path, p) for p in self.critical_paths)

    def is_required(self, path: str) -> bool:
        return any(path_matches(path, p) for p in self.required_paths)


@dataclass
class DiffClassifier:
    """
    Severity for one comparison, from per-endpoint rules supplied at construction.

    info     : no ops, or only volatile ops
    error    : any non-volatile op touching a critical path, or removing a required one
    warning  : anything else
    """

    rules: Mapping[str, EndpointRules] = field(default_factory=dict)
    default: EndpointRules = field(default_factory=EndpointRules)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "DiffClassifier":
        rules = {str(ep): EndpointRules.from_mapping(r or {}) for ep, r in (config or {}).items()}
        default = rules.pop(DEFAULT_ENDPOINT, EndpointRules())
        return cls(rules=rules, default=default)

    def rules_for(self, endpoint: str) -> EndpointRules:
        return self.rules.get(endpoint, self.default)

    def significant_ops(self, endpoint: str, ops: Sequence[DiffOp]) -> list[DiffOp]:
        r = self.rules_for(endpoint)
        return [op for op in ops if not r.is_volatile(op.path)]

    def classify(self, endpoint: str, ops: Sequence[DiffOp]) -> str:
        if not ops:
            logger.debug("[DUAL-WRITE] %s: no difference", endpoint)
            return SEVERITY_INFO

        r = self.rules_for(endpoint)
        significant = self.significant_ops(endpoint, ops)
        if not significant:
            logger.debug("[DUAL-WRITE] %s: %d volatile-only op(s)", endpoint, len(ops))
            return SEVERITY_INFO

        for op in significant:
            if op.op == OP_REMOVE and r.is_required(op.path):
                return SEVERITY_ERROR
            # volatile subpaths of a container op do not make it critical
            if any(r.is_critical(p) and not r.is_volatile(p) for p in touched_paths(op)):
                return SEVERITY_ERROR

        return SEVERITY_WARNING
