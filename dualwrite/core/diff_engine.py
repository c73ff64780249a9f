from __future__ import annotations

import copy
import math
from dataclasses import dataclass, field
from typing import Any, Mapping

from fastapi.encoders import jsonable_encoder

from dualwrite.config import settings
from dualwrite.core.errors import DiffComputationFailed
from dualwrite.core.types import DiffOp, OP_ADD, OP_REMOVE, OP_REPLACE


@dataclass
class DiffResult:
    ops: list[DiffOp] = field(default_factory=list)
    truncated: bool = False
    truncated_paths: list[str] = field(default_factory=list)

    @property
    def identical(self) -> bool:
        return not self.ops


def escape_token(token: Any) -> str:
    # RFC 6901
    return str(token).replace("~", "~0").replace("/", "~1")


def join_path(base: str, token: Any) -> str:
    return f"{base}/{escape_token(token)}"


def split_path(path: str) -> list[str]:
    if not path:
        return []
    return [t.replace("~1", "/").replace("~0", "~") for t in path.split("/")[1:]]


def _is_container(v: Any) -> bool:
    return isinstance(v, (Mapping, list, tuple))


def _scalar_equal(a: Any, b: Any) -> bool:
    # bool is an int subclass in Python; JSON treats them as different types
    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        if isinstance(a, float) and isinstance(b, float) and math.isnan(a) and math.isnan(b):
            return True
        return a == b
    # "1" vs 1, None vs 0
    if type(a) is not type(b):
        return False
    try:
        return bool(a == b)
    except Exception as e:
        raise DiffComputationFailed(f"cannot compare {type(a).__name__} with {type(b).__name__}") from e


def _sorted_keys(a: Mapping, b: Mapping) -> list:
    keys = set(a.keys()) | set(b.keys())
    # str() first so mixed key types still get one total order
    return sorted(keys, key=lambda k: (str(k), type(k).__name__))


class StructuralDiff:
    """
    Lockstep walk over two JSON-like values.

    - object keys in sorted order, array elements in index order
    - key only in primary -> remove; only in secondary -> add; both and unequal -> replace
    - a subtree present on one side only yields one op per leaf (empty containers count as leaves)
    - depth guard + ancestor-identity cycle guard: one synthetic replace at the
      truncation path, result flagged as truncated
    """

    def __init__(self, max_depth: int | None = None) -> None:
        self.max_depth = int(settings.DIFF_MAX_DEPTH if max_depth is None else max_depth)
        if self.max_depth < 1:
            raise ValueError("max_depth must be >= 1")

    def compare(self, primary: Any, secondary: Any) -> DiffResult:
        result = DiffResult()
        try:
            self._walk(primary, secondary, "", 0, (), result)
        except RecursionError as e:
            raise DiffComputationFailed(f"recursion limit hit before max_depth={self.max_depth}") from e
        return result

    def _truncate(self, path: str, depth: int, reason: str, result: DiffResult) -> None:
        result.truncated = True
        result.truncated_paths.append(path)
        result.ops.append(
            DiffOp(OP_REPLACE, path, {"truncated": True, "reason": reason, "depth": depth})
        )

    def _leaves(self, op: str, value: Any, path: str, depth: int, ancestors: tuple, result: DiffResult) -> None:
        """One add/remove per leaf of a subtree present on one side only. Empty containers are leaves."""
        if not _is_container(value) or not value:
            result.ops.append(DiffOp(op, path) if op == OP_REMOVE else DiffOp(op, path, value))
            return
        if id(value) in ancestors:
            self._truncate(path, depth, "cycle", result)
            return
        if depth >= self.max_depth:
            self._truncate(path, depth, "max_depth", result)
            return

        next_ancestors = ancestors + (id(value),)
        if isinstance(value, Mapping):
            for k in _sorted_keys(value, {}):
                self._leaves(op, value[k], join_path(path, k), depth + 1, next_ancestors, result)
        else:
            for i, item in enumerate(value):
                self._leaves(op, item, join_path(path, i), depth + 1, next_ancestors, result)

    def _walk(self, a: Any, b: Any, path: str, depth: int, ancestors: tuple, result: DiffResult) -> None:
        if a is b:
            return

        a_container = _is_container(a)
        b_container = _is_container(b)

        if a_container or b_container:
            if (a_container and id(a) in ancestors) or (b_container and id(b) in ancestors):
                self._truncate(path, depth, "cycle", result)
                return
            if depth >= self.max_depth:
                self._truncate(path, depth, "max_depth", result)
                return

        if isinstance(a, Mapping) and isinstance(b, Mapping):
            next_ancestors = ancestors + (id(a), id(b))
            for k in _sorted_keys(a, b):
                child = join_path(path, k)
                if k not in b:
                    self._leaves(OP_REMOVE, a[k], child, depth + 1, next_ancestors, result)
                elif k not in a:
                    self._leaves(OP_ADD, b[k], child, depth + 1, next_ancestors, result)
                else:
                    self._walk(a[k], b[k], child, depth + 1, next_ancestors, result)
            return

        if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
            next_ancestors = ancestors + (id(a), id(b))
            for i in range(max(len(a), len(b))):
                child = join_path(path, i)
                if i >= len(b):
                    self._leaves(OP_REMOVE, a[i], child, depth + 1, next_ancestors, result)
                elif i >= len(a):
                    self._leaves(OP_ADD, b[i], child, depth + 1, next_ancestors, result)
                else:
                    self._walk(a[i], b[i], child, depth + 1, next_ancestors, result)
            return

        if a_container or b_container:
            # type mismatch (object vs array vs scalar)
            result.ops.append(DiffOp(OP_REPLACE, path, b))
            return

        if not _scalar_equal(a, b):
            result.ops.append(DiffOp(OP_REPLACE, path, b))


def diff(primary: Any, secondary: Any, max_depth: int | None = None) -> list[DiffOp]:
    """Ordered diff ops describing `secondary` relative to `primary`."""
    return StructuralDiff(max_depth=max_depth).compare(primary, secondary).ops


def snapshot(value: Any) -> Any:
    """
    By-value, JSON-compatible copy of a backend result taken when the call settles.
    Later mutation of the caller's object cannot leak into the comparison.
    """
    try:
        return jsonable_encoder(value)
    except (RecursionError, TypeError, ValueError):
        # cyclic or exotic structures: keep an isolated copy, the depth/cycle guard handles it
        return copy.deepcopy(value)
