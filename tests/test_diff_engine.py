import copy
import math
from datetime import datetime, timezone

import pytest

from dualwrite.core.diff_engine import StructuralDiff, diff, snapshot, split_path
from dualwrite.core.errors import DiffComputationFailed
from dualwrite.core.types import DiffOp


class TestDiffBasics:
    def test_documented_example(self):
        ops = diff({"x": 1, "y": 2}, {"y": 3, "z": 4})
        assert ops == [
            DiffOp("remove", "/x"),
            DiffOp("replace", "/y", 3),
            DiffOp("add", "/z", 4),
        ]

    def test_identical_values_yield_no_ops(self):
        v = {"id": 1, "items": [{"a": 1}, {"b": [1, 2, None]}], "meta": {"k": "v"}}
        assert diff(v, copy.deepcopy(v)) == []
        assert diff(v, v) == []

    def test_deterministic_regardless_of_key_order(self):
        a = {"b": 1, "a": 2, "c": {"y": 1, "x": 2}}
        b = {"c": {"x": 3, "y": 1}, "a": 5}
        first = diff(a, b)
        again = diff(dict(reversed(list(a.items()))), dict(reversed(list(b.items()))))
        assert first == again
        assert [op.path for op in first] == ["/a", "/b", "/c/x"]

    def test_root_scalar_replace(self):
        assert diff(1, 2) == [DiffOp("replace", "", 2)]

    def test_removed_subtree_is_reported_per_leaf(self):
        ops = diff({"a": {"deep": [1, 2], "name": "x"}}, {})
        assert [op.to_dict() for op in ops] == [
            {"op": "remove", "path": "/a/deep/0"},
            {"op": "remove", "path": "/a/deep/1"},
            {"op": "remove", "path": "/a/name"},
        ]

    def test_added_subtree_is_reported_per_leaf(self):
        ops = diff({}, {"a": {"b": {"c": 1}, "tags": []}})
        assert ops == [DiffOp("add", "/a/b/c", 1), DiffOp("add", "/a/tags", [])]

    def test_one_sided_cycle_is_truncated(self):
        a = {"x": 1}
        a["self"] = a
        result = StructuralDiff(max_depth=50).compare({"root": a}, {})
        assert result.truncated
        assert result.ops == [
            DiffOp("replace", "/root/self", {"truncated": True, "reason": "cycle", "depth": 2}),
            DiffOp("remove", "/root/x"),
        ]

    def test_null_vs_missing(self):
        assert diff({"a": None}, {}) == [DiffOp("remove", "/a")]
        assert diff({}, {"a": None}) == [DiffOp("add", "/a", None)]


class TestArrays:
    def test_index_order(self):
        assert diff([1, 2, 3], [1, 5]) == [DiffOp("replace", "/1", 5), DiffOp("remove", "/2")]

    def test_append(self):
        assert diff([1], [1, 2]) == [DiffOp("add", "/1", 2)]

    def test_nested_array_of_objects(self):
        a = {"items": [{"id": 1, "qty": 1}, {"id": 2, "qty": 1}]}
        b = {"items": [{"id": 1, "qty": 1}, {"id": 2, "qty": 3}]}
        assert diff(a, b) == [DiffOp("replace", "/items/1/qty", 3)]


class TestTypes:
    def test_type_mismatch_is_replace(self):
        assert diff({"a": {"b": 1}}, {"a": [1]}) == [DiffOp("replace", "/a", [1])]
        assert diff({"a": 1}, {"a": "1"}) == [DiffOp("replace", "/a", "1")]
        assert diff({"a": None}, {"a": 0}) == [DiffOp("replace", "/a", 0)]

    def test_bool_is_not_a_number(self):
        assert diff({"a": True}, {"a": 1}) == [DiffOp("replace", "/a", 1)]
        assert diff({"a": 0}, {"a": False}) == [DiffOp("replace", "/a", False)]

    def test_int_and_float_compare_numerically(self):
        assert diff({"a": 1}, {"a": 1.0}) == []

    def test_nan_equals_nan(self):
        assert diff({"a": math.nan}, {"a": float("nan")}) == []

    def test_incomparable_values_raise(self):
        class Weird:
            def __eq__(self, other):
                raise RuntimeError("no")

        with pytest.raises(DiffComputationFailed):
            diff(Weird(), Weird())


class TestPaths:
    def test_pointer_escaping(self):
        ops = diff({"a/b": 1, "c~d": 1}, {})
        assert [op.path for op in ops] == ["/a~1b", "/c~0d"]
        assert split_path("/a~1b/c~0d") == ["a/b", "c~d"]
        assert split_path("") == []


class TestGuards:
    def test_depth_guard_truncates(self):
        a = {"l1": {"l2": {"l3": {"l4": 1}}}}
        b = {"l1": {"l2": {"l3": {"l4": 2}}}}
        result = StructuralDiff(max_depth=3).compare(a, b)
        assert result.truncated
        assert result.truncated_paths == ["/l1/l2/l3"]
        assert result.ops == [
            DiffOp("replace", "/l1/l2/l3", {"truncated": True, "reason": "max_depth", "depth": 3}),
        ]

    def test_cycle_guard(self):
        a = {"x": 1}
        a["self"] = a
        b = {"x": 1}
        b["self"] = b
        result = StructuralDiff(max_depth=50).compare(a, b)
        assert result.truncated
        assert result.ops == [
            DiffOp("replace", "/self", {"truncated": True, "reason": "cycle", "depth": 1}),
        ]

    def test_invalid_max_depth(self):
        with pytest.raises(ValueError):
            StructuralDiff(max_depth=0)


class TestSnapshot:
    def test_snapshot_is_isolated(self):
        v = {"a": [1, 2]}
        snap = snapshot(v)
        v["a"].append(3)
        assert snap == {"a": [1, 2]}

    def test_snapshot_is_json_compatible(self):
        ts = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert snapshot({"at": ts, "tags": ("x", "y")}) == {"at": ts.isoformat(), "tags": ["x", "y"]}
