import pytest

from dualwrite.core.classifier import DiffClassifier, EndpointRules, path_matches, touched_paths
from dualwrite.core.diff_engine import diff
from dualwrite.core.types import DiffOp


@pytest.mark.parametrize(
    "path,pattern,expected",
    [
        ("/amount", "amount", True),
        ("/items/3/amount", "amount", True),
        ("/items/3/amountX", "amount", False),
        ("/items/3/amount", "/items/*/amount", True),
        ("/items/3/amount/cents", "/items/*/amount", True),
        ("/items/3/name", "/items/*/amount", False),
        ("/items", "/items/*/amount", False),
        ("/a~1b", "a/b", True),
        ("/x", "", False),
    ],
)
def test_path_matches(path, pattern, expected):
    assert path_matches(path, pattern) is expected


def test_touched_paths_include_nested_keys():
    op = DiffOp("add", "/items/0", {"amount": 5, "tags": [{"k": 1}]})
    paths = touched_paths(op)
    assert paths[0] == "/items/0"
    assert "/items/0/amount" in paths
    assert "/items/0/tags/0/k" in paths


class TestClassify:
    def test_empty_is_info(self, classifier):
        assert classifier.classify("budget", []) == "info"

    def test_volatile_only_is_info(self, classifier):
        ops = [DiffOp("replace", "/updatedAt", "2024-01-01"), DiffOp("replace", "/meta/updated_at", 1)]
        assert classifier.classify("budget", ops) == "info"

    def test_critical_field_is_error(self, classifier):
        assert classifier.classify("budget", [DiffOp("replace", "/amount", 11)]) == "error"

    def test_critical_field_nested_in_container_op(self, classifier):
        assert classifier.classify("budget", [DiffOp("add", "/lines/0", {"amount": 5})]) == "error"

    def test_dropped_subtree_with_critical_field_is_error(self, classifier):
        ops = diff({"payment": {"amount": 5, "memo": "x"}}, {})
        assert classifier.classify("budget", ops) == "error"

    def test_dropped_subtree_without_critical_field_is_warning(self, classifier):
        ops = diff({"payment": {"memo": "x"}}, {})
        assert classifier.classify("budget", ops) == "warning"

    def test_required_field_removed_is_error(self, classifier):
        assert classifier.classify("budget", [DiffOp("remove", "/status")]) == "error"

    def test_required_field_changed_is_warning(self, classifier):
        assert classifier.classify("budget", [DiffOp("replace", "/status", "closed")]) == "warning"

    def test_other_field_is_warning(self, classifier):
        ops = [DiffOp("replace", "/updatedAt", 1), DiffOp("add", "/note", "x")]
        assert classifier.classify("budget", ops) == "warning"

    def test_unknown_endpoint_uses_default_rules(self, classifier):
        assert classifier.classify("recipe", [DiffOp("replace", "/amount", 1)]) == "warning"
        assert classifier.classify("recipe", [DiffOp("replace", "/updatedAt", 1)]) == "info"


def test_from_config_accepts_aliases_and_csv():
    c = DiffClassifier.from_config(
        {
            "spending": {"criticalPaths": "id, amount", "volatile_paths": ["updatedAt"]},
            "*": {"required": ["id"]},
        }
    )
    assert c.rules_for("spending") == EndpointRules.build(critical=["id", "amount"], volatile=["updatedAt"])
    assert c.rules_for("other").required_paths == ("id",)
    assert c.classify("other", [DiffOp("remove", "/id")]) == "error"
    assert c.classify("spending", [DiffOp("replace", "/amount", 2)]) == "error"


def test_significant_ops_drop_volatile(classifier):
    ops = [DiffOp("replace", "/updatedAt", 1), DiffOp("replace", "/name", "x")]
    assert classifier.significant_ops("budget", ops) == [DiffOp("replace", "/name", "x")]
