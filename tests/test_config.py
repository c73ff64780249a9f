import pytest
from pydantic import ValidationError

from dualwrite.config import Settings


def test_root_path_is_normalised():
    assert Settings(API_ROOT_PATH="api/").API_ROOT_PATH == "/api"
    assert Settings(API_ROOT_PATH="  ").API_ROOT_PATH == ""


def test_secondary_only_operations_csv():
    s = Settings(SECONDARY_ONLY_OPERATIONS="recordSpending, refreshBalance,,")
    assert s.secondary_only_operations() == {"recordSpending", "refreshBalance"}


def test_classifier_rules_json():
    s = Settings(CLASSIFIER_RULES_JSON='{"budget": {"critical": ["amount"]}}')
    assert s.classifier_rules() == {"budget": {"critical": ["amount"]}}
    assert Settings(CLASSIFIER_RULES_JSON="").classifier_rules() == {}
    with pytest.raises(ValidationError):
        Settings(CLASSIFIER_RULES_JSON="[1, 2]")


def test_blank_retention_days_mean_keep_forever():
    assert Settings(DIFF_RETENTION_WARNING_DAYS="").DIFF_RETENTION_WARNING_DAYS is None
