"""名称规则的单元测试。"""

import pytest

from app.packages.filemanager.core.exceptions import InvalidNameError
from app.packages.filemanager.utils.name_utils import name_problem, normalize_name, upload_basename


def test_normalize_name_trims_whitespace():
    assert normalize_name("  报告 2024  ") == "报告 2024"


@pytest.mark.parametrize("raw", [None, "", "   ", ".", "..", "a/b", "a\\b", "what?", "tab\tname", "x" * 256])
def test_normalize_name_rejects_invalid(raw):
    with pytest.raises(InvalidNameError):
        normalize_name(raw)


def test_name_problem_accepts_max_length_and_dots_inside():
    assert name_problem("x" * 255) is None
    assert name_problem("archive.tar.gz") is None
    assert name_problem("...") is None


def test_upload_basename_strips_client_paths():
    assert upload_basename("C:\\fakepath\\a.txt") == "a.txt"
    assert upload_basename("dir/sub/b.txt") == "b.txt"
    assert upload_basename(None) == ""
