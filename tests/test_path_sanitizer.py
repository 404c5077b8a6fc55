"""
Tests for path confinement.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dashterm.terminal.errors import PathTraversalError
from dashterm.terminal.security import PathSanitizer


@pytest.fixture
def sanitizer():
    return PathSanitizer()


@pytest.fixture
def root(tmp_path):
    return str(tmp_path)


class TestSanitize:
    """Candidates resolve inside the root or are rejected."""

    def test_relative_child(self, sanitizer, root):
        result = sanitizer.sanitize("src/app", root)
        assert result.ok is True
        assert result.canonical_path == os.path.join(root, "src", "app")

    def test_root_itself(self, sanitizer, root):
        """'.' canonicalizes to the root, which is inside the root."""
        result = sanitizer.sanitize(".", root)
        assert result.ok is True
        assert result.canonical_path == os.path.normpath(root)

    def test_absolute_inside_root(self, sanitizer, root):
        inside = os.path.join(root, "pkg")
        assert sanitizer.sanitize(inside, root).canonical_path == inside

    def test_absolute_outside_root(self, sanitizer, root):
        result = sanitizer.sanitize(os.path.dirname(root), root)
        assert result.ok is False
        assert result.reason == "path-traversal"

    def test_sibling_with_shared_prefix(self, sanitizer, root):
        """'/work-evil' is not inside '/work'."""
        result = sanitizer.sanitize(root + "-evil", root)
        assert result.ok is False

    def test_nonexistent_path_is_fine(self, sanitizer, root):
        assert sanitizer.sanitize("not/created/yet", root).ok is True

    @pytest.mark.parametrize("candidate", [
        "..",
        "../x",
        "a/../../b",
        "a/../b",
        "..\\windows",
        "a\\..\\b",
        "'..'/x",
        '"..\\"',
    ])
    def test_parent_tokens_rejected(self, sanitizer, root, candidate):
        """Any '..' segment is rejected even if it would resolve inside the root."""
        result = sanitizer.sanitize(candidate, root)
        assert result.ok is False
        assert result.reason == "path-traversal"

    def test_dots_inside_names_allowed(self, sanitizer, root):
        """Only a whole '..' segment counts as traversal."""
        assert sanitizer.sanitize("release..notes/v1", root).ok is True

    @pytest.mark.parametrize("candidate", ["", "   ", None, 7])
    def test_invalid_candidate(self, sanitizer, root, candidate):
        result = sanitizer.sanitize(candidate, root)
        assert result.ok is False
        assert result.reason == "invalid-input"

    def test_invalid_root(self, sanitizer):
        assert sanitizer.sanitize("src", "").reason == "invalid-input"


class TestRequire:
    """require() raises instead of returning a failed result."""

    def test_returns_canonical_path(self, sanitizer, root):
        assert sanitizer.require("src", root) == os.path.join(root, "src")

    def test_raises_on_escape(self, sanitizer, root):
        with pytest.raises(PathTraversalError) as exc_info:
            sanitizer.require("../etc", root)
        assert exc_info.value.reason == "path-traversal"
