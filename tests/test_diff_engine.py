from __future__ import annotations

import pytest

from stockpot.engine.errors import (
    AlreadyExistsError,
    AmbiguousMatchError,
    DiffConflictError,
    ErrorKind,
    NoMatchError,
    PatchDidNotApplyError,
)
from stockpot.engine.tools.diff import (
    ContentPayload,
    DeleteSnippetPayload,
    DiffPayload,
    Replacement,
    ReplacementsPayload,
    apply_edit,
    apply_unified_diff,
    count_occurrences,
    is_unified_diff,
    make_unified_diff,
    parse_unified_diff,
)

SOURCE = "".join(f"line {i}\n" for i in range(1, 11))


class TestContentPayload:
    def test_creates_new_file(self) -> None:
        assert apply_edit(ContentPayload("a.txt", "hello\n"), None) == "hello\n"

    def test_refuses_existing_file_without_overwrite(self) -> None:
        with pytest.raises(AlreadyExistsError) as exc_info:
            apply_edit(ContentPayload("a.txt", "new\n"), "old\n")
        assert exc_info.value.kind == ErrorKind.ALREADY_EXISTS

    def test_overwrite_replaces_existing_file(self) -> None:
        payload = ContentPayload("a.txt", "new\n", overwrite=True)
        assert apply_edit(payload, "old\n") == "new\n"

    def test_overwrite_is_idempotent(self) -> None:
        payload = ContentPayload("a.txt", "same\n", overwrite=True)
        once = apply_edit(payload, "old\n")
        assert apply_edit(payload, once) == once


class TestReplacements:
    def test_applies_in_order(self) -> None:
        payload = ReplacementsPayload("a.py", (
            Replacement("alpha", "beta"),
            Replacement("beta = 1", "beta = 2"),
        ))
        assert apply_edit(payload, "alpha = 1\n") == "beta = 2\n"

    def test_no_match_fails(self) -> None:
        payload = ReplacementsPayload("a.py", (Replacement("missing", "x"),))
        with pytest.raises(NoMatchError):
            apply_edit(payload, "alpha = 1\n")

    def test_ambiguous_match_reports_count(self) -> None:
        payload = ReplacementsPayload("a.py", (Replacement("x", "y"),))
        with pytest.raises(AmbiguousMatchError) as exc_info:
            apply_edit(payload, "x = x + 1\n")
        assert exc_info.value.count == 2
        assert exc_info.value.kind == ErrorKind.AMBIGUOUS_MATCH

    def test_later_failure_leaves_nothing_applied(self) -> None:
        original = "first\nsecond\n"
        payload = ReplacementsPayload("a.txt", (
            Replacement("first", "FIRST"),
            Replacement("third", "THIRD"),
        ))
        with pytest.raises(NoMatchError):
            apply_edit(payload, original)
        # Pure function: the caller still holds the untouched original.
        assert original == "first\nsecond\n"

    def test_empty_list_is_conflict(self) -> None:
        with pytest.raises(DiffConflictError):
            apply_edit(ReplacementsPayload("a.txt", ()), "text\n")

    def test_missing_file_is_conflict(self) -> None:
        payload = ReplacementsPayload("a.txt", (Replacement("a", "b"),))
        with pytest.raises(DiffConflictError, match="does not exist"):
            apply_edit(payload, None)


def test_count_occurrences_counts_overlaps() -> None:
    assert count_occurrences("aaaa", "aa") == 3
    assert count_occurrences("abc", "d") == 0


def test_delete_snippet_removes_exact_occurrence() -> None:
    payload = DeleteSnippetPayload("a.py", "    print('debug')\n")
    content = "def f():\n    print('debug')\n    return 1\n"
    assert apply_edit(payload, content) == "def f():\n    return 1\n"


def test_delete_snippet_ambiguous() -> None:
    with pytest.raises(AmbiguousMatchError):
        apply_edit(DeleteSnippetPayload("a.txt", "x"), "x\nx\n")


class TestUnifiedDiff:
    def test_applies_clean_hunk(self) -> None:
        diff = (
            "--- a/f.txt\n"
            "+++ b/f.txt\n"
            "@@ -3,3 +3,3 @@\n"
            " line 3\n"
            "-line 4\n"
            "+line four\n"
            " line 5\n"
        )
        result = apply_unified_diff(SOURCE, diff)
        assert "line four\n" in result
        assert "line 4\n" not in result
        assert result.count("\n") == 10

    def test_tolerates_offset_within_fuzz(self) -> None:
        diff = (
            "@@ -5,3 +5,3 @@\n"
            " line 3\n"
            "-line 4\n"
            "+line four\n"
            " line 5\n"
        )
        result = apply_unified_diff(SOURCE, diff, fuzz=3)
        assert "line four\n" in result

    def test_offset_beyond_fuzz_does_not_apply(self) -> None:
        diff = (
            "@@ -9,3 +9,3 @@\n"
            " line 2\n"
            "-line 3\n"
            "+line three\n"
            " line 4\n"
        )
        with pytest.raises(PatchDidNotApplyError) as exc_info:
            apply_unified_diff(SOURCE, diff, fuzz=3)
        assert exc_info.value.hunk_index == 1
        assert exc_info.value.kind == ErrorKind.PATCH_DID_NOT_APPLY

    def test_mismatched_context_fails_whole_patch(self) -> None:
        diff = (
            "@@ -1,2 +1,2 @@\n"
            "-line 1\n"
            "+line one\n"
            " line 2\n"
            "@@ -8,2 +8,2 @@\n"
            "-not in file\n"
            "+whatever\n"
            " line 9\n"
        )
        with pytest.raises(PatchDidNotApplyError) as exc_info:
            apply_unified_diff(SOURCE, diff)
        assert exc_info.value.hunk_index == 2

    def test_multiple_hunks(self) -> None:
        diff = (
            "@@ -1,2 +1,3 @@\n"
            " line 1\n"
            "+inserted\n"
            " line 2\n"
            "@@ -9,2 +10,1 @@\n"
            " line 9\n"
            "-line 10\n"
        )
        result = apply_unified_diff(SOURCE, diff)
        lines = result.splitlines()
        assert lines[1] == "inserted"
        assert lines[-1] == "line 9"

    def test_new_file_diff(self) -> None:
        diff = (
            "--- /dev/null\n"
            "+++ b/new.txt\n"
            "@@ -0,0 +1,2 @@\n"
            "+hello\n"
            "+world\n"
        )
        assert apply_edit(DiffPayload("new.txt", diff), None) == "hello\nworld\n"

    def test_new_file_diff_against_existing_content(self) -> None:
        diff = "--- /dev/null\n+++ b/x.txt\n@@ -0,0 +1 @@\n+hi\n"
        with pytest.raises(AlreadyExistsError):
            apply_unified_diff("already here\n", diff)

    def test_deleted_file_diff(self) -> None:
        diff = (
            "--- a/old.txt\n"
            "+++ /dev/null\n"
            "@@ -1,2 +0,0 @@\n"
            "-one\n"
            "-two\n"
        )
        patches = parse_unified_diff(diff)
        assert patches[0].is_deleted_file
        assert apply_unified_diff("one\ntwo\n", diff) == ""

    def test_no_newline_markers(self) -> None:
        diff = (
            "@@ -1 +1 @@\n"
            "-old\n"
            "\\ No newline at end of file\n"
            "+new\n"
            "\\ No newline at end of file\n"
        )
        assert apply_unified_diff("old", diff) == "new"

    def test_adds_trailing_newline(self) -> None:
        diff = (
            "@@ -1 +1 @@\n"
            "-old\n"
            "\\ No newline at end of file\n"
            "+new\n"
        )
        assert apply_unified_diff("old", diff) == "new\n"

    def test_garbage_is_conflict(self) -> None:
        with pytest.raises(DiffConflictError, match="no hunks"):
            apply_unified_diff(SOURCE, "this is not a diff")

    def test_multi_file_diff_rejected(self) -> None:
        diff = (
            "--- a/one.txt\n+++ b/one.txt\n@@ -1 +1 @@\n-a\n+b\n"
            "--- a/two.txt\n+++ b/two.txt\n@@ -1 +1 @@\n-c\n+d\n"
        )
        with pytest.raises(DiffConflictError, match="2 files"):
            apply_unified_diff("a\n", diff)


def test_parse_strips_prefixes_and_timestamps() -> None:
    diff = (
        "diff --git a/src/app.py b/src/app.py\n"
        "index 123..456 100644\n"
        "--- a/src/app.py\t2024-01-01 00:00:00\n"
        "+++ b/src/app.py\t2024-01-02 00:00:00\n"
        "@@ -1 +1 @@ def main():\n"
        "-x\n"
        "+y\n"
    )
    patches = parse_unified_diff(diff)
    assert len(patches) == 1
    assert patches[0].path == "src/app.py"
    hunk = patches[0].hunks[0]
    assert hunk.old_count == 1 and hunk.new_count == 1
    assert hunk.section == "def main():"


@pytest.mark.parametrize(
    ("old", "new"),
    [
        ("a\nb\nc\n", "a\nB\nc\nd"),
        ("a\r\nb\r\nc\r\n", "a\r\nB\r\nc\r\n"),
        ("page1\x0cpage2\nx\n", "page1\x0cpage2\ny\n"),
        ("", "fresh\ncontent\n"),
        ("", "no newline"),
        ("going\naway\n", ""),
        ("a\nb", "a\nb\n"),
        ("a\nb\n", "a\nb"),
        ("one\r\ntwo", "one\r\nTWO"),
    ],
    ids=["lf", "crlf", "form-feed", "create", "create-no-eol", "delete",
         "gain-eol", "lose-eol", "crlf-no-eol"],
)
def test_made_diff_applies_back(old: str, new: str) -> None:
    diff = make_unified_diff(old, new, "f.txt")
    assert is_unified_diff(diff)
    assert apply_unified_diff(old, diff) == new


def test_form_feed_does_not_add_newline_marker() -> None:
    diff = make_unified_diff("page1\x0cpage2\n", "page1\x0cpage3\n", "f.txt")
    assert "\\ No newline at end of file" not in diff


def test_made_diff_marks_missing_newline() -> None:
    diff = make_unified_diff("a\n", "a\nb", "f.txt")
    assert "\\ No newline at end of file" in diff


def test_make_diff_uses_dev_null_for_creation() -> None:
    diff = make_unified_diff("", "x\n", "f.txt")
    assert diff.startswith("--- /dev/null\n+++ b/f.txt\n")
