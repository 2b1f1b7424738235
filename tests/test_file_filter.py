"""Tests for the skip rules applied between diff parsing and review."""

from __future__ import annotations

import pytest

from diffwarden.core.diff_parser import FileChange
from diffwarden.core.file_filter import (
    SkipRules,
    filter_files,
    glob_to_regex,
    should_skip,
    skip_reason,
)

NO_RULES = SkipRules()


class TestBuiltInPatterns:
    @pytest.mark.parametrize(
        "path",
        [
            "app/src/main/res/values/strings.xml",
            "app/src/main/res/values-ko/strings_common.xml",
            "res/values/colors.xml",
            "src/main/resources/messages_ko.properties",
            "web/i18n/en.json",
            "public/locales/ko/common.yml",
            "po/ko.po",
        ],
    )
    def test_translation_files_skipped(self, path: str) -> None:
        assert skip_reason(path, NO_RULES) == "translation"

    @pytest.mark.parametrize(
        "path",
        [
            "package-lock.json",
            "frontend/yarn.lock",
            "Gemfile.lock",
            "dist/app.min.js",
            "dist/app.js.map",
            "go.sum",
            "api/client.generated.ts",
        ],
    )
    def test_generated_files_skipped(self, path: str) -> None:
        assert skip_reason(path, NO_RULES) == "config/generated"

    @pytest.mark.parametrize(
        "path",
        ["app/main.py", "src/components/Button.tsx", "README.md", "docs/strings.md"],
    )
    def test_source_files_reviewed(self, path: str) -> None:
        assert should_skip(path, NO_RULES) is False

    def test_patterns_are_case_insensitive(self) -> None:
        assert should_skip("ios/PODFILE.LOCK", NO_RULES) is True


class TestConfiguredRules:
    def test_extension_suffix(self) -> None:
        rules = SkipRules(extensions=(".snap",))
        assert skip_reason("tests/__snapshots__/a.test.js.snap", rules) == "extension .snap"

    def test_path_substring(self) -> None:
        rules = SkipRules(paths=("vendor/",))
        assert skip_reason("third_party/vendor/lib.go", rules) == "path vendor/"

    def test_glob_pattern(self) -> None:
        rules = SkipRules(patterns=("*_pb2.py",))
        assert skip_reason("proto/user_pb2.py", rules) == "custom pattern *_pb2.py"

    def test_glob_question_mark_matches_one_char(self) -> None:
        regex = glob_to_regex("v?.txt")
        assert regex.search("v1.txt")
        assert not regex.search("v.txt")

    def test_glob_escapes_regex_metacharacters(self) -> None:
        regex = glob_to_regex("a+b.txt")
        assert regex.search("a+b.txt")
        assert not regex.search("aab.txt")

    def test_extension_checked_before_builtins(self) -> None:
        rules = SkipRules(extensions=(".json",))
        assert skip_reason("package-lock.json", rules) == "extension .json"

    def test_with_paths_extends_without_mutating(self) -> None:
        base = SkipRules(paths=("build/",))
        extended = base.with_paths(["tests/"])
        assert extended.paths == ("build/", "tests/")
        assert base.paths == ("build/",)
        assert should_skip("tests/test_app.py", extended) is True
        assert should_skip("tests/test_app.py", base) is False


class TestFilterFiles:
    def test_partition_preserves_order(self) -> None:
        files = [
            FileChange(path="b.py", diff=""),
            FileChange(path="yarn.lock", diff=""),
            FileChange(path="a.py", diff=""),
        ]

        outcome = filter_files(files, NO_RULES)

        assert [f.path for f in outcome.reviewable] == ["b.py", "a.py"]
        assert [f.path for f in outcome.skipped] == ["yarn.lock"]

    def test_skipping_is_deterministic(self) -> None:
        rules = SkipRules(patterns=("*.gen.*",))
        assert should_skip("x/y.gen.go", rules) == should_skip("x/y.gen.go", rules)
