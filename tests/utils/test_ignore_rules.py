"""
Tests for ignore rules and glob matching.
"""

from kubesync.utils.ignore_rules import (
    get_abs_glob_exps,
    get_ignore_rules_from_directory,
    is_glob_exp_match,
    to_slash,
)


class TestIgnoreRules:
    def test_defaults_to_git_only(self, tmp_path):
        assert get_ignore_rules_from_directory(str(tmp_path)) == [".git"]

    def test_reads_odoignore(self, tmp_path):
        (tmp_path / ".odoignore").write_text("# comment\n\n*.log\n.gitkeep\nnode_modules\n")
        (tmp_path / ".gitignore").write_text("dist\n")

        assert get_ignore_rules_from_directory(str(tmp_path)) == [".git", "*.log", "node_modules"]

    def test_falls_back_to_gitignore(self, tmp_path):
        (tmp_path / ".gitignore").write_text("dist\r\n")

        assert get_ignore_rules_from_directory(str(tmp_path)) == [".git", "dist"]


class TestGlobMatching:
    def test_absolute_globs(self):
        assert get_abs_glob_exps("/src", ["build/*", "/abs/*"]) == ["/src/build/*", "/abs/*"]

    def test_match(self):
        globs = get_abs_glob_exps("/src", ["build/*", "*.log"])

        assert is_glob_exp_match("/src/build/out.bin", globs)
        assert is_glob_exp_match("/src/debug.log", globs)
        assert not is_glob_exp_match("/src/main.go", globs)

    def test_windows_separators(self):
        assert to_slash("C:\\src\\app") == "C:/src/app"
        assert is_glob_exp_match("C:\\src\\build\\out", ["C:/src/build/*"])

    def test_star_stays_within_segment(self):
        globs = get_abs_glob_exps("/src", ["*.log", "build/*"])

        assert not is_glob_exp_match("/src/logs/debug.log", globs)
        assert not is_glob_exp_match("/src/build/sub/out.bin", globs)
        assert is_glob_exp_match("/src/build/sub", globs)

    def test_question_mark_does_not_match_separator(self):
        assert not is_glob_exp_match("/src/a/b", ["/src/a?b"])
        assert is_glob_exp_match("/src/a-b", ["/src/a?b"])

    def test_globs_cleaned(self):
        assert get_abs_glob_exps("/src/", ["./build/*"]) == ["/src/build/*"]
