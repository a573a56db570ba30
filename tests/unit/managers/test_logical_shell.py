"""Unit tests for command-string handling of the execution channel."""

from __future__ import annotations

import pytest

from berth.managers.shell.logical import (
    SENTINEL,
    CwdTrailerFilter,
    is_mutating,
    parse_cd,
    resolve_cd,
    split_chain,
    strip_cwd_trailer,
    wrap_with_cwd_trailer,
)


class TestSplitChain:
    def test_splits_top_level_and(self):
        assert split_chain("cd src && ls -la && echo done") == ["cd src", "ls -la", "echo done"]

    def test_ignores_quoted_and(self):
        assert split_chain("echo 'a && b' && pwd") == ["echo 'a && b'", "pwd"]
        assert split_chain('echo "x && y"') == ['echo "x && y"']

    def test_drops_empty_segments(self):
        assert split_chain("  && ls &&  ") == ["ls"]

    def test_single_ampersand_is_kept(self):
        assert split_chain("sleep 1 & echo hi") == ["sleep 1 & echo hi"]


class TestParseCd:
    @pytest.mark.parametrize(
        ("segment", "target"),
        [
            ("cd", None),
            ("cd   ", None),
            ("cd ~", "~"),
            ("cd src", "src"),
            ("cd ../lib", "../lib"),
            ("cd '/tmp/with space'", "/tmp/with space"),
        ],
    )
    def test_plain_cd(self, segment: str, target: str | None):
        request = parse_cd(segment)
        assert request is not None
        assert request.target == target

    @pytest.mark.parametrize(
        "segment",
        ["ls", "cdx", "cd a b", "cd src; ls", "cd $(pwd)", "cd src | cat", "cd 'unterminated"],
    )
    def test_not_a_plain_cd(self, segment: str):
        assert parse_cd(segment) is None


class TestResolveCd:
    def test_home_forms(self):
        assert resolve_cd("/workspace/src", None) == "/workspace"
        assert resolve_cd("/workspace/src", "~") == "/workspace"
        assert resolve_cd("/", "~/lib", home="/workspace") == "/workspace/lib"

    def test_relative_and_absolute(self):
        assert resolve_cd("/workspace", "src/app") == "/workspace/src/app"
        assert resolve_cd("/workspace/src", "..") == "/workspace"
        assert resolve_cd("/workspace", "/etc//nginx/") == "/etc/nginx"


class TestCwdTrailer:
    def test_wrap_preserves_exit_status(self):
        script = wrap_with_cwd_trailer("npm test")

        assert script.startswith("npm test\n__berth_rc=$?\n")
        assert SENTINEL in script
        assert script.endswith("exit $__berth_rc")

    def test_strip_cwd_trailer(self):
        clean, directory = strip_cwd_trailer(f"hello\n\n{SENTINEL}/workspace/src\n")

        assert clean == "hello\n"
        assert directory == "/workspace/src"

    def test_strip_without_trailer(self):
        assert strip_cwd_trailer("just output\n") == ("just output\n", None)

    def test_filter_holds_back_partial_marker(self):
        trailer = CwdTrailerFilter()
        marker = "\n" + SENTINEL

        out = trailer.feed("line one\n" + marker[:6])
        out += trailer.feed(marker[6:] + "/workspace\n")
        remaining, directory = trailer.flush()

        assert out + remaining == "line one\n"
        assert directory == "/workspace"

    def test_filter_releases_false_alarm(self):
        trailer = CwdTrailerFilter()

        out = trailer.feed("value\n__BER")
        out += trailer.feed("RY\n")
        remaining, directory = trailer.flush()

        assert out + remaining == "value\n__BERRY\n"
        assert directory is None


class TestIsMutating:
    @pytest.mark.parametrize(
        "segment",
        [
            "mkdir -p build",
            "rm -rf dist",
            "echo hi > notes.txt",
            "cat a >> b",
            "npm install",
            "git checkout main",
            "sed -i 's/a/b/' file",
            "sudo touch x",
            "FOO=1 mv a b",
            "ls | tee out.log",
            "pip install requests",
        ],
    )
    def test_mutating(self, segment: str):
        assert is_mutating(segment)

    @pytest.mark.parametrize(
        "segment",
        [
            "ls -la",
            "cat package.json",
            "echo 'rm -rf /'",
            "npm test",
            "git status",
            "grep foo src 2>&1",
            "node app.js > /dev/null",
            "echo '>' quoted",
        ],
    )
    def test_read_only(self, segment: str):
        assert not is_mutating(segment)
