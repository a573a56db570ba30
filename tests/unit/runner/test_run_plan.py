"""Unit tests for run plans and input limits."""

from __future__ import annotations

import pytest

from berth.config import RunnerConfig
from berth.errors import ValidationError
from berth.services.runner.plan import plan_for, sanitize_inputs

IMAGES = RunnerConfig().images


class TestPlanFor:
    def test_interpreted(self):
        plan = plan_for("scripts/main.py", IMAGES, args=["--flag", "x"])

        assert plan.image == "python:3.11-slim"
        assert plan.steps == [["python", "scripts/main.py", "--flag", "x"]]

    def test_compiled_c_runs_binary_outside_workspace(self):
        plan = plan_for("hello.c", IMAGES, args=["1"])

        compile_step, run_step = plan.steps
        binary = compile_step[compile_step.index("-o") + 1]
        assert compile_step[0] == "gcc"
        assert binary.startswith("/tmp/berth-run-")
        assert run_step == [binary, "1"]

    def test_java_uses_class_name(self):
        plan = plan_for("src/Main.java", IMAGES)

        compile_step, run_step = plan.steps
        assert compile_step[:2] == ["javac", "-d"]
        assert run_step[0] == "java"
        assert run_step[-1] == "Main"
        assert run_step[2] == compile_step[2]

    def test_extension_is_case_insensitive(self):
        assert plan_for("APP.JS", IMAGES).steps == [["node", "APP.JS"]]

    @pytest.mark.parametrize("name", ["README.md", "Makefile", "archive.tar.gz"])
    def test_unsupported(self, name: str):
        with pytest.raises(ValidationError, match="Unsupported file type"):
            plan_for(name, IMAGES)

    def test_configured_images_only(self):
        with pytest.raises(ValidationError):
            plan_for("main.go", {".py": "python:3.11-slim"})


class TestSanitizeInputs:
    def test_passes_valid_inputs(self):
        args, env, stdin = sanitize_inputs(
            RunnerConfig(), args=[1, "two"], env={"MODE": "test"}, stdin="data"
        )

        assert args == ["1", "two"]
        assert env == {"MODE": "test"}
        assert stdin == "data"

    @pytest.mark.parametrize(
        ("kwargs", "message"),
        [
            ({"args": ["a"] * 3}, "Too many arguments"),
            ({"args": ["x" * 11]}, "Argument too long"),
            ({"args": ["a\x00b"]}, "null bytes"),
            ({"env": {"1BAD": "x"}}, "Invalid environment variable name"),
            ({"env": {"A": "1", "B": "2", "C": "3"}}, "Too many environment variables"),
            ({"env": {"A": "x" * 11}}, "too long"),
            ({"stdin": "x" * 11}, "stdin too large"),
        ],
    )
    def test_limits(self, kwargs: dict, message: str):
        config = RunnerConfig(
            arg_max_count=2,
            arg_max_len=10,
            env_max_count=2,
            env_val_max_len=10,
            stdin_max_bytes=10,
        )

        with pytest.raises(ValidationError, match=message):
            sanitize_inputs(config, **kwargs)
