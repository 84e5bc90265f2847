"""Tests for the built-in tools and the default registry."""

import sys
import time

import pytest

from deepseek_cli.errors import ToolInvocationError
from deepseek_cli.tools import (
    MAX_OUTPUT_BYTES,
    default_registry,
    evaluate,
    read_file,
    run_shell,
    write_file,
)

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses /bin/sh")


class TestCalculator:
    @pytest.mark.parametrize(
        "expr, expected",
        [
            ("2+3", "2+3 = 5"),
            ("10/4", "10/4 = 2.5"),
            ("2^10", "2^10 = 1024"),
            ("sqrt(16)", "sqrt(16) = 4"),
            ("-(3 - 5) * 2", "-(3 - 5) * 2 = 4"),
            ("7 // 2 + 7 % 2", "7 // 2 + 7 % 2 = 4"),
        ],
    )
    def test_values(self, expr, expected):
        assert evaluate(expr) == expected

    def test_constants(self):
        assert evaluate("pi").startswith("pi = 3.14159")

    def test_division_by_zero(self):
        with pytest.raises(ToolInvocationError, match="division by zero"):
            evaluate("1/0")

    @pytest.mark.parametrize("expr", ["__import__('os')", "x + 1", "2 +", "open('f')"])
    def test_rejects_non_arithmetic(self, expr):
        with pytest.raises(ToolInvocationError):
            evaluate(expr)

    def test_empty(self):
        with pytest.raises(ToolInvocationError, match="empty"):
            evaluate("  ")

    def test_huge_exponent_rejected(self):
        with pytest.raises(ToolInvocationError, match="exponent too large"):
            evaluate("2 ** 100000")

    @pytest.mark.parametrize("expr", ["(9**9999)**9999", "10**5000", "(2**9000) * (2**9000)"])
    def test_huge_result_rejected(self, expr):
        with pytest.raises(ToolInvocationError, match="result too large"):
            evaluate(expr)

    def test_large_result_within_bounds(self):
        assert evaluate("2^10000").startswith("2^10000 = 19950631168807583848")

    def test_exponent_tower_fails_fast_in_registry(self):
        registry = default_registry(tool_timeout=2)
        start = time.monotonic()
        result = registry.invoke("calculator", {"expression": "(9**9999)**9999"})
        assert not result.success
        assert "result too large" in result.text
        assert time.monotonic() - start < 2


@posix_only
class TestShell:
    def test_captures_both_streams(self, tmp_path):
        out = run_shell("echo out; echo err >&2", cwd=str(tmp_path))
        assert out == "stdout:\nout\n\nstderr:\nerr\n"

    def test_runs_in_cwd(self, tmp_path):
        (tmp_path / "marker.txt").write_text("x")
        assert "marker.txt" in run_shell("ls", cwd=str(tmp_path))

    def test_nonzero_exit_is_failure(self, tmp_path):
        with pytest.raises(ToolInvocationError) as exc:
            run_shell("echo oops; exit 3", cwd=str(tmp_path))
        assert str(exc.value).startswith("exit code: 3\n")
        assert "oops" in str(exc.value)

    def test_timeout_kills_command(self, tmp_path):
        with pytest.raises(ToolInvocationError, match="timed out after 0.5s"):
            run_shell("sleep 10", cwd=str(tmp_path), timeout=0.5)

    def test_output_truncated(self, tmp_path):
        out = run_shell(f"head -c {MAX_OUTPUT_BYTES + 100} /dev/zero | tr '\\0' a", cwd=str(tmp_path))
        assert "[output truncated at 50KB]" in out


class TestFiles:
    def test_write_then_read(self, tmp_path):
        target = tmp_path / "sub" / "notes.txt"
        assert write_file(str(target), "hello") == f"File written to {target}"
        assert read_file(str(target)) == "hello"

    def test_relative_paths_use_cwd(self, tmp_path):
        write_file("a.txt", "rel", cwd=str(tmp_path))
        assert (tmp_path / "a.txt").read_text() == "rel"
        assert read_file("a.txt", cwd=str(tmp_path)) == "rel"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ToolInvocationError, match="does not exist"):
            read_file(str(tmp_path / "nope"))

    def test_directory(self, tmp_path):
        with pytest.raises(ToolInvocationError, match="directory"):
            read_file(str(tmp_path))

    def test_binary(self, tmp_path):
        f = tmp_path / "blob.bin"
        f.write_bytes(b"\x00\x01\x02")
        with pytest.raises(ToolInvocationError, match="binary"):
            read_file(str(f))


class TestDefaultRegistry:
    def test_tools_in_order(self):
        reg = default_registry()
        assert reg.names() == ["shell", "calculator", "read_file", "write_file"]

    def test_calculator_through_registry(self):
        result = default_registry().invoke("calculator", '{"expression": "6*7"}')
        assert result.success
        assert result.text == "6*7 = 42"

    def test_write_file_requires_content(self, tmp_path):
        result = default_registry(cwd=str(tmp_path)).invoke("write_file", {"path": "x"})
        assert not result.success
        assert "content" in result.text

    @posix_only
    def test_shell_failure_is_error_result(self, tmp_path):
        result = default_registry(cwd=str(tmp_path)).invoke("shell", {"command": "exit 1"})
        assert not result.success
        assert result.text.startswith("error: exit code: 1")

    def test_custom_tool_timeout(self):
        assert default_registry(tool_timeout=3).tool_timeout == 3
