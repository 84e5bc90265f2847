"""Built-in tools: shell, calculator, read_file, write_file."""

import ast
import math
import operator
import os
import subprocess
import sys
from pathlib import Path

from .errors import ToolInvocationError
from .registry import ToolDefinition, ToolParam, ToolRegistry

MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB per stream
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB
SHELL_TIMEOUT = 60
_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals


# -- shell -------------------------------------------------------------------


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit."""
    if sys.platform != "win32":
        import signal

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass
    try:
        proc.kill()
    except OSError:
        pass
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass


def _decode_capped(data: bytes) -> str:
    if len(data) > MAX_OUTPUT_BYTES:
        text = data[:MAX_OUTPUT_BYTES].decode("utf-8", errors="replace")
        return text + f"\n[output truncated at {MAX_OUTPUT_BYTES // 1024}KB]"
    return data.decode("utf-8", errors="replace")


def run_shell(command: str, cwd: str | None = None, timeout: float = SHELL_TIMEOUT) -> str:
    """Run ``command`` through the platform shell.

    Returns ``"stdout:\\n...\\nstderr:\\n..."``. Raises ToolInvocationError
    (carrying the same text plus the exit code) when the command fails or
    times out, so the model still sees what the command printed.
    """
    if sys.platform == "win32":
        shell_cmd = ["cmd.exe", "/c", command]
    else:
        shell_cmd = ["/bin/sh", "-c", command]

    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.DEVNULL,
        cwd=cwd,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True

    try:
        proc = subprocess.Popen(shell_cmd, **popen_kwargs)
    except OSError as e:
        raise ToolInvocationError(f"failed to start shell command: {e}")

    try:
        out, err = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        _kill_process_tree(proc)
        raise ToolInvocationError(f"command timed out after {timeout:g}s")

    text = f"stdout:\n{_decode_capped(out)}\nstderr:\n{_decode_capped(err)}"
    if proc.returncode != 0:
        raise ToolInvocationError(f"exit code: {proc.returncode}\n{text}")
    return text


# -- calculator --------------------------------------------------------------

_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS = {ast.UAdd: operator.pos, ast.USub: operator.neg}

_FUNCTIONS = {
    "sqrt": math.sqrt,
    "sin": math.sin,
    "cos": math.cos,
    "tan": math.tan,
    "atan": math.atan,
    "log": math.log,
    "exp": math.exp,
    "abs": abs,
}

_CONSTANTS = {"pi": math.pi, "e": math.e}

MAX_EXPONENT = 10_000
# Keeps integer results printable under the interpreter's int-to-str digit limit.
MAX_RESULT_BITS = 14_000


def _check_pow(left, right) -> None:
    if abs(right) > MAX_EXPONENT:
        raise ValueError(f"exponent too large: {right}")
    if isinstance(left, int) and isinstance(right, int) and right > 0:
        if (abs(left).bit_length() - 1) * right > MAX_RESULT_BITS:
            raise ValueError("result too large")


def _eval_node(node: ast.AST) -> float | int:
    if isinstance(node, ast.Expression):
        return _eval_node(node.body)
    if isinstance(node, ast.Constant) and type(node.value) in (int, float):
        return node.value
    if isinstance(node, ast.Name) and node.id in _CONSTANTS:
        return _CONSTANTS[node.id]
    if isinstance(node, ast.BinOp) and type(node.op) in _BIN_OPS:
        left = _eval_node(node.left)
        right = _eval_node(node.right)
        if isinstance(node.op, ast.Pow):
            _check_pow(left, right)
        value = _BIN_OPS[type(node.op)](left, right)
        if isinstance(value, int) and value.bit_length() > MAX_RESULT_BITS:
            raise ValueError("result too large")
        return value
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_eval_node(node.operand))
    if (
        isinstance(node, ast.Call)
        and isinstance(node.func, ast.Name)
        and node.func.id in _FUNCTIONS
        and not node.keywords
    ):
        return _FUNCTIONS[node.func.id](*(_eval_node(a) for a in node.args))
    raise ValueError(f"unsupported syntax: {ast.dump(node)[:80]}")


def _format_number(value: float | int) -> str:
    if isinstance(value, float) and value.is_integer() and abs(value) < 1e16:
        return str(int(value))
    return str(value)


def evaluate(expression: str) -> str:
    """Evaluate an arithmetic expression and return ``"<expr> = <value>"``."""
    expr = expression.strip()
    if not expr:
        raise ToolInvocationError("empty expression")
    # bc-style exponent
    source = expr.replace("^", "**")
    try:
        tree = ast.parse(source, mode="eval")
        value = _eval_node(tree)
    except ZeroDivisionError:
        raise ToolInvocationError(f"division by zero in {expr!r}")
    except (SyntaxError, ValueError, TypeError, OverflowError) as e:
        raise ToolInvocationError(f"cannot evaluate {expr!r}: {e}")
    return f"{expr} = {_format_number(value)}"


# -- files -------------------------------------------------------------------


def _resolve(path: str, cwd: str | None) -> Path:
    p = Path(path).expanduser()
    if cwd is not None and not p.is_absolute():
        p = Path(cwd) / p
    return p


def read_file(path: str, cwd: str | None = None) -> str:
    p = _resolve(path, cwd)
    if not p.exists():
        raise ToolInvocationError(f"path does not exist: {path}")
    if p.is_dir():
        raise ToolInvocationError(f"path is a directory: {path}")
    try:
        with open(p, "rb") as f:
            chunk = f.read(BINARY_CHECK_BYTES)
        if b"\x00" in chunk:
            raise ToolInvocationError(f"binary file detected: {path}")
        return p.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ToolInvocationError(f"failed to decode {path} as UTF-8: {e}")
    except PermissionError as e:
        raise ToolInvocationError(str(e))


def write_file(path: str, content: str, cwd: str | None = None) -> str:
    p = _resolve(path, cwd)
    try:
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(content, encoding="utf-8")
    except OSError as e:
        raise ToolInvocationError(f"cannot write {path}: {e}")
    return f"File written to {path}"


# -- registration ------------------------------------------------------------


def builtin_tools(cwd: str | None = None, shell_timeout: float = SHELL_TIMEOUT) -> list[ToolDefinition]:
    return [
        ToolDefinition(
            name="shell",
            description="Execute a shell command",
            capability=lambda a: run_shell(
                str(a["command"]), cwd=cwd, timeout=shell_timeout
            ),
            parameters={
                "command": ToolParam(
                    "string", "The shell command to execute", required=True
                ),
            },
        ),
        ToolDefinition(
            name="calculator",
            description="Perform mathematical calculations",
            capability=lambda a: evaluate(str(a["expression"])),
            parameters={
                "expression": ToolParam(
                    "string", "Mathematical expression to evaluate", required=True
                ),
            },
        ),
        ToolDefinition(
            name="read_file",
            description="Read contents of a file",
            capability=lambda a: read_file(str(a["path"]), cwd=cwd),
            parameters={
                "path": ToolParam("string", "Path to the file to read", required=True),
            },
        ),
        ToolDefinition(
            name="write_file",
            description="Write content to a file",
            capability=lambda a: write_file(str(a["path"]), str(a["content"]), cwd=cwd),
            parameters={
                "path": ToolParam(
                    "string", "Path to the file to write", required=True
                ),
                "content": ToolParam(
                    "string", "Content to write to the file", required=True
                ),
            },
        ),
    ]


def default_registry(**kwargs) -> ToolRegistry:
    """Registry pre-loaded with the built-in tools."""
    tool_timeout = kwargs.pop("tool_timeout", None)
    registry = ToolRegistry() if tool_timeout is None else ToolRegistry(tool_timeout)
    for definition in builtin_tools(**kwargs):
        registry.register(definition)
    return registry
