# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_runtime

import json
import subprocess
import sys
from pathlib import Path
from typing import Any

import pytest

from coreason_runtime.harness import HARNESS_VERSION, render_harness


def run_harness(workspace: Path, code: str) -> tuple[subprocess.CompletedProcess[str], list[dict[str, Any]]]:
    """Render and run the harness with the host interpreter, as a sandbox would."""
    (workspace / "datasets").mkdir(parents=True, exist_ok=True)
    script = workspace / "_exec_code.py"
    script.write_text(render_harness(code, "_outputs.json"), encoding="utf-8")
    proc = subprocess.run(
        [sys.executable, str(script)], capture_output=True, text=True, timeout=60, cwd=str(workspace.parent)
    )
    output_file = workspace / "_outputs.json"
    outputs = json.loads(output_file.read_text(encoding="utf-8")) if output_file.exists() else []
    return proc, outputs


def test_rendered_harness_compiles() -> None:
    source = render_harness("print('hi')", "_outputs.json")

    compile(source, "_exec_code.py", "exec")
    assert f"harness v{HARNESS_VERSION}" in source


def test_output_filename_must_be_bare() -> None:
    with pytest.raises(ValueError):
        render_harness("pass", "../escape.json")
    with pytest.raises(ValueError):
        render_harness("pass", "")


def test_user_code_is_embedded_verbatim(tmp_path: Path) -> None:
    code = 'text = """triple\n    quoted \\n"""\nprint(repr(text))\nprint("$user_code ${version}")'

    proc, outputs = run_harness(tmp_path / "ws", code)

    assert proc.returncode == 0
    assert outputs[0] == {"type": "text", "content": repr('triple\n    quoted \n') + "\n"}
    assert outputs[1]["content"] == "$user_code ${version}\n"


def test_print_is_captured_and_still_reaches_stdout(tmp_path: Path) -> None:
    proc, outputs = run_harness(tmp_path / "ws", "print('hello')\nprint(1 + 1)\nprint('a', 'b', sep='-', end='!')")

    assert outputs == [
        {"type": "text", "content": "hello\n"},
        {"type": "text", "content": "2\n"},
        {"type": "text", "content": "a-b!"},
    ]
    assert proc.stdout == "hello\n2\na-b!"


def test_print_to_stderr_is_not_captured(tmp_path: Path) -> None:
    proc, outputs = run_harness(tmp_path / "ws", "import sys\nprint('warn', file=sys.stderr)")

    assert outputs == []
    assert "warn" in proc.stderr


def test_exception_becomes_error_output(tmp_path: Path) -> None:
    proc, outputs = run_harness(tmp_path / "ws", "print('before')\nraise ValueError('bad')")

    assert proc.returncode == 0
    assert outputs[0] == {"type": "text", "content": "before\n"}
    assert outputs[1]["type"] == "error"
    assert "ValueError: bad" in outputs[1]["content"]
    # The traceback points at the user's cell, not the harness
    assert 'File "<cell>", line 2' in outputs[1]["content"]
    assert "raise ValueError('bad')" in outputs[1]["content"]
    assert "_exec_code.py" not in outputs[1]["content"]


def test_syntax_error_becomes_error_output(tmp_path: Path) -> None:
    _, outputs = run_harness(tmp_path / "ws", "def broken(:\n    pass")

    assert len(outputs) == 1
    assert outputs[0]["type"] == "error"
    assert "SyntaxError" in outputs[0]["content"]


def test_display_table(tmp_path: Path) -> None:
    code = """
class Frame:
    columns = ["a", "b"]
    def __init__(self, rows):
        self.rows = rows
    def __len__(self):
        return len(self.rows)
    def head(self, n):
        return Frame(self.rows[:n])
    def to_dict(self, orient):
        assert orient == "records"
        return list(self.rows)

display(Frame([{"a": i, "b": str(i)} for i in range(30)]))
display(42)
"""
    _, outputs = run_harness(tmp_path / "ws", code)

    table = outputs[0]
    assert table["type"] == "table"
    assert table["content"] == "DataFrame (30 rows, 2 cols)"
    assert table["data"]["columns"] == ["a", "b"]
    assert len(table["data"]["rows"]) == 20
    assert outputs[1] == {"type": "text", "content": "42\n"}


def test_outputs_written_with_unserializable_values(tmp_path: Path) -> None:
    code = """
class Odd:
    def __str__(self):
        return "odd"
class Frame:
    columns = ["x"]
    def __len__(self):
        return 1
    def to_dict(self, orient):
        return [{"x": Odd()}]
display(Frame())
"""
    _, outputs = run_harness(tmp_path / "ws", code)

    assert outputs[0]["data"]["rows"] == [{"x": "odd"}]


def test_resolve_dataset_path(tmp_path: Path) -> None:
    workspace = tmp_path / "ws"
    (workspace / "datasets" / "nested").mkdir(parents=True)
    (workspace / "datasets" / "sales.csv").write_text("a\n1\n")
    (workspace / "datasets" / "report__abc12345.csv").write_text("x\n")
    (workspace / "datasets" / "nested" / "deep.csv").write_text("y\n")
    code = """
print(resolve_dataset_path("sales.csv"))
print(resolve_dataset_path("report.csv", "abc-12345-ffff"))
print(resolve_dataset_path("deep.csv"))
print(resolve_dataset_path("missing.csv"))
"""
    _, outputs = run_harness(workspace, code)
    resolved = [Path(output["content"].strip()) for output in outputs]

    assert resolved[0] == (workspace / "datasets" / "sales.csv").resolve()
    assert resolved[1] == (workspace / "datasets" / "report__abc12345.csv").resolve()
    assert resolved[2] == (workspace / "datasets" / "nested" / "deep.csv").resolve()
    assert resolved[3] == (workspace / "datasets" / "missing.csv").resolve()


def test_runs_from_workspace_with_package_dir_on_path(tmp_path: Path) -> None:
    workspace = tmp_path / "ws"
    (workspace / ".python" / "localpkg").mkdir(parents=True)
    (workspace / ".python" / "localpkg" / "__init__.py").write_text("VALUE = 7\n")
    code = "import os, localpkg\nprint(os.getcwd())\nprint(localpkg.VALUE)"

    _, outputs = run_harness(workspace, code)

    assert Path(outputs[0]["content"].strip()) == workspace.resolve()
    assert outputs[1]["content"] == "7\n"
