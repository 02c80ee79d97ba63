# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_runtime

"""Execution harness wrapped around user code.

The rendered script is written into the sandbox workspace and run by the
sandbox interpreter. It:

* captures every ``print`` aimed at stdout as a ``text`` output,
* offers ``display(df)`` for ``table`` outputs and ``resolve_dataset_path``,
* runs the user code and records a traceback as an ``error`` output,
* always writes the outputs as a JSON array next to itself.

User code is embedded as a string literal and compiled at run time, so it is
never re-indented and a syntax error becomes an ``error`` output.
"""

from string import Template

HARNESS_VERSION = 2
CELL_FILENAME = "<cell>"

_TEMPLATE = Template('''\
# coreason-runtime harness v$version
import builtins as _builtins
import io as _io
import json as _json
import linecache as _linecache
import os as _os
import sys as _sys
import traceback as _traceback
from pathlib import Path as _Path

_WORKSPACE = _Path(__file__).resolve().parent
_DATASETS_MOUNT = _Path($datasets_mount)
_OUTPUT_FILE = _WORKSPACE / $output_filename
_CELL = $cell_filename
_USER_CODE = $user_code

_outputs = []
_original_print = _builtins.print


def print(*args, **kwargs):
    target = kwargs.get("file")
    if target is None or target is _sys.stdout:
        buffer = _io.StringIO()
        captured = dict(kwargs, file=buffer)
        captured.pop("flush", None)
        _original_print(*args, **captured)
        _outputs.append({"type": "text", "content": buffer.getvalue()})
    _original_print(*args, **kwargs)


def display(obj, max_rows=20):
    """Show a DataFrame-like object as a table output."""
    if hasattr(obj, "to_dict") and hasattr(obj, "columns"):
        frame = obj.head(max_rows) if hasattr(obj, "head") else obj
        columns = [str(column) for column in obj.columns]
        _outputs.append({
            "type": "table",
            "content": f"DataFrame ({len(obj)} rows, {len(columns)} cols)",
            "data": {"columns": columns, "rows": frame.to_dict("records")},
        })
    else:
        print(repr(obj))


def resolve_dataset_path(filename, dataset_id=None):
    """Find a dataset file in the workspace or the shared dataset mount."""
    roots = [_WORKSPACE, _WORKSPACE / "datasets", _DATASETS_MOUNT]
    candidates = []
    for root in roots:
        if dataset_id:
            candidates.append(root / str(dataset_id) / filename)
        candidates.append(root / filename)

    if dataset_id:
        suffix = "".join(c for c in str(dataset_id) if c.isalnum())[:8]
        if suffix:
            name = _Path(filename)
            alias = f"{name.stem}__{suffix}{name.suffix}"
            candidates.extend([_WORKSPACE / "datasets" / alias, _DATASETS_MOUNT / alias])

    for candidate in candidates:
        if candidate.exists():
            return str(candidate)

    for root in (_WORKSPACE / "datasets", _DATASETS_MOUNT):
        if root.exists():
            for match in root.rglob(_Path(filename).name):
                return str(match)

    return str(_WORKSPACE / "datasets" / filename)


_namespace = {
    "__name__": "__main__",
    "__builtins__": _builtins,
    "print": print,
    "display": display,
    "resolve_dataset_path": resolve_dataset_path,
}

_os.chdir(_WORKSPACE)
_packages = str(_WORKSPACE / ".python")
if _packages not in _sys.path:
    _sys.path.insert(0, _packages)

_linecache.cache[_CELL] = (len(_USER_CODE), None, _USER_CODE.splitlines(True), _CELL)

try:
    exec(compile(_USER_CODE, _CELL, "exec"), _namespace)
except Exception:
    _etype, _evalue, _tb = _sys.exc_info()
    _outputs.append({
        "type": "error",
        "content": "".join(_traceback.format_exception(_etype, _evalue, _tb.tb_next)),
    })
finally:
    with open(_OUTPUT_FILE, "w", encoding="utf-8") as _handle:
        _json.dump(_outputs, _handle, default=str)
''')


def render_harness(code: str, output_filename: str, datasets_mount: str = "/datasets") -> str:
    """Wrap ``code`` in the execution harness.

    Args:
        code: Untrusted user source.
        output_filename: Name of the JSON output file, relative to the workspace.
        datasets_mount: Read-only dataset mount inside the sandbox.

    Returns:
        str: Python source for the sandbox interpreter.
    """
    if "/" in output_filename or output_filename in ("", ".", ".."):
        raise ValueError(f"Output filename must be a bare file name: {output_filename!r}")

    return _TEMPLATE.substitute(
        version=HARNESS_VERSION,
        datasets_mount=repr(datasets_mount),
        output_filename=repr(output_filename),
        cell_filename=repr(CELL_FILENAME),
        user_code=repr(code),
    )
