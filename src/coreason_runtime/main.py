# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_runtime

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from mcp.server.fastmcp import FastMCP
from mcp.types import TextContent

from coreason_runtime.models import ExecutionResult, ExecutionStatus
from coreason_runtime.orchestrator import Orchestrator

# Initialize Orchestrator
orchestrator = Orchestrator()


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncIterator[None]:
    """Reconcile at startup and tear every sandbox down on exit."""
    await orchestrator.start()
    try:
        yield
    finally:
        await orchestrator.shutdown()


# Initialize MCP Server
mcp = FastMCP("coreason-runtime", lifespan=lifespan)


def format_result(result: ExecutionResult) -> list[TextContent]:
    """Render an execution result as MCP text blocks."""
    output: list[TextContent] = []

    for item in result.outputs:
        if item.type == "table" and item.data is not None:
            header = " | ".join(item.data.columns)
            rows = [" | ".join(str(row.get(column, "")) for column in item.data.columns) for row in item.data.rows]
            output.append(TextContent(type="text", text="\n".join([item.content, header, *rows])))
        elif item.type == "error":
            output.append(TextContent(type="text", text=f"ERROR:\n{item.content}"))
        else:
            output.append(TextContent(type="text", text=item.content))

    # Raw stderr is only worth showing when no structured error carried it
    if result.stderr and result.status == ExecutionStatus.SUCCESS:
        output.append(TextContent(type="text", text=f"STDERR:\n{result.stderr}"))

    output.append(TextContent(type="text", text=f"Status: {result.status.value}"))
    output.append(TextContent(type="text", text=f"Duration: {result.execution_duration:.4f}s"))
    return output


@mcp.tool()  # type: ignore[misc]
async def execute_code(
    project_id: str,
    code: str,
    python_version: str | None = None,
    timeout: float | None = None,
) -> list[TextContent]:
    """
    Execute Python code in the project's sandbox.
    Returns printed text, tables and errors in order.
    """
    try:
        result = await orchestrator.run_code(project_id, code, python_version, timeout)
    except Exception as e:
        return [TextContent(type="text", text=f"Error executing code: {e!s}")]
    return format_result(result)


@mcp.tool()  # type: ignore[misc]
async def install_package(project_id: str, package_name: str, python_version: str | None = None) -> str:
    """
    Install one or more packages (comma or space separated) in the project's sandbox.
    """
    try:
        sandbox = await orchestrator.get_or_create_sandbox(project_id, python_version)
        outcome = await orchestrator.install_package(sandbox.id, package_name)
    except Exception as e:
        return f"Error installing package: {e!s}"
    return outcome.message


@mcp.tool()  # type: ignore[misc]
async def uninstall_package(project_id: str, package_name: str, python_version: str | None = None) -> str:
    """
    Remove a package installed in the project's sandbox.
    """
    try:
        sandbox = await orchestrator.get_or_create_sandbox(project_id, python_version)
        outcome = await orchestrator.uninstall_package(sandbox.id, package_name)
    except Exception as e:
        return f"Error uninstalling package: {e!s}"
    return outcome.message


@mcp.tool()  # type: ignore[misc]
async def list_packages(project_id: str, python_version: str | None = None) -> list[str]:
    """
    List packages available in the project's sandbox as "name==version".
    """
    try:
        sandbox = await orchestrator.get_or_create_sandbox(project_id, python_version)
        packages = await orchestrator.list_packages(sandbox.id)
    except Exception as e:
        return [f"Error listing packages: {e!s}"]
    return [f"{pkg.name}=={pkg.version}" if pkg.version else pkg.name for pkg in packages]


@mcp.tool()  # type: ignore[misc]
async def search_packages(query: str, limit: int = 8) -> list[dict[str, Any]]:
    """
    Search PyPI for installable packages.
    """
    try:
        results = await orchestrator.search_packages(query, limit)
    except Exception as e:
        return [{"error": f"Error searching packages: {e!s}"}]
    return [pkg.model_dump(exclude_none=True) for pkg in results]


def main() -> None:
    """Entry point for the MCP server."""
    mcp.run()


if __name__ == "__main__":  # pragma: no cover
    main()
