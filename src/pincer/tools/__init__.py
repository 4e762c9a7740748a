"""
tools/ — Tool Executor implementations

Usage:
    from pincer.tools import ToolRegistry, register_workspace_tools

    registry = register_workspace_tools(ToolRegistry())
    bridge = ToolBridge(registry, workspace_root="./data/workspace")
"""

from pincer.tools.registry import ToolRegistry
from pincer.tools.workspace import register_workspace_tools

__all__ = ["ToolRegistry", "register_workspace_tools"]
