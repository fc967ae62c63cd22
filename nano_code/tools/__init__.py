"""
工具系统
"""
from .base import Tool, ToolContext, ToolOutput, ToolRegistry, truncate, uses_patch
from .builtin import register_builtin_tools

__all__ = [
    'Tool',
    'ToolContext',
    'ToolOutput',
    'ToolRegistry',
    'truncate',
    'uses_patch',
    'register_builtin_tools',
]
