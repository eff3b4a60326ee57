"""
Policy compiler.

Pure functions only: config in, RBAC objects out. Anything that talks to a cluster lives in
`permbot.agent` / `permbot.providers`.
"""

from permbot.compiler.rbac import compile_global, compile_namespace

__all__ = ["compile_global", "compile_namespace"]
