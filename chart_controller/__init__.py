"""
.. include:: ../README.md
"""

__all__ = [
    "manifest",
    "args",
    "digest",
    "helm_controller",
    "store",
    "exceptions",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
