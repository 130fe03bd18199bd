"""gitlab-fusion package."""

__all__ = [
    "cli",
    "config",
    "constants",
    "exceptions",
    "fusion",
    "models",
    "readiness",
    "ssh",
    "status",
    "utils",
    "vm",
]
