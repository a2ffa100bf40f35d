"""vml package."""

__all__ = [
    "cli",
    "config",
    "constants",
    "emulator",
    "exceptions",
    "images",
    "models",
    "monitor",
    "orchestrator",
    "readiness",
    "registry",
    "seed",
    "supervisor",
    "utils",
]

__version__ = "0.3.0"
