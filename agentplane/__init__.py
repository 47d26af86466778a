"""agentplane: control plane for a fleet of agent worker processes."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("agentplane")
except PackageNotFoundError:
    __version__ = "0.1.0"  # fallback for development
