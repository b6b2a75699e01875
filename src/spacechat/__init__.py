"""Chat tool orchestration and window-context targeting for Space workspaces."""

__version__ = "0.4.0"

__all__ = ["__version__"]
