from __future__ import annotations


class TerrainLodError(RuntimeError):
    pass


class ConfigurationError(TerrainLodError):
    """Raised synchronously when the tree is wired with an invalid setup."""


class TransientFetchFailure(TerrainLodError):
    """A tile or height fetch failed; the loader recovers with a fallback."""

    def __init__(self, message: str, *, zoom: int, x: int, y: int) -> None:
        super().__init__(message)
        self.zoom = zoom
        self.x = x
        self.y = y


class InvariantViolation(TerrainLodError):
    """Internal tree invariant broken. Logged by the tree, never raised mid-frame."""
