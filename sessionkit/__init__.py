"""SessionKit: client-side authentication session management."""

__version__ = "0.1.0"
