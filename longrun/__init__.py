"""LONGRUN — bookkeeping harness for long-running coding agents."""

from longrun.identity import __codename__, __tagline__, __version__

__all__ = ["__codename__", "__tagline__", "__version__"]
