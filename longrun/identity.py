"""LONGRUN identity — name, version, banner."""

__codename__ = "LONGRUN"
__tagline__ = "Pick up where the last session left off."
__version__ = "0.4.0"

BANNER = r"""
  _    ___  _  _  ___ ___ _   _ _  _
 | |  / _ \| \| |/ __| _ \ | | | \| |
 | |_| (_) | .` | (_ |   / |_| | .` |
 |____\___/|_|\_|\___|_|_\\___/|_|\_|
"""
