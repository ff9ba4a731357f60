"""
tierhunt - Free-tier capacity hunter

Repeatedly tries to provision compute instances for a set of resource
profiles across availability zones, treating capacity exhaustion as an
expected outcome and finishing within a fixed wall-clock budget.
"""

__version__ = "0.1.0"
__author__ = "Local Pipeline Team"


__all__ = ["TierhuntConfig", "load_config", "__version__"]

from .config import TierhuntConfig, load_config
