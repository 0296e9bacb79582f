"""Configuration settings and constants for connvault.

The package exposes the same names as `connvault.config.settings` so
callers can write `from connvault.config import KEY_LENGTH`.
"""

from .settings import *  # noqa: F401,F403
from .settings import __all__  # noqa: F401
