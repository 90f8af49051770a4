"""Relay metrics package initialization.

Exports for testing and module access.
"""

# Make lib and models accessible
from relay_metrics import lib, models

__all__ = ['lib', 'models']
