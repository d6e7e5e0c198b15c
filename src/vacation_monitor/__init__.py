"""
Vacation Monitor worker: leader-elected scheduling and job queue consumption
for hotel price monitoring.
"""

from .config import Config

__version__ = "0.1.0"

__all__ = ['Config', '__version__']
