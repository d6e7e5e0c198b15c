"""
Worker process and the job pipeline it runs.
"""

from .processor import JobProcessor, PipelineCollaborators
from .worker import PriceMonitorWorker, run_worker

__all__ = ['JobProcessor', 'PipelineCollaborators', 'PriceMonitorWorker', 'run_worker']
