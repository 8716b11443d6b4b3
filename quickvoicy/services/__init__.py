"""
Background and shared services.
"""
from quickvoicy.services.payment_monitor import monitor
from quickvoicy.services.scheduler import start_scheduler, stop_scheduler

__all__ = ["monitor", "start_scheduler", "stop_scheduler"]
