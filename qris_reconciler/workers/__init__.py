"""Background workers: polling daemon, callback retry and expiry sweep."""
from .callback_retry_worker import start_callback_retry_worker
from .expiry_sweep import start_expiry_sweep
from .polling_scheduler import PollingScheduler, start_polling_scheduler

__all__ = [
    "PollingScheduler",
    "start_callback_retry_worker",
    "start_expiry_sweep",
    "start_polling_scheduler",
]
