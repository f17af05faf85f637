from .fetch_job import FetchJob, FetchScheduler, RunState

__all__ = ['FetchJob', 'FetchScheduler', 'RunState']
