# errors.py
# Store and state-machine errors propagate to callers; handler errors are
# absorbed by worker slots and recorded on the failed job.


class SchedulerError(Exception):
    """Base exception for all scheduler errors."""


class StorageError(SchedulerError):
    """The backing store is unreachable or corrupt."""


class NotFoundError(SchedulerError):
    def __init__(self, job_id):
        super().__init__(f"job {job_id} not found")
        self.job_id = job_id


class InvalidStateError(SchedulerError):
    """Illegal transition request; nothing was changed."""

    def __init__(self, job_id, state, action):
        super().__init__(f"cannot {action} job {job_id} in state {state}")
        self.job_id = job_id
        self.state = state
        self.action = action


class HandlerError(SchedulerError):
    """A job body failed."""


class ProviderError(HandlerError):
    """The external metadata provider failed."""


class HandlerTimeout(HandlerError):
    def __init__(self, timeout):
        super().__init__(f"handler exceeded {timeout}s timeout")
        self.timeout = timeout


class ConfigError(SchedulerError):
    pass
