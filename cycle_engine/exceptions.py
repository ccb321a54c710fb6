class CycleEngineError(Exception):
    """Base class for subscription cycle engine errors."""


class PolicyUnresolvable(CycleEngineError):
    """Plan tags could not be interpreted; callers degrade to the structured default."""


class PeriodUnresolvable(CycleEngineError):
    def __init__(self, period: str | None):
        self.period = period
        super().__init__(f'Unknown order period: {period!r}')


class PersistenceConflict(CycleEngineError):
    def __init__(self, subscriber_id: int | None, original: Exception):
        self.subscriber_id = subscriber_id
        self.original = original
        super().__init__(f'Failed to persist subscriber {subscriber_id}: {original}')


class LockContention(CycleEngineError):
    def __init__(self, job_name: str):
        self.job_name = job_name
        super().__init__(f'Job {job_name} is already running elsewhere')
