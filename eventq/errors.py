class QueueNotFound(LookupError):
    def __init__(self, name: str):
        super().__init__(f"Queue '{name}' not found")
        self.name = name


class JobNotFound(LookupError):
    def __init__(self, queue: str, job_id: str):
        super().__init__(f"Job '{job_id}' not found in queue '{queue}'")
        self.queue = queue
        self.job_id = job_id


class AdminRequired(PermissionError):
    """Raised when a queue management call is made without the admin role."""


class JobTimeout(RuntimeError):
    def __init__(self, timeout_ms: int):
        super().__init__(f"job timed out after {timeout_ms} ms")
        self.timeout_ms = timeout_ms
