"""Exceptions shared across the bot, store and dispatch layers."""


class CheckbotError(Exception):
    pass


class TransportError(CheckbotError):
    """Telegram call failed (network, rate limit, bad response). Transient."""


class LockTimeout(CheckbotError):
    def __init__(self, namespace, timeout):
        self.namespace = namespace
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout}s waiting for '{namespace}' lock")


class ValidationError(CheckbotError):
    """Uploaded file rejected; the message is shown to the user."""


class InvalidTransition(CheckbotError):
    def __init__(self, job_id, current, requested):
        self.job_id = job_id
        self.current = current
        self.requested = requested
        super().__init__(f"Job {job_id}: {current} -> {requested} not allowed")


class VerifierError(CheckbotError):
    """The verifier cannot continue at all; the job is marked failed."""


class StoreError(CheckbotError):
    """Store file could not be read, written or locked (disk full, I/O error)."""
