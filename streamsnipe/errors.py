class StreamsnipeError(Exception):
    """Base class for engine errors."""


class CaptureStartupError(StreamsnipeError):
    """A capture process could not be confirmed as started."""


class SpawnError(CaptureStartupError):
    """The capture tool could not be executed, reported a fatal error, or exited during startup."""


class CaptureStartupTimeout(CaptureStartupError):
    """No start signal before the hard startup ceiling; the process was killed."""


class ProbeTimeout(StreamsnipeError):
    """A liveness probe ran past its timeout and was killed."""


class RepositoryError(StreamsnipeError):
    """A channel or recording row could not be read or written."""
