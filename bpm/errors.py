"""Exceptions raised by the job store, the engines and the tool runner."""


class WorkerError(Exception):
    """Base exception for the worker"""


class ClaimError(WorkerError):
    """The store could not be reached or the claim transaction failed"""


class JobError(WorkerError):
    """A job cannot complete; the job is marked failed and never retried"""


class NotFound(JobError):
    """Referenced track, source media or prerequisite analysis is missing"""


class InsufficientBeats(JobError):
    """Not enough rhythmic structure to estimate a tempo"""


class InvalidRatio(JobError):
    """Stretch ratio is not a positive number"""


class AnalysisNotReady(JobError):
    """Render requested before the track's analysis finished with a usable BPM"""


class StorageError(JobError):
    """Object storage read or write failed"""


class JobTimeout(JobError):
    """Job exceeded its execution budget"""


class ToolFailure(JobError):
    """External tool exited non-zero or printed output we cannot parse"""

    def __init__(self, tool: str, message: str, output: str = ""):
        text = f"{tool}: {message}"
        if output:
            text = f"{text}\n{output.strip()}"
        super().__init__(text)
        self.tool = tool
        self.output = output
