from dataclasses import dataclass, field
from typing import Optional, Union


@dataclass
class Ok:
    """The executor performed the remote effect."""
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"outcome": "ok", **self.data}


@dataclass
class AlreadyDone:
    """The effect was already in place; nothing was sent."""
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"outcome": "already_done", **self.data}


@dataclass
class TransientError:
    """Failure that may succeed on a later attempt (timeouts, 5xx, lost connections)."""
    message: str
    status_code: Optional[int] = None

    kind = "transient"


@dataclass
class PermanentError:
    """Failure that will not succeed on retry (provider validation, missing data)."""
    message: str
    status_code: Optional[int] = None

    kind = "permanent"


ExecutorResult = Union[Ok, AlreadyDone, TransientError, PermanentError]
SUCCESS_RESULTS = (Ok, AlreadyDone)
ERROR_RESULTS = (TransientError, PermanentError)
