"""Progress reporting for engine operations.

The Manager calls an observer synchronously at every stage checkpoint. An
observer is any callable taking a ProgressUpdate. QueueObserver adapts that
to a bounded queue drained by a rendering thread.
"""

import queue
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterator, Optional


class Stage(str, Enum):
    START = "start"
    DOWNLOAD = "download"
    VERIFY = "verify"
    EXTRACT = "extract"
    PRE_INSTALL = "pre-install"
    INSTALL = "install"
    POST_INSTALL = "post-install"
    RECORD = "record"
    PRE_REMOVE = "pre-remove"
    REMOVE_FILES = "remove-files"
    POST_REMOVE = "post-remove"
    DONE = "done"


@dataclass(frozen=True)
class ProgressUpdate:
    stage: Stage
    percent: float  # 0.0 - 1.0
    message: str
    package: str = ""


ProgressObserver = Callable[[ProgressUpdate], None]


class QueueObserver:
    """Forward updates to a bounded queue.

    There is no back-pressure contract: when the queue is full the engine
    blocks until the consumer catches up.
    """

    _END = None

    def __init__(self, maxsize: int = 64):
        self.queue: "queue.Queue[Optional[ProgressUpdate]]" = queue.Queue(maxsize)

    def __call__(self, update: ProgressUpdate) -> None:
        self.queue.put(update)

    def close(self) -> None:
        """Signal the consumer that no more updates follow"""
        self.queue.put(self._END)

    def __iter__(self) -> Iterator[ProgressUpdate]:
        while True:
            update = self.queue.get()
            if update is self._END:
                return
            yield update
