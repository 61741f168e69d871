# model/job.py
from typing import Final, FrozenSet, Literal, Optional
from pydantic import BaseModel, Field

JobStage = Literal[
    "queued",
    "downloading",
    "uploading",
    "done",
    "error",
    "canceled",
]

TERMINAL_STAGES: Final[FrozenSet[str]] = frozenset({"done", "error", "canceled"})
ACTIVE_STAGES: Final[FrozenSet[str]] = frozenset({"queued", "downloading", "uploading"})


class Job(BaseModel):
    id: str
    owner: str
    sourceUrl: str
    displayName: Optional[str] = None
    # Name the owner asked for at submit time; wins over the resolved title.
    requestedName: Optional[str] = None
    outputName: Optional[str] = None
    stage: JobStage = "queued"
    progress: int = Field(default=0, ge=0, le=100)
    error: Optional[str] = None
    outputRef: Optional[str] = None
    active: bool = True
    retryCount: int = 0
    createdAt: int = 0
    updatedAt: int = 0
    # Bumped on every write; lets observers detect changes cheaply.
    revision: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES
