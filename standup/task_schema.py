# standup/task_schema.py

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Literal, Optional, Tuple
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


TaskStatus = Literal["To-do", "In-progress", "Completed"]
TaskType = Literal["Coding", "Non-Coding"]

LIST_KINDS: Tuple[str, str] = ("Coding", "Non-Coding")

_STATUS_ALIASES = {
    "to-do": "To-do",
    "todo": "To-do",
    "to do": "To-do",
    "in-progress": "In-progress",
    "in progress": "In-progress",
    "in_progress": "In-progress",
    "completed": "Completed",
    "complete": "Completed",
    "done": "Completed",
}

_TYPE_ALIASES = {
    "coding": "Coding",
    "non-coding": "Non-Coding",
    "non coding": "Non-Coding",
    "noncoding": "Non-Coding",
}


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_status(value: Any) -> Any:
    if isinstance(value, str):
        return _STATUS_ALIASES.get(value.strip().lower(), value)
    return value


def normalize_type(value: Any) -> Any:
    if isinstance(value, str):
        return _TYPE_ALIASES.get(value.strip().lower(), value)
    return value


def _non_negative(v: Optional[float]) -> Optional[float]:
    if v is None:
        return None
    return max(0.0, float(v))


class EmbeddingMetadata(BaseModel):
    model: str
    text_hash: str
    generated_at: str
    last_updated: str
    dimensions: int


class TaskRecord(BaseModel):
    """A tracked unit of work, nested inside a container under its assignee."""
    ticket_id: str = Field(..., description="PREFIX-<n>, assigned once")
    title: str = ""
    description: str
    status: TaskStatus = "To-do"
    type: TaskType = "Coding"
    assignee: str

    estimated_time: float = 0.0
    time_taken: float = 0.0
    is_future_plan: bool = False

    priority: Optional[str] = None
    story_points: Optional[float] = None

    issue_key: Optional[str] = Field(default=None, description="Tracker key, never the ticket_id")
    issue_url: Optional[str] = None

    created_at: Optional[str] = None
    last_modified: Optional[str] = None

    embedding: Optional[List[float]] = None
    embedding_metadata: Optional[EmbeddingMetadata] = None

    @field_validator("status", mode="before")
    @classmethod
    def coerce_status(cls, v):
        return normalize_status(v)

    @field_validator("type", mode="before")
    @classmethod
    def coerce_type(cls, v):
        return normalize_type(v)

    @field_validator("estimated_time", "time_taken", mode="before")
    @classmethod
    def clamp_hours(cls, v):
        return _non_negative(v) or 0.0

    def embeddable_text(self) -> str:
        return f"{self.title or ''} {self.description or ''}".strip()

    def to_storage_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


@dataclass(frozen=True)
class TaskPath:
    """Where a task lives: container document, participant key, list and index."""
    container_id: str
    participant: str
    list_kind: str
    index: int


@dataclass
class LocatedTask:
    task: TaskRecord
    path: TaskPath

    @property
    def ticket_id(self) -> str:
        return self.task.ticket_id

    def with_changes(self, delta: Dict[str, Any]) -> "LocatedTask":
        merged = {**self.task.to_storage_dict(), **delta}
        return LocatedTask(task=TaskRecord.model_validate(merged), path=self.path)


@dataclass(frozen=True)
class UpdateResult:
    matched: bool
    modified: bool


class TaskContainer(BaseModel):
    """One processing run: a timestamp and every participant's task lists."""
    id: str
    timestamp: str
    participants: Dict[str, Dict[TaskType, List[TaskRecord]]] = Field(default_factory=dict)

    def located_tasks(self) -> Iterator[LocatedTask]:
        for participant, lists in self.participants.items():
            for kind in LIST_KINDS:
                for index, task in enumerate(lists.get(kind, [])):
                    yield LocatedTask(task=task, path=TaskPath(self.id, participant, kind, index))


class CandidateTask(BaseModel):
    """A task mention pulled from a transcript, before matching decides its fate."""
    model_config = ConfigDict(populate_by_name=True)

    description: str = Field(..., min_length=1)
    assignee: str = Field(..., min_length=1)
    type: TaskType = "Coding"
    existing_task_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("existing_task_id", "existingTaskId")
    )
    status: Optional[TaskStatus] = None
    estimated_time: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("estimated_time", "estimatedTime")
    )
    time_taken: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("time_taken", "timeTaken", "timeSpent")
    )
    is_future_plan: bool = Field(
        default=False, validation_alias=AliasChoices("is_future_plan", "isFuturePlan")
    )
    priority: Optional[str] = None
    story_points: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("story_points", "storyPoints")
    )

    @field_validator("status", mode="before")
    @classmethod
    def coerce_status(cls, v):
        return normalize_status(v)

    @field_validator("type", mode="before")
    @classmethod
    def coerce_type(cls, v):
        return normalize_type(v)

    @field_validator("estimated_time", "time_taken", "story_points", mode="before")
    @classmethod
    def clamp_non_negative(cls, v):
        return _non_negative(v)

    @field_validator("description", mode="before")
    @classmethod
    def strip_description(cls, v):
        return v.strip() if isinstance(v, str) else v


class SimilarityJudgment(BaseModel):
    """Language model verdict on whether two descriptions are the same work item."""
    model_config = ConfigDict(populate_by_name=True)

    is_match: bool = Field(default=False, validation_alias=AliasChoices("is_match", "isMatch"))
    confidence: float = 0.0
    reasoning: str = "No reasoning provided"
    similarities: List[str] = Field(default_factory=list)
    differences: List[str] = Field(default_factory=list)

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v):
        """Ensures confidence scores remain within the 0.0 to 1.0 range."""
        try:
            return max(0.0, min(1.0, float(v)))
        except (TypeError, ValueError):
            return 0.0


@dataclass
class TicketRequest:
    """What the issue tracker needs to file a ticket for a newly created task."""
    title: str
    description: str
    assignee: str
    type: str = "Coding"
    priority: Optional[str] = None
    story_points: Optional[float] = None
    estimated_time: float = 0.0
    is_future_plan: bool = False
    labels: List[str] = field(default_factory=list)

    @classmethod
    def from_task(cls, task: TaskRecord) -> "TicketRequest":
        return cls(
            title=task.title,
            description=task.description,
            assignee=task.assignee,
            type=task.type,
            priority=task.priority,
            story_points=task.story_points,
            estimated_time=task.estimated_time,
            is_future_plan=task.is_future_plan,
        )


@dataclass(frozen=True)
class FiledIssue:
    issue_key: str
    issue_url: str
