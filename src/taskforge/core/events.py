"""Progress events streamed to the client during a generation.

Each event serializes to one server-sent-events frame:

    event: <type>
    data: <json>

"""

from typing import ClassVar, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class StreamEvent(BaseModel):
    """Base class for generation stream events."""

    model_config = ConfigDict(populate_by_name=True)

    event: ClassVar[str]

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)

    def to_sse(self) -> str:
        data = self.model_dump_json(by_alias=True, exclude_none=True)
        return f"event: {self.event}\ndata: {data}\n\n"


class StatusEvent(StreamEvent):
    event: ClassVar[str] = "status"

    message: str
    kind: Optional[str] = Field(default=None, alias="type")
    sandbox_id: Optional[str] = Field(default=None, alias="sandboxId")


class TextEvent(StreamEvent):
    event: ClassVar[str] = "text"

    content: str


class ToolEvent(StreamEvent):
    event: ClassVar[str] = "tool"

    name: str
    action: str


class ErrorEvent(StreamEvent):
    event: ClassVar[str] = "error"

    message: str


class CompleteEvent(StreamEvent):
    """Terminal success event. Always the last event of a successful stream."""

    event: ClassVar[str] = "complete"

    message: str
    sandbox_id: str = Field(alias="sandboxId")
    sandbox_url: str = Field(alias="sandboxUrl")
    files_created: list[str] = Field(default_factory=list, alias="filesCreated")

    generation_id: Optional[str] = Field(default=None, alias="generationId")
    commit_sha: Optional[str] = Field(default=None, alias="commitSha")
    commit_url: Optional[str] = Field(default=None, alias="commitUrl")
    branch_name: Optional[str] = Field(default=None, alias="branchName")


Event = Union[StatusEvent, TextEvent, ToolEvent, ErrorEvent, CompleteEvent]
