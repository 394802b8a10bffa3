"""Progress/result channel message contract.

Messages flow one way, from the pipeline worker to the presentation layer,
as JSON Lines (one message per line). Each message is discriminated by its
``type`` field:

- progress: a PipelineStep snapshot (replace-by-name on the consumer side)
- log: a forwarded application log line
- error: a run-level error outside any step (bad config file, crash)
- result: the terminal PipelineResult, sent exactly once per run
"""

from datetime import datetime, timezone
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from audiobook_uploader.schemas.pipeline import PipelineResult, PipelineStep


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProgressMessage(BaseModel):
    type: Literal["progress"] = "progress"
    step: PipelineStep


class LogMessage(BaseModel):
    type: Literal["log"] = "log"
    timestamp: datetime = Field(default_factory=_utcnow)
    level: str = "info"
    module: str = ""
    message: str


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    error: str
    error_kind: str | None = None


class ResultMessage(BaseModel):
    type: Literal["result"] = "result"
    result: PipelineResult


ChannelMessage = Annotated[
    Union[ProgressMessage, LogMessage, ErrorMessage, ResultMessage],
    Field(discriminator="type"),
]

channel_message_adapter: TypeAdapter[ChannelMessage] = TypeAdapter(ChannelMessage)
