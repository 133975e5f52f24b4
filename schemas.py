from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)


class CommandModel(BaseModel):
    # Clients send camelCase keys and may attach fields we do not use.
    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)


class Phase(str, Enum):
    CREATE = "create"
    VOTING = "voting"
    DISCUSS = "discuss"


class Column(str, Enum):
    TODO = "todo"
    DOING = "doing"
    DONE = "done"


PARTICIPANT_ROLE = "participant"


class MeetingCommand(CommandModel):
    meeting_id: str = ""


class AdminCommand(MeetingCommand):
    admin_token: Optional[str] = None


class JoinCommand(AdminCommand):
    role: Optional[str] = PARTICIPANT_ROLE
    id: Optional[str] = None


class SubmitTopicCommand(MeetingCommand):
    title: Optional[str] = None
    author_id: Optional[str] = None


class VoteCommand(MeetingCommand):
    participant_id: Optional[str] = None
    topic_id: Optional[str] = None


class MoveTopicCommand(AdminCommand):
    topic_id: Optional[str] = None
    column: Optional[str] = None


class DeleteTopicCommand(AdminCommand):
    topic_id: Optional[str] = None


class SetDurationsCommand(AdminCommand):
    create: Any = None
    voting: Any = None
    discuss: Any = None


class SetVoteLimitCommand(AdminCommand):
    max_votes: Any = None


class StartPhaseCommand(AdminCommand):
    phase: Optional[str] = None
    minutes: Any = None
    topic_id: Optional[str] = None


class CreateWithIdInput(CommandModel):
    meeting_id: Any = ""


class CreatedMeeting(StrictModel):
    meeting_id: str
    admin_token: str
    board_url: str
    join_url: str
    admin_url: str


class IdentityOutput(StrictModel):
    meeting_id: str
    participant_id: str


class TopicView(StrictModel):
    id: str
    title: str
    votes: int = Field(ge=0, default=0)
    column: Column = Column.TODO
    created_at: int


class Totals(StrictModel):
    participants: int = Field(ge=0, default=0)
    votes_cast: int = Field(ge=0, default=0)


class VoteConfig(StrictModel):
    max_votes_per_participant: int = Field(ge=1, le=10)


class Durations(StrictModel):
    create: int = Field(ge=1, le=60)
    voting: int = Field(ge=1, le=60)
    discuss: int = Field(ge=1, le=60)


class ClientView(StrictModel):
    id: str
    topics: List[TopicView] = Field(default_factory=list)
    totals: Totals = Field(default_factory=Totals)
    config: VoteConfig
    phase: Optional[Phase] = None
    phase_ends_at: Optional[int] = None
    phase_paused: bool = False
    phase_remaining_ms: Optional[int] = None
    now: int
    durations: Durations
    current_topic_id: Optional[str] = None


class YourVotes(StrictModel):
    topic_counts: Dict[str, int] = Field(default_factory=dict)
    max: int


def dump_wire(model: BaseModel) -> dict:
    return model.model_dump(mode="json", by_alias=True)
