from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from pydantic import BaseModel, ValidationError

from broadcaster import Broadcaster
from meeting_store import Meeting, MeetingStore
from persistence import PersistenceGateway
from phase_timer import PhaseTimer, Scheduler
from schemas import (
    PARTICIPANT_ROLE,
    AdminCommand,
    DeleteTopicCommand,
    JoinCommand,
    MoveTopicCommand,
    Phase,
    SetDurationsCommand,
    SetVoteLimitCommand,
    StartPhaseCommand,
    SubmitTopicCommand,
    VoteCommand,
    YourVotes,
    dump_wire,
)

logger = logging.getLogger(__name__)

MEETING_NOT_FOUND = "Meeting not found"


@dataclass
class ClientSession:
    """Per-connection identity bound by ``join``."""

    client_id: str
    cookies: dict[str, str] = field(default_factory=dict)
    meeting_id: Optional[str] = None
    participant_id: Optional[str] = None


def cookie_name(meeting_id: str) -> str:
    return f"clid_{meeting_id}"


class SessionEngine:
    # Each command: mutate under the lock, broadcast state, then persist.

    def __init__(
        self,
        store: MeetingStore,
        broadcaster: Broadcaster,
        scheduler: Scheduler,
        gateway: PersistenceGateway | None = None,
    ):
        self._lock = threading.RLock()
        self.store = store
        self.broadcaster = broadcaster
        self.gateway = gateway
        self.timer = PhaseTimer(scheduler, clock=store.clock, on_expiry=self._on_expiry, lock=self._lock)
        self._handlers: dict[str, tuple[type[BaseModel], Callable[[ClientSession, Any], bool]]] = {
            "join": (JoinCommand, self.join),
            "submit_topic": (SubmitTopicCommand, self.submit_topic),
            "vote": (VoteCommand, self.vote),
            "unvote": (VoteCommand, self.unvote),
            "move_topic": (MoveTopicCommand, self.move_topic),
            "delete_topic": (DeleteTopicCommand, self.delete_topic),
            "set_durations": (SetDurationsCommand, self.set_durations),
            "set_vote_limit": (SetVoteLimitCommand, self.set_vote_limit),
            "start_phase": (StartPhaseCommand, self.start_phase),
            "add_minute": (AdminCommand, self.add_minute),
            "end_phase": (AdminCommand, self.end_phase),
            "pause_phase": (AdminCommand, self.pause_phase),
            "resume_phase": (AdminCommand, self.resume_phase),
        }

    def restore(self) -> list[Meeting]:
        if self.gateway is None:
            return []
        with self._lock:
            return self.gateway.load_into(self.store, self.timer)

    def shutdown(self) -> None:
        with self._lock:
            self.timer.cancel_all()
            self.persist()

    def persist(self) -> None:
        if self.gateway is not None:
            self.gateway.persist(self.store)

    def create_meeting(self, requested_id: Any = None) -> tuple[Meeting, str]:
        with self._lock:
            meeting, admin_token = self.store.create(requested_id)
            self.persist()
            return meeting, admin_token

    def view(self, meeting_id: Any) -> dict | None:
        with self._lock:
            meeting = self.store.get(meeting_id)
            return dump_wire(self.store.snapshot(meeting)) if meeting else None

    def dispatch(self, session: ClientSession, event: Any, data: Any) -> bool:
        entry = self._handlers.get(str(event or ""))
        if entry is None:
            logger.debug("ignoring unknown event %r from %s", event, session.client_id)
            return False
        model, handler = entry
        try:
            command = model.model_validate(data if isinstance(data, dict) else {})
        except ValidationError as exc:
            logger.debug("ignoring malformed %s from %s: %s", event, session.client_id, exc)
            return False
        with self._lock:
            return handler(session, command)

    def _broadcast_state(self, meeting: Meeting) -> None:
        self.broadcaster.to_room(meeting.id, "state", dump_wire(self.store.snapshot(meeting)))

    def _commit(self, meeting: Meeting) -> None:
        self._broadcast_state(meeting)
        self.persist()

    def _send_your_votes(self, session: ClientSession, meeting: Meeting, participant_id: Optional[str]) -> None:
        payload = YourVotes(
            topic_counts=meeting.ledger.counts_for(participant_id),
            max=self.store.vote_limit(meeting),
        )
        self.broadcaster.to_client(session.client_id, "your_votes", dump_wire(payload))

    def _on_expiry(self, meeting: Meeting, phase: Phase) -> None:
        self._broadcast_state(meeting)
        self.broadcaster.to_room(meeting.id, "phase_expired", {"phase": phase.value, "meetingId": meeting.id})
        self.persist()

    def _acting_participant(self, session: ClientSession, meeting: Meeting, claimed: Optional[str]) -> Optional[str]:
        if session.meeting_id == meeting.id and session.participant_id:
            return session.participant_id
        return claimed

    def _admin_meeting(self, command: AdminCommand) -> Meeting | None:
        meeting = self.store.get(command.meeting_id)
        if meeting is None or not self.store.is_admin(meeting, command.admin_token):
            return None
        return meeting

    def join(self, session: ClientSession, command: JoinCommand) -> bool:
        meeting = self.store.get(command.meeting_id)
        if meeting is None:
            self.broadcaster.to_client(session.client_id, "error_msg", MEETING_NOT_FOUND)
            return False
        if command.role == PARTICIPANT_ROLE:
            pid = session.cookies.get(cookie_name(meeting.id)) or command.id or session.client_id
        else:
            pid = command.id or session.client_id
        session.meeting_id = meeting.id
        session.participant_id = pid
        meeting.participants.add(pid)
        self.broadcaster.join_room(session.client_id, meeting.id)
        self._commit(meeting)
        if command.role == PARTICIPANT_ROLE:
            self._send_your_votes(session, meeting, pid)
        return True

    def submit_topic(self, session: ClientSession, command: SubmitTopicCommand) -> bool:
        meeting = self.store.get(command.meeting_id)
        if meeting is None:
            return False
        topic = self.store.add_topic(meeting, command.title, command.author_id)
        if topic is None:
            return False
        self._broadcast_state(meeting)
        self.broadcaster.to_room(meeting.id, "topic_added", {"topicId": topic.id})
        self.persist()
        return True

    def vote(self, session: ClientSession, command: VoteCommand) -> bool:
        meeting = self.store.get(command.meeting_id)
        if meeting is None:
            return False
        pid = self._acting_participant(session, meeting, command.participant_id)
        if not self.store.cast_vote(meeting, pid, command.topic_id):
            return False
        self._commit(meeting)
        self._send_your_votes(session, meeting, pid)
        return True

    def unvote(self, session: ClientSession, command: VoteCommand) -> bool:
        meeting = self.store.get(command.meeting_id)
        if meeting is None:
            return False
        pid = self._acting_participant(session, meeting, command.participant_id)
        if not self.store.retract_vote(meeting, pid, command.topic_id):
            return False
        self._commit(meeting)
        self._send_your_votes(session, meeting, pid)
        return True

    def move_topic(self, session: ClientSession, command: MoveTopicCommand) -> bool:
        meeting = self.store.get(command.meeting_id)
        if meeting is None or not self.store.move_topic(meeting, command.topic_id, command.column, command.admin_token):
            return False
        self._commit(meeting)
        return True

    def delete_topic(self, session: ClientSession, command: DeleteTopicCommand) -> bool:
        meeting = self.store.get(command.meeting_id)
        if meeting is None or not self.store.delete_topic(meeting, command.topic_id, command.admin_token):
            return False
        self._commit(meeting)
        return True

    def set_durations(self, session: ClientSession, command: SetDurationsCommand) -> bool:
        meeting = self.store.get(command.meeting_id)
        if meeting is None:
            return False
        if not self.store.set_durations(
            meeting, command.admin_token, create=command.create, voting=command.voting, discuss=command.discuss
        ):
            return False
        self._commit(meeting)
        return True

    def set_vote_limit(self, session: ClientSession, command: SetVoteLimitCommand) -> bool:
        meeting = self.store.get(command.meeting_id)
        if meeting is None or not self.store.set_vote_limit(meeting, command.admin_token, command.max_votes):
            return False
        self._commit(meeting)
        return True

    def start_phase(self, session: ClientSession, command: StartPhaseCommand) -> bool:
        meeting = self._admin_meeting(command)
        if meeting is None or not self.timer.start(meeting, command.phase, command.minutes, command.topic_id):
            return False
        self._commit(meeting)
        return True

    def add_minute(self, session: ClientSession, command: AdminCommand) -> bool:
        meeting = self._admin_meeting(command)
        if meeting is None or not self.timer.add_minute(meeting):
            return False
        self._commit(meeting)
        return True

    def end_phase(self, session: ClientSession, command: AdminCommand) -> bool:
        meeting = self._admin_meeting(command)
        if meeting is None or not self.timer.end(meeting):
            return False
        self._commit(meeting)
        return True

    def pause_phase(self, session: ClientSession, command: AdminCommand) -> bool:
        meeting = self._admin_meeting(command)
        if meeting is None or not self.timer.pause(meeting):
            return False
        self._commit(meeting)
        return True

    def resume_phase(self, session: ClientSession, command: AdminCommand) -> bool:
        meeting = self._admin_meeting(command)
        if meeting is None or not self.timer.resume(meeting):
            return False
        self._commit(meeting)
        return True
