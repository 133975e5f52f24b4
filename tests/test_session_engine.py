"""Command handling, room broadcasts and persistence hooks of SessionEngine."""

from __future__ import annotations

import pytest

from meeting_store import MeetingStore
from persistence import PersistenceGateway
from phase_timer import MINUTE_MS
from session_engine import MEETING_NOT_FOUND, ClientSession, SessionEngine
from tests.helpers.fakes import ManualScheduler, RecordingBroadcaster

MEETING_ID = "ROOM01"


@pytest.fixture
def admin_token(engine: SessionEngine) -> str:
    _, token = engine.create_meeting(MEETING_ID)
    return token


@pytest.fixture
def joined(engine: SessionEngine, admin_token: str, client_session: ClientSession, broadcaster: RecordingBroadcaster):
    engine.dispatch(client_session, "join", {"meetingId": MEETING_ID, "role": "participant"})
    broadcaster.clear()
    return client_session


def _submit(engine: SessionEngine, session: ClientSession, title: str = "Topic") -> str:
    assert engine.dispatch(session, "submit_topic", {"meetingId": MEETING_ID, "title": title, "authorId": "author"})
    return engine.store.get(MEETING_ID).topics[-1].id


def _start(engine: SessionEngine, session: ClientSession, token: str, phase: str, **extra) -> bool:
    return engine.dispatch(session, "start_phase", {"meetingId": MEETING_ID, "adminToken": token, "phase": phase, **extra})


class TestJoin:
    def test_unknown_meeting_gets_error(
        self, engine: SessionEngine, client_session: ClientSession, broadcaster: RecordingBroadcaster
    ) -> None:
        assert engine.dispatch(client_session, "join", {"meetingId": "NOPE"}) is False
        assert broadcaster.sent == [("client", "conn-1", "error_msg", MEETING_NOT_FOUND)]
        assert client_session.meeting_id is None

    def test_participant_join_broadcasts_state_and_votes(
        self, engine: SessionEngine, admin_token: str, client_session: ClientSession, broadcaster: RecordingBroadcaster
    ) -> None:
        assert engine.dispatch(client_session, "join", {"meetingId": "room01", "role": "participant"})

        assert broadcaster.rooms == {MEETING_ID: {"conn-1"}}
        assert [s[2] for s in broadcaster.sent] == ["state", "your_votes"]
        state = broadcaster.last("state")
        assert state["id"] == MEETING_ID
        assert state["totals"] == {"participants": 1, "votesCast": 0}
        assert state["config"] == {"maxVotesPerParticipant": 3}
        assert state["durations"] == {"create": 5, "voting": 3, "discuss": 5}
        assert broadcaster.last("your_votes") == {"topicCounts": {}, "max": 3}
        assert client_session.participant_id == "conn-1"

    def test_cookie_identity_wins(
        self, engine: SessionEngine, admin_token: str, broadcaster: RecordingBroadcaster
    ) -> None:
        session = ClientSession(client_id="conn-2", cookies={"clid_ROOM01": "cookie-pid"})
        engine.dispatch(session, "join", {"meetingId": MEETING_ID, "id": "claimed"})
        assert session.participant_id == "cookie-pid"
        assert "cookie-pid" in engine.store.get(MEETING_ID).participants

    def test_payload_id_used_without_cookie(self, engine: SessionEngine, admin_token: str) -> None:
        session = ClientSession(client_id="conn-3")
        engine.dispatch(session, "join", {"meetingId": MEETING_ID, "id": "claimed"})
        assert session.participant_id == "claimed"

    def test_board_join_gets_no_vote_summary(
        self, engine: SessionEngine, admin_token: str, client_session: ClientSession, broadcaster: RecordingBroadcaster
    ) -> None:
        engine.dispatch(client_session, "join", {"meetingId": MEETING_ID, "role": "board"})
        assert broadcaster.events("your_votes") == []
        assert broadcaster.events("state")


class TestTopicsAndVotes:
    def test_submit_emits_state_then_topic_added(
        self, engine: SessionEngine, joined: ClientSession, broadcaster: RecordingBroadcaster
    ) -> None:
        topic_id = _submit(engine, joined, "Roadmap")
        assert [s[2] for s in broadcaster.sent] == ["state", "topic_added"]
        assert broadcaster.last("topic_added") == {"topicId": topic_id}
        assert broadcaster.last("state")["topics"][0]["title"] == "Roadmap"

    def test_submit_rejected_outside_create(
        self, engine: SessionEngine, joined: ClientSession, admin_token: str, broadcaster: RecordingBroadcaster
    ) -> None:
        _start(engine, joined, admin_token, "voting")
        broadcaster.clear()
        assert engine.dispatch(joined, "submit_topic", {"meetingId": MEETING_ID, "title": "Late", "authorId": "a"}) is False
        assert broadcaster.sent == []

    def test_vote_flow(
        self, engine: SessionEngine, joined: ClientSession, admin_token: str, broadcaster: RecordingBroadcaster
    ) -> None:
        topic_id = _submit(engine, joined)
        _start(engine, joined, admin_token, "voting")
        broadcaster.clear()

        assert engine.dispatch(joined, "vote", {"meetingId": MEETING_ID, "participantId": "conn-1", "topicId": topic_id})
        assert [s[2] for s in broadcaster.sent] == ["state", "your_votes"]
        assert broadcaster.last("state")["totals"]["votesCast"] == 1
        assert broadcaster.last("state")["topics"][0]["votes"] == 1
        assert broadcaster.last("your_votes") == {"topicCounts": {topic_id: 1}, "max": 3}

        assert engine.dispatch(joined, "unvote", {"meetingId": MEETING_ID, "participantId": "conn-1", "topicId": topic_id})
        assert broadcaster.last("your_votes") == {"topicCounts": {}, "max": 3}
        assert broadcaster.last("state")["totals"]["votesCast"] == 0

    def test_vote_over_limit_emits_nothing(
        self, engine: SessionEngine, joined: ClientSession, admin_token: str, broadcaster: RecordingBroadcaster
    ) -> None:
        topic_id = _submit(engine, joined)
        engine.dispatch(joined, "set_vote_limit", {"meetingId": MEETING_ID, "adminToken": admin_token, "maxVotes": 1})
        _start(engine, joined, admin_token, "voting")
        vote = {"meetingId": MEETING_ID, "participantId": "conn-1", "topicId": topic_id}
        assert engine.dispatch(joined, "vote", vote)
        broadcaster.clear()

        assert engine.dispatch(joined, "vote", vote) is False
        assert broadcaster.sent == []

    def test_vote_outside_voting_phase_rejected(
        self, engine: SessionEngine, joined: ClientSession, broadcaster: RecordingBroadcaster
    ) -> None:
        topic_id = _submit(engine, joined)
        broadcaster.clear()
        assert engine.dispatch(joined, "vote", {"meetingId": MEETING_ID, "participantId": "conn-1", "topicId": topic_id}) is False
        assert broadcaster.sent == []

    def test_bound_participant_overrides_payload(
        self, engine: SessionEngine, joined: ClientSession, admin_token: str
    ) -> None:
        topic_id = _submit(engine, joined)
        _start(engine, joined, admin_token, "voting")
        engine.dispatch(joined, "vote", {"meetingId": MEETING_ID, "participantId": "someone-else", "topicId": topic_id})
        ledger = engine.store.get(MEETING_ID).ledger
        assert ledger.counts_for("conn-1") == {topic_id: 1}
        assert "someone-else" not in ledger

    def test_delete_topic_refunds_votes(
        self, engine: SessionEngine, joined: ClientSession, admin_token: str, broadcaster: RecordingBroadcaster
    ) -> None:
        keep = _submit(engine, joined, "Keep")
        drop = _submit(engine, joined, "Drop")
        _start(engine, joined, admin_token, "voting")
        for topic_id in (keep, drop, drop):
            engine.dispatch(joined, "vote", {"meetingId": MEETING_ID, "topicId": topic_id})

        assert engine.dispatch(joined, "delete_topic", {"meetingId": MEETING_ID, "adminToken": admin_token, "topicId": drop})
        state = broadcaster.last("state")
        assert [t["id"] for t in state["topics"]] == [keep]
        assert state["totals"]["votesCast"] == 1
        assert engine.store.get(MEETING_ID).ledger.counts_for("conn-1") == {keep: 1}


class TestAdminCommands:
    @pytest.mark.parametrize(
        ("event", "extra"),
        [
            ("move_topic", {"topicId": "x", "column": "done"}),
            ("delete_topic", {"topicId": "x"}),
            ("set_durations", {"create": 10}),
            ("set_vote_limit", {"maxVotes": 5}),
            ("start_phase", {"phase": "create"}),
            ("add_minute", {}),
            ("end_phase", {}),
            ("pause_phase", {}),
            ("resume_phase", {}),
        ],
    )
    def test_wrong_token_changes_nothing(
        self,
        engine: SessionEngine,
        joined: ClientSession,
        admin_token: str,
        broadcaster: RecordingBroadcaster,
        event: str,
        extra: dict,
    ) -> None:
        before = engine.view(MEETING_ID)
        assert engine.dispatch(joined, event, {"meetingId": MEETING_ID, "adminToken": "wrong", **extra}) is False
        assert broadcaster.sent == []
        assert engine.view(MEETING_ID) == before

    def test_set_durations_clamps(
        self, engine: SessionEngine, joined: ClientSession, admin_token: str, broadcaster: RecordingBroadcaster
    ) -> None:
        payload = {"meetingId": MEETING_ID, "adminToken": admin_token, "create": "90", "voting": 0, "discuss": "abc"}
        assert engine.dispatch(joined, "set_durations", payload)
        assert broadcaster.last("state")["durations"] == {"create": 60, "voting": 1, "discuss": 5}

    def test_move_topic_to_doing_sets_current(
        self, engine: SessionEngine, joined: ClientSession, admin_token: str, broadcaster: RecordingBroadcaster
    ) -> None:
        topic_id = _submit(engine, joined)
        payload = {"meetingId": MEETING_ID, "adminToken": admin_token, "topicId": topic_id, "column": "doing"}
        assert engine.dispatch(joined, "move_topic", payload)
        assert broadcaster.last("state")["currentTopicId"] == topic_id

    def test_pause_and_resume_round_trip(
        self,
        engine: SessionEngine,
        joined: ClientSession,
        admin_token: str,
        scheduler: ManualScheduler,
        broadcaster: RecordingBroadcaster,
    ) -> None:
        _start(engine, joined, admin_token, "create", minutes=2)
        scheduler.advance(30_000)
        admin = {"meetingId": MEETING_ID, "adminToken": admin_token}

        assert engine.dispatch(joined, "pause_phase", admin)
        state = broadcaster.last("state")
        assert state["phasePaused"] is True
        assert state["phaseRemainingMs"] == 90_000
        assert state["phaseEndsAt"] is None

        assert engine.dispatch(joined, "add_minute", admin)
        assert broadcaster.last("state")["phaseRemainingMs"] == 150_000

        assert engine.dispatch(joined, "resume_phase", admin)
        state = broadcaster.last("state")
        assert state["phasePaused"] is False
        assert state["phaseEndsAt"] == state["now"] + 150_000

    def test_start_discuss_without_topic_is_rejected(
        self, engine: SessionEngine, joined: ClientSession, admin_token: str, broadcaster: RecordingBroadcaster
    ) -> None:
        assert _start(engine, joined, admin_token, "discuss") is False
        assert broadcaster.sent == []

    def test_start_discuss_leaves_board_columns_alone(
        self, engine: SessionEngine, joined: ClientSession, admin_token: str, broadcaster: RecordingBroadcaster
    ) -> None:
        topic_id = _submit(engine, joined)
        assert _start(engine, joined, admin_token, "discuss", topicId=topic_id)
        state = broadcaster.last("state")
        assert state["phase"] == "discuss"
        assert state["currentTopicId"] == topic_id
        assert state["topics"][0]["column"] == "todo"

    def test_end_phase_clears_timer(
        self,
        engine: SessionEngine,
        joined: ClientSession,
        admin_token: str,
        scheduler: ManualScheduler,
        broadcaster: RecordingBroadcaster,
    ) -> None:
        _start(engine, joined, admin_token, "voting", minutes=1)
        assert engine.dispatch(joined, "end_phase", {"meetingId": MEETING_ID, "adminToken": admin_token})
        assert broadcaster.last("state")["phase"] is None
        scheduler.advance(10 * MINUTE_MS)
        assert broadcaster.events("phase_expired") == []


class TestExpiry:
    def test_expiry_emits_state_then_phase_expired_once(
        self,
        engine: SessionEngine,
        joined: ClientSession,
        admin_token: str,
        scheduler: ManualScheduler,
        broadcaster: RecordingBroadcaster,
        gateway: PersistenceGateway,
    ) -> None:
        _start(engine, joined, admin_token, "voting", minutes=1)
        broadcaster.clear()

        scheduler.advance(MINUTE_MS)
        assert [s[2] for s in broadcaster.sent] == ["state", "phase_expired"]
        assert broadcaster.last("phase_expired") == {"phase": "voting", "meetingId": MEETING_ID}
        state = broadcaster.last("state")
        assert state["phase"] == "voting"
        assert state["phasePaused"] is True
        assert state["phaseRemainingMs"] == 0
        assert gateway.load()[MEETING_ID]["phaseRemainingMs"] == 0

        scheduler.advance(30 * MINUTE_MS)
        assert len(broadcaster.events("phase_expired")) == 1


class TestDispatch:
    def test_unknown_event_is_ignored(
        self, engine: SessionEngine, joined: ClientSession, broadcaster: RecordingBroadcaster
    ) -> None:
        assert engine.dispatch(joined, "explode", {"meetingId": MEETING_ID}) is False
        assert broadcaster.sent == []

    @pytest.mark.parametrize("data", [None, "text", [1, 2], {"meetingId": 123}, {"meetingId": MEETING_ID, "title": ["x"]}])
    def test_malformed_payload_is_ignored(
        self, engine: SessionEngine, joined: ClientSession, broadcaster: RecordingBroadcaster, data
    ) -> None:
        assert engine.dispatch(joined, "submit_topic", data) is False
        assert broadcaster.sent == []
        assert engine.store.get(MEETING_ID).topics == []

    def test_extra_fields_are_tolerated(self, engine: SessionEngine, joined: ClientSession) -> None:
        payload = {"meetingId": MEETING_ID, "title": "T", "authorId": "a", "color": "red"}
        assert engine.dispatch(joined, "submit_topic", payload)


class TestPersistenceHooks:
    def test_create_writes_state_file(self, engine: SessionEngine, admin_token: str, gateway: PersistenceGateway) -> None:
        assert gateway.load()[MEETING_ID]["adminToken"] == admin_token

    def test_command_persists_snapshot(
        self, engine: SessionEngine, joined: ClientSession, gateway: PersistenceGateway
    ) -> None:
        topic_id = _submit(engine, joined, "Saved")
        saved = gateway.load()[MEETING_ID]
        assert [t["id"] for t in saved["topics"]] == [topic_id]
        assert saved["participants"] == ["conn-1"]

    def test_restart_restores_meetings(
        self,
        engine: SessionEngine,
        joined: ClientSession,
        admin_token: str,
        store: MeetingStore,
        gateway: PersistenceGateway,
        scheduler: ManualScheduler,
    ) -> None:
        _submit(engine, joined)
        _start(engine, joined, admin_token, "create", minutes=5)
        engine.shutdown()
        assert not engine.timer.has_pending(MEETING_ID)

        fresh = SessionEngine(MeetingStore(store.settings, clock=store.clock), RecordingBroadcaster(), scheduler, gateway)
        restored = fresh.restore()
        assert [m.id for m in restored] == [MEETING_ID]
        assert fresh.timer.has_pending(MEETING_ID)
        assert fresh.view(MEETING_ID)["topics"][0]["title"] == "Topic"

    def test_engine_without_gateway_still_runs(
        self, store: MeetingStore, scheduler: ManualScheduler, client_session: ClientSession
    ) -> None:
        engine = SessionEngine(store, RecordingBroadcaster(), scheduler)
        engine.create_meeting(MEETING_ID)
        assert engine.restore() == []
        assert engine.dispatch(client_session, "join", {"meetingId": MEETING_ID})
