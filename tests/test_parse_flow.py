# tests/test_parse_flow.py

import asyncio

import pytest

from dotalog.identity import PlayerIdentityMerger
from dotalog.opendota import OpenDotaClient, OpenDotaError
from dotalog.parse_flow import ParseCancelled, ParseOrchestrator, ParseState, ParseTimeoutError
from dotalog.parser import parse_status
from tests.helpers import SAMPLE_STATUS, create_temp_db, opendota_match, remove_temp_db, status_text


class FakeOpenDota:
    """In-memory stand-in for OpenDotaClient."""

    is_job_pending = staticmethod(OpenDotaClient.is_job_pending)

    def __init__(self, job_id="job-1", pending_polls=2, match_data=None, request_error=None):
        self.job_id = job_id
        self.pending_polls = pending_polls
        self.match_data = match_data if match_data is not None else opendota_match()
        self.request_error = request_error
        self.calls = []

    def request_parse(self, match_id):
        self.calls.append(("request_parse", match_id))
        if self.request_error:
            raise self.request_error
        return self.job_id

    def get_parse_job(self, job_id):
        self.calls.append(("get_parse_job", job_id))
        if self.pending_polls > 0:
            self.pending_polls -= 1
            return {"jobId": job_id}
        return None

    def fetch_match(self, match_id):
        self.calls.append(("fetch_match", match_id))
        return self.match_data

    def count(self, name):
        return sum(1 for call, _ in self.calls if call == name)


@pytest.fixture
def db():
    database, db_path = create_temp_db()
    yield database
    remove_temp_db(database, db_path)


@pytest.fixture
def match_id(db):
    return PlayerIdentityMerger(db).create_match(parse_status(SAMPLE_STATUS), SAMPLE_STATUS).match_id


def _orchestrator(db, client, **kwargs):
    kwargs.setdefault("poll_interval_seconds", 0)
    return ParseOrchestrator(db, client, **kwargs)


def test_successful_parse(db, match_id):
    client = FakeOpenDota(pending_polls=2)
    outcome = asyncio.run(_orchestrator(db, client).run(match_id))

    assert outcome.dota_match_id == 7654321
    assert outcome.job_id == "job-1"
    assert outcome.poll_attempts == 3
    assert outcome.result.updated_count == 10
    assert client.count("get_parse_job") == 3

    match = db.get_match(match_id)
    assert match["opendota_fetched"] is True
    assert [mp["hero_id"] for mp in db.get_match_players(match_id)] == list(range(10, 20))


def test_state_sequence(db, match_id):
    states = []
    orchestrator = _orchestrator(db, FakeOpenDota(pending_polls=0), on_state_change=states.append)

    asyncio.run(orchestrator.run(match_id))

    assert states == [
        ParseState.REQUESTING_PARSE,
        ParseState.POLLING,
        ParseState.FETCHING_DATA,
        ParseState.IDLE,
    ]
    assert orchestrator.state == ParseState.IDLE


def test_async_state_callback(db, match_id):
    states = []

    async def on_state(state):
        states.append(state.value)

    asyncio.run(_orchestrator(db, FakeOpenDota(pending_polls=0), on_state_change=on_state).run(match_id))

    assert states[0] == "requesting_parse"
    assert states[-1] == "idle"


def test_no_job_id_skips_polling(db, match_id):
    client = FakeOpenDota(job_id=None)
    outcome = asyncio.run(_orchestrator(db, client).run(match_id))

    assert outcome.poll_attempts == 0
    assert client.count("get_parse_job") == 0
    assert client.count("fetch_match") == 1


def test_poll_timeout(db, match_id):
    client = FakeOpenDota(pending_polls=100)

    with pytest.raises(ParseTimeoutError):
        asyncio.run(_orchestrator(db, client, max_poll_attempts=3).run(match_id))

    assert client.count("get_parse_job") == 3
    assert client.count("fetch_match") == 0
    assert db.get_match(match_id)["opendota_fetched"] is False


def _run_with_stop_at(db, match_id, client, stop_state):
    async def scenario():
        stop_event = asyncio.Event()
        states = []

        def on_state(state):
            states.append(state)
            if state == stop_state:
                stop_event.set()

        orchestrator = _orchestrator(db, client, on_state_change=on_state)
        with pytest.raises(ParseCancelled):
            await orchestrator.run(match_id, stop_event=stop_event)
        return states

    return asyncio.run(scenario())


def test_cancel_while_polling(db, match_id):
    client = FakeOpenDota(pending_polls=5)
    states = _run_with_stop_at(db, match_id, client, ParseState.POLLING)

    assert client.count("get_parse_job") == 0
    assert client.count("fetch_match") == 0
    assert states[-1] == ParseState.IDLE

    match = db.get_match(match_id)
    assert match["opendota_fetched"] is False
    assert match["parse_requested_at"] is None
    assert match["parse_attempts"] == 0


def test_cancel_after_fetch_writes_nothing(db, match_id):
    client = FakeOpenDota(pending_polls=0)
    _run_with_stop_at(db, match_id, client, ParseState.FETCHING_DATA)

    assert db.get_match(match_id)["opendota_fetched"] is False
    assert all(mp["hero_id"] is None for mp in db.get_match_players(match_id))


def test_cancel_before_start(db, match_id):
    async def scenario():
        stop_event = asyncio.Event()
        stop_event.set()
        await _orchestrator(db, client).run(match_id, stop_event=stop_event)

    client = FakeOpenDota()
    with pytest.raises(ParseCancelled):
        asyncio.run(scenario())
    assert client.calls == []


def test_provider_error_propagates(db, match_id):
    states = []
    client = FakeOpenDota(request_error=OpenDotaError("down", status=503))

    with pytest.raises(OpenDotaError):
        asyncio.run(_orchestrator(db, client, on_state_change=states.append).run(match_id))

    assert states[-1] == ParseState.IDLE


def test_unknown_match(db):
    with pytest.raises(ValueError):
        asyncio.run(_orchestrator(db, FakeOpenDota()).run(999))


def test_match_without_lobby_id(db):
    created = PlayerIdentityMerger(db).create_match(parse_status(status_text(None, ["A"])), "")

    with pytest.raises(ValueError):
        asyncio.run(_orchestrator(db, FakeOpenDota()).run(created.match_id))
