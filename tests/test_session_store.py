"""Tests for session persistence, pruning, and transcript reload."""

import itertools

from linkwizard.session_store import SessionStore


def _clock():
    counter = itertools.count(1)
    return lambda: float(next(counter))


class TestSessionStore:
    def test_add_and_reload_from_disk(self, tmp_path, engine):
        path = tmp_path / "sessions.json"
        store = SessionStore(path, clock=_clock())
        session = engine.new_session()
        engine.start(session)
        store.add(session)

        reloaded = SessionStore(path)
        assert [summary.session_id for summary in reloaded.list_sessions()] == [session.session_id]
        transcript = reloaded.get_transcript(session.session_id)
        assert transcript[0].step == "campaign-type"
        # Live sessions are not restored; only their history is.
        assert reloaded.get(session.session_id) is None

    def test_summary_tracks_step_and_title(self, engine):
        store = SessionStore(clock=_clock())
        session = engine.new_session()
        engine.start(session)
        store.add(session)
        engine.handle(session, action="start-new")
        engine.handle(session, text="Spring Launch 2")
        store.save(session)

        summary = store.get_summary(session.session_id)
        assert summary.title == "Spring Launch 2"
        assert summary.step == "landing-pages"
        assert summary.last_prompt.startswith("Great! Now let's add landing pages.")

    def test_prunes_least_recent(self, engine):
        store = SessionStore(max_sessions=2, clock=_clock())
        sessions = [engine.new_session() for _ in range(3)]
        for session in sessions:
            store.add(session)

        kept = [summary.session_id for summary in store.list_sessions()]
        assert kept == [sessions[2].session_id, sessions[1].session_id]
        assert store.get(sessions[0].session_id) is None

    def test_corrupt_file_is_ignored(self, tmp_path):
        path = tmp_path / "sessions.json"
        path.write_text("{not json", encoding="utf-8")
        assert SessionStore(path).list_sessions() == []

    def test_last_prompt_survives_reload(self, tmp_path, engine):
        path = tmp_path / "sessions.json"
        store = SessionStore(path, clock=_clock())
        session = engine.new_session()
        engine.start(session)
        store.add(session)
        engine.handle(session, action="start-new")
        store.save(session)

        expected = session.transcript.messages[-1].text
        assert SessionStore(path).get_summary(session.session_id).last_prompt == expected
