import asyncio

import pytest

from server.errors import NotAuthorized, NotFound, UpstreamRejected
from server.models import PlaybackControlRequest, QueueAddRequest, SkipRequest, TrackDescriptor
from server.orchestrator import Orchestrator
from shared.models import EventType, PlaybackAction
from shared.platform import UpstreamRateLimited
from tests.test_helpers import FakePlatform, FakeWebSocket, ParkedSleep, SleepRecorder, make_settings, settle


def make_orchestrator(platform=None):
    platform = platform or FakePlatform()
    sleeper = SleepRecorder()
    orch = Orchestrator(make_settings(), platform=platform, sleep=sleeper)
    dj = orch.login("dj1", "letmein")
    return orch, platform, sleeper, dj.token


def add_request(token, uri, **kw):
    return QueueAddRequest(dj_token=token, access_token="at", device_id="dev", uri=uri, **kw)


@pytest.mark.asyncio
async def test_add_track_delivers_and_keeps_entry():
    orch, platform, _, t1 = make_orchestrator()
    resp = await orch.add_track(add_request(t1, "spotify:track:A"))

    assert resp.success and not resp.pending
    assert [(e.uri, e.added_by) for e in resp.queue] == [("spotify:track:A", "dj1")]
    assert platform.calls == [("queue", "spotify:track:A", "at", "dev")]
    await settle(orch.submissions)
    assert orch.submissions.pending() == []


@pytest.mark.asyncio
async def test_rate_limited_submission_keeps_optimistic_entry_throughout():
    platform = FakePlatform([UpstreamRateLimited(), UpstreamRateLimited(), UpstreamRateLimited(), None])
    orch, _, sleeper, t1 = make_orchestrator(platform)
    observed = []
    platform.on_queue = lambda uri: observed.append((len(orch.submissions.pending()), [e.uri for e in orch.queue.snapshot()]))

    resp = await orch.add_track(add_request(t1, "spotify:track:A"))
    assert resp.success and resp.pending
    await settle(orch.submissions)

    assert [count for count, _ in observed] == [1, 1, 1, 1]
    assert all(queue == ["spotify:track:A"] for _, queue in observed)
    assert len(orch.submissions.pending()) == 0
    assert [e.uri for e in orch.queue.snapshot()] == ["spotify:track:A"]
    assert sleeper.delays == [1.0, 1.5, 2.25]


@pytest.mark.asyncio
async def test_fifo_across_rate_limits():
    platform = FakePlatform([UpstreamRateLimited(), None, None])
    orch, _, _, t1 = make_orchestrator(platform)

    first = await orch.add_track(add_request(t1, "u:1"))
    assert first.pending
    await orch.add_track(add_request(t1, "u:2"))
    await orch.add_track(add_request(t1, "u:3"))
    await settle(orch.submissions)

    assert [c[1] for c in platform.calls] == ["u:1", "u:1", "u:2", "u:3"]
    assert [e.uri for e in orch.queue.snapshot()] == ["u:1", "u:2", "u:3"]


@pytest.mark.asyncio
async def test_add_behind_backing_off_head_answers_at_once():
    platform = FakePlatform([UpstreamRateLimited()] * 50)
    sleeper = ParkedSleep()
    orch = Orchestrator(make_settings(RETRY_BASE_DELAY=5), platform=platform, sleep=sleeper)
    t1 = orch.login("dj1", "letmein").token

    first = await orch.add_track(add_request(t1, "u:1"))
    assert first.pending
    # the head is parked in its backoff; the second add must not wait for it
    second = await asyncio.wait_for(orch.add_track(add_request(t1, "u:2")), 1.0)

    assert second.success and second.pending
    assert [e.uri for e in second.queue] == ["u:1", "u:2"]
    assert [s.entry.uri for s in orch.submissions.pending()] == ["u:1", "u:2"]
    # nothing overtook the head
    assert [c[1] for c in platform.calls] == ["u:1"]
    assert sleeper.delays == [5.0]
    await orch.stop_background_tasks()


@pytest.mark.asyncio
async def test_failure_of_queued_behind_submission_reaches_submitter():
    platform = FakePlatform([UpstreamRateLimited(), None, UpstreamRejected("gone")])
    orch, _, _, t1 = make_orchestrator(platform)
    dj_ws, other_ws = FakeWebSocket(), FakeWebSocket()
    dj_conn = await orch.connect(dj_ws, "dj1")
    await orch.connect(other_ws, "bob")

    await orch.add_track(add_request(t1, "u:1"))
    # answered before its own first attempt, so the failure can only go to the socket
    resp = await orch.add_track(add_request(t1, "u:2", connection_id=dj_conn.connection_id))
    assert resp.pending
    await settle(orch.submissions)
    await orch.ws.drain()

    assert [e.uri for e in orch.queue.snapshot()] == ["u:1"]
    failed = dj_ws.events("submission:failed")
    assert len(failed) == 1
    assert failed[0]["data"]["submission"]["entry"]["uri"] == "u:2"
    assert other_ws.events("submission:failed") == []


@pytest.mark.asyncio
async def test_immediate_failure_is_not_also_sent_to_socket():
    orch, _, _, t1 = make_orchestrator(FakePlatform([UpstreamRejected("gone")]))
    ws = FakeWebSocket()
    conn = await orch.connect(ws, "dj1")
    with pytest.raises(UpstreamRejected):
        await orch.add_track(add_request(t1, "u:1", connection_id=conn.connection_id))
    await orch.ws.drain()
    assert ws.events("submission:failed") == []


@pytest.mark.asyncio
async def test_playlist_link_queues_every_track_in_order():
    platform = FakePlatform()
    platform.playlists = {"PL1": ["spotify:track:a", "spotify:track:b", "spotify:track:c"]}
    orch, _, _, t1 = make_orchestrator(platform)
    ws = FakeWebSocket()
    await orch.connect(ws, "bob")

    resp = await orch.add_track(add_request(t1, "https://open.spotify.com/playlist/PL1?si=abc"))
    assert resp.success and resp.pending
    await settle(orch.submissions)
    await orch.ws.drain()

    uris = ["spotify:track:a", "spotify:track:b", "spotify:track:c"]
    assert platform.calls[0] == ("playlist", "PL1")
    assert [c[1] for c in platform.calls[1:]] == uris
    assert [e.uri for e in orch.queue.snapshot()] == uris
    assert all(e.added_by == "dj1" for e in orch.queue.snapshot())
    # the three entries arrive in one snapshot
    assert [len(f["data"]) for f in ws.events("queue:updated")] == [0, 3]


@pytest.mark.asyncio
async def test_playlist_limit_and_empty_playlist():
    platform = FakePlatform()
    platform.playlists = {"big": [f"u:{i}" for i in range(10)]}
    orch = Orchestrator(make_settings(PLAYLIST_TRACK_LIMIT=4), platform=platform, sleep=SleepRecorder())
    t1 = orch.login("dj1", "letmein").token

    await orch.add_track(add_request(t1, "spotify:playlist:big"))
    await settle(orch.submissions)
    assert [e.uri for e in orch.queue.snapshot()] == ["u:0", "u:1", "u:2", "u:3"]

    with pytest.raises(NotFound):
        await orch.add_track(add_request(t1, "spotify:playlist:nothing"))
    assert len(orch.queue) == 4


@pytest.mark.asyncio
async def test_playlist_requires_authority_before_fetching():
    platform = FakePlatform()
    platform.playlists = {"PL1": ["u:1"]}
    orch, _, _, _ = make_orchestrator(platform)
    with pytest.raises(NotAuthorized):
        await orch.add_track(add_request("bad", "spotify:playlist:PL1"))
    assert platform.calls == []


@pytest.mark.asyncio
async def test_rejected_submission_rolls_back():
    orch, platform, _, t1 = make_orchestrator(FakePlatform([UpstreamRejected("gone", status_code=404)]))
    with pytest.raises(UpstreamRejected):
        await orch.add_track(add_request(t1, "u:1"))
    assert orch.queue.snapshot() == ()
    assert orch.submissions.pending() == []


@pytest.mark.asyncio
async def test_late_failure_is_reported_to_submitter_only():
    platform = FakePlatform([UpstreamRateLimited(), UpstreamRejected("gone")])
    orch, _, _, t1 = make_orchestrator(platform)
    dj_ws, other_ws = FakeWebSocket(), FakeWebSocket()
    dj_conn = await orch.connect(dj_ws, "dj1")
    await orch.connect(other_ws, "bob")

    resp = await orch.add_track(add_request(t1, "u:1", connection_id=dj_conn.connection_id))
    assert resp.pending
    await settle(orch.submissions)
    await orch.ws.drain()

    assert orch.queue.snapshot() == ()
    assert len(dj_ws.events("submission:failed")) == 1
    assert other_ws.events("submission:failed") == []
    # the rollback itself is broadcast to everyone
    assert other_ws.events("queue:updated")[-1]["data"] == []


@pytest.mark.asyncio
async def test_pending_updates_are_broadcast():
    platform = FakePlatform([UpstreamRateLimited(), None])
    orch, _, _, t1 = make_orchestrator(platform)
    ws = FakeWebSocket()
    await orch.connect(ws, "bob")

    await orch.add_track(add_request(t1, "u:1"))
    await settle(orch.submissions)
    await orch.ws.drain()

    counts = [len(f["data"]) for f in ws.events("pending:updated")]
    # initial sync, queued, rate limited, delivered
    assert counts == [0, 1, 1, 0]


@pytest.mark.asyncio
async def test_unauthorized_sessions_cannot_mutate_anything():
    orch, platform, _, t1 = make_orchestrator()
    await orch.add_track(add_request(t1, "u:1"))
    await settle(orch.submissions)
    ws = FakeWebSocket()
    conn = await orch.connect(ws, "guest")
    orch.sessions.bind_connection(conn.connection_id, access_token="guest-at")
    calls_before = list(platform.calls)
    state_before = orch.playback.state

    for token in ["bad", conn.connection_id, ""]:
        with pytest.raises(NotAuthorized):
            await orch.add_track(QueueAddRequest(dj_token=token or "x", access_token="at", uri="u:2"))
        with pytest.raises(NotAuthorized):
            orch.remove_track(token, 0)
        with pytest.raises(NotAuthorized):
            orch.playback.publish(token, True, TrackDescriptor(uri="u:9"), 10)
        with pytest.raises(NotAuthorized):
            await orch.control_playback(PlaybackControlRequest(dj_token=token or "x", access_token="at", device_id="d", action=PlaybackAction.PAUSE))
        with pytest.raises(NotAuthorized):
            await orch.skip(SkipRequest(dj_token=token or "x", access_token="at"))

    assert [e.uri for e in orch.queue.snapshot()] == ["u:1"]
    assert orch.playback.state == state_before
    assert platform.calls == calls_before
    assert orch.submissions.pending() == []


@pytest.mark.asyncio
async def test_publish_then_connect_round_trip():
    orch, _, _, t1 = make_orchestrator()
    track = TrackDescriptor(uri="spotify:track:A", name="Song", durationMs=200_000)
    orch.playback.publish(t1, True, track, 42_000)

    ws = FakeWebSocket()
    await orch.connect(ws, "late")
    await orch.ws.drain()

    snap = orch.playback.on_connect("nobody")
    assert snap.is_playing is True
    assert snap.current_track.uri == "spotify:track:A"
    assert snap.position_ms == 42_000
    data = ws.events("playback:state")[-1]["data"]
    assert data["isPlaying"] is True
    assert data["positionMs"] == 42_000
    assert data["currentTrack"]["uri"] == "spotify:track:A"


@pytest.mark.asyncio
async def test_publish_replaces_whole_snapshot_and_skips_publisher():
    orch, _, _, t1 = make_orchestrator()
    dj_ws, listener_ws = FakeWebSocket(), FakeWebSocket()
    dj_conn = await orch.connect(dj_ws, "dj1")
    await orch.connect(listener_ws, "bob")
    await orch.ws.drain()
    dj_before = len(dj_ws.events("playback:state"))

    await orch.handle_message(dj_conn, {"type": "playback:update", "djToken": t1, "isPlaying": True, "currentTrack": {"uri": "u:1"}, "position": 5000})
    await orch.handle_message(dj_conn, {"type": "playback:update", "djToken": t1, "isPlaying": False, "position": 0})
    await orch.ws.drain()

    states = [f["data"] for f in listener_ws.events("playback:state")]
    assert states[-2]["currentTrack"]["uri"] == "u:1"
    # second publish carries no track, and the old one is not kept
    assert states[-1]["currentTrack"] is None
    assert states[-1]["isPlaying"] is False
    assert len(dj_ws.events("playback:state")) == dj_before


@pytest.mark.asyncio
async def test_playback_update_from_listener_is_rejected():
    orch, _, _, _ = make_orchestrator()
    ws = FakeWebSocket()
    conn = await orch.connect(ws, "bob")
    await orch.handle_message(conn, {"type": "playback:update", "djToken": "bad", "isPlaying": True, "position": 1})
    await orch.ws.drain()

    errors = ws.events("error")
    assert errors and errors[-1]["data"]["type"] == "playback:update"
    assert orch.playback.state.is_playing is False


@pytest.mark.asyncio
async def test_invalid_message_answers_error():
    orch, _, _, _ = make_orchestrator()
    ws = FakeWebSocket()
    conn = await orch.connect(ws, "bob")
    await orch.handle_message(conn, {"type": "explode"})
    await orch.handle_message(conn, "not a dict")
    await orch.ws.drain()
    assert len(ws.events("error")) == 2


@pytest.mark.asyncio
async def test_skip_and_playback_control_broadcast():
    orch, platform, _, t1 = make_orchestrator()
    ws = FakeWebSocket()
    await orch.connect(ws, "bob")

    await orch.skip(SkipRequest(dj_token=t1, access_token="at", device_id="dev"))
    action = await orch.control_playback(PlaybackControlRequest(dj_token=t1, access_token="at", device_id="dev", action=PlaybackAction.PAUSE))
    await orch.ws.drain()

    assert action == PlaybackAction.PAUSE
    assert ("next", "dev") in platform.calls
    assert ("pause", "dev") in platform.calls
    assert len(ws.events("playback:skip")) == 1
    assert ws.events("playback:stateChange")[-1]["data"] == {"action": "pause"}


@pytest.mark.asyncio
async def test_failed_skip_does_not_broadcast():
    platform = FakePlatform()
    platform.fail_next = UpstreamRejected("no device")
    orch, _, _, t1 = make_orchestrator(platform)
    ws = FakeWebSocket()
    await orch.connect(ws, "bob")
    with pytest.raises(UpstreamRejected):
        await orch.skip(SkipRequest(dj_token=t1, access_token="at"))
    await orch.ws.drain()
    assert ws.events("playback:skip") == []


@pytest.mark.asyncio
async def test_cancel_submission_removes_entry():
    platform = FakePlatform([UpstreamRateLimited(), UpstreamRateLimited()])
    orch, _, _, t1 = make_orchestrator(platform)

    # keep the head parked in backoff so the second submission stays cancellable
    await orch.add_track(add_request(t1, "u:1"))
    second = orch.queue.append(t1, "u:2")[-1]
    sub = orch.submissions.submit(second, access_token="at")

    with pytest.raises(NotAuthorized):
        orch.cancel_submission("bad", sub.submission_id)
    pending = orch.cancel_submission(t1, sub.submission_id)
    assert sub.submission_id not in [p.submission_id for p in pending]
    assert [e.uri for e in orch.queue.snapshot()] == ["u:1"]
    with pytest.raises(NotFound):
        orch.cancel_submission(t1, sub.submission_id)
    await orch.stop_background_tasks()


@pytest.mark.asyncio
async def test_connect_and_disconnect_update_user_list():
    orch, _, _, _ = make_orchestrator()
    a_ws, b_ws = FakeWebSocket(), FakeWebSocket()
    a = await orch.connect(a_ws, "alice")
    await orch.connect(b_ws, "bob")
    await orch.ws.drain()

    # a newcomer is brought up to date in one go
    first_events = [f["event"] for f in b_ws.sent[:3]]
    assert first_events == ["queue:updated", "pending:updated", "playback:state"]
    assert b_ws.events("users:update")[-1]["data"] == ["alice", "bob"]

    await orch.disconnect(a.connection_id)
    await orch.disconnect(a.connection_id)
    await orch.ws.drain()
    assert orch.sessions.connection_count() == 1
    users_updates = b_ws.events("users:update")
    assert users_updates[-1]["data"] == ["bob"]
    # the second disconnect did not broadcast again
    assert [u["data"] for u in users_updates].count(["bob"]) == 1


@pytest.mark.asyncio
async def test_join_chat_and_resync_requests():
    orch, _, _, t1 = make_orchestrator()
    ws = FakeWebSocket()
    conn = await orch.connect(ws, None)
    orch.queue.append(t1, "u:1")

    await orch.handle_message(conn, {"type": "join", "username": "carol"})
    await orch.handle_message(conn, {"type": "chat:send", "message": "hi"})
    await orch.handle_message(conn, {"type": "queue:request"})
    await orch.handle_message(conn, {"type": "pending:sync"})
    await orch.ws.drain()

    assert ws.events("users:update")[-1]["data"] == ["carol"]
    assert ws.events("chat:message")[-1]["data"] == {"from": "carol", "message": "hi"}
    assert [e["uri"] for e in ws.events("queue:updated")[-1]["data"]] == ["u:1"]
    assert ws.events("pending:updated")[-1]["data"] == []


@pytest.mark.asyncio
async def test_register_binds_dj_credentials_for_poller():
    orch, platform, _, t1 = make_orchestrator()
    ws = FakeWebSocket()
    conn = await orch.connect(ws, "dj1")
    await orch.handle_message(conn, {"type": "register", "djToken": t1, "accessToken": "dj-at", "deviceId": "dev"})

    orch.queue.append(t1, "u:1")
    orch.queue.append(t1, "u:2")
    platform.now_playing = "u:1"
    assert await orch.poller.poll_once() == "u:1"
    assert ("current", "dj-at") in platform.calls
    assert [e.uri for e in orch.queue.snapshot()] == ["u:2"]
