import asyncio
import base64

import pytest

from scankiosk.state import OutcomeKind, SessionPhase

from tests.helpers import ManagerHarness, make_settings, settle, video_feed


def _phases(queue):
    phases = []
    while not queue.empty():
        event = queue.get_nowait()
        if event.type == "state":
            phases.append(event.phase)
    return phases


@pytest.mark.asyncio
async def test_start_connects_and_issues_first_credit(harness):
    manager = harness.manager
    queue = manager.register_ui()

    await manager.start()

    assert manager.phase is SessionPhase.STREAMING
    assert manager.session_id == "session-1"
    assert harness.channel.session_id == "session-1"
    assert harness.channel.credits == 1
    assert _phases(queue) == [SessionPhase.CONNECTING, SessionPhase.STREAMING]
    assert manager.snapshot().connection_status == "Connected"


@pytest.mark.asyncio
async def test_one_credit_per_frame_while_scanning(harness):
    manager = harness.manager
    await manager.start()
    channel = harness.channel

    for scan_pass, progress in [(1, 10), (1, 60), (2, 5), (2, 90)]:
        await channel.deliver(video_feed(scan_pass=scan_pass, progress=progress))
        await settle()

    assert manager.phase is SessionPhase.STREAMING
    # one on open plus one per frame
    assert channel.credits == 5
    assert manager.credits_sent == 5


@pytest.mark.asyncio
async def test_third_pass_moves_to_analysis_pending_without_credit(harness):
    manager = harness.manager
    queue = manager.register_ui()
    await manager.start()
    channel = harness.channel

    await channel.deliver(video_feed(scan_pass=1, progress=100))
    await settle()
    await channel.deliver(video_feed(scan_pass=2, progress=100))
    await settle()
    credits_before = channel.credits
    await channel.deliver(video_feed(scan_pass=3, progress=0))
    await settle()

    assert manager.phase is SessionPhase.ANALYSIS_PENDING
    assert channel.credits == credits_before
    assert not channel.disconnected

    # late frames before teardown do not re-trigger the transition
    await channel.deliver(video_feed(scan_pass=3, progress=0))
    await channel.deliver(video_feed(scan_pass=4, progress=0))
    await settle()

    assert channel.credits == credits_before
    assert _phases(queue).count(SessionPhase.ANALYSIS_PENDING) == 1
    view = manager.snapshot()
    assert view.status_text == "Analyzing face..."
    assert view.show_progress_bar and view.progress_bar_percent == 100.0
    assert not view.show_pass_indicator


@pytest.mark.asyncio
async def test_recognition_result_completes_and_cancels_pending_credit(tmp_path):
    harness = ManagerHarness(make_settings(tmp_path, pacing_ms=50))
    manager = harness.manager
    await manager.start()
    channel = harness.channel

    await channel.deliver(video_feed(scan_pass=1, progress=30))
    # pacing timer is armed; the terminal frame arrives before it fires
    await channel.deliver(video_feed(scan_pass=1, progress=35, recognition_result={"class": "carol", "confidence": 0.88}))
    await asyncio.sleep(0.1)

    assert manager.phase is SessionPhase.COMPLETE
    assert channel.credits == 1
    assert channel.disconnected
    outcome = manager.outcome
    assert outcome.kind is OutcomeKind.RECOGNIZED
    assert outcome.result.class_name == "carol"
    assert manager.snapshot().status_text == "Scan Complete!"


@pytest.mark.asyncio
async def test_recognition_error_still_completes_with_failed_outcome(harness):
    manager = harness.manager
    await manager.start()

    await harness.channel.deliver(video_feed(scan_pass=2, recognition_result={"error": "Face not in roster"}))

    assert manager.phase is SessionPhase.COMPLETE
    assert manager.outcome.kind is OutcomeKind.FAILED
    assert manager.outcome.reason == "Face not in roster"


@pytest.mark.asyncio
@pytest.mark.parametrize("reach_pending", [False, True])
async def test_analysis_error_fails_with_service_message(harness, reach_pending):
    manager = harness.manager
    await manager.start()
    channel = harness.channel
    if reach_pending:
        await channel.deliver(video_feed(scan_pass=3))
        assert manager.phase is SessionPhase.ANALYSIS_PENDING

    await channel.deliver({"type": "analysis_error", "message": "Recognition backend timed out (code 7)"})

    assert manager.phase is SessionPhase.FAILED
    assert manager.outcome.reason == "Recognition backend timed out (code 7)"
    assert channel.disconnected
    assert manager.snapshot().connection_status == "Analysis Failed"


@pytest.mark.asyncio
async def test_analysis_complete_yields_detections(harness):
    manager = harness.manager
    await manager.start()
    channel = harness.channel
    await channel.deliver(video_feed(scan_pass=3))

    await channel.deliver(
        {
            "type": "analysis_complete",
            "data": "YW5hbHl6ZWQ=",
            "predictions": {
                "predictions": [
                    {"x": 1, "y": 2, "width": 3, "height": 4, "confidence": 0.9, "class": "dave", "class_id": 3}
                ]
            },
        }
    )

    assert manager.phase is SessionPhase.COMPLETE
    assert manager.outcome.kind is OutcomeKind.DETECTIONS
    assert manager.outcome.predictions[0].class_label == "dave"
    assert manager.snapshot().image == "YW5hbHl6ZWQ="


@pytest.mark.asyncio
async def test_second_completion_is_rejected(harness):
    manager = harness.manager
    await manager.start()
    channel = harness.channel

    await channel.deliver(video_feed(recognition_result={"class": "erin"}))
    await channel.deliver({"type": "analysis_complete", "data": "eA==", "predictions": []})

    assert manager.phase is SessionPhase.COMPLETE
    assert manager.outcome.kind is OutcomeKind.RECOGNIZED


@pytest.mark.asyncio
async def test_unexpected_close_fails_without_retry(harness):
    manager = harness.manager
    await manager.start()

    await harness.channel.drop("closed by server")
    await settle()

    assert manager.phase is SessionPhase.FAILED
    assert manager.outcome.reason.startswith("Connection lost")
    assert manager.snapshot().connection_status == "Disconnected"
    assert len(harness.channels) == 1


@pytest.mark.asyncio
async def test_channel_error_reports_connection_error(harness):
    manager = harness.manager
    await manager.start()
    await harness.channel.deliver(video_feed(scan_pass=3))

    await harness.channel.drop("connection error: 1006")

    assert manager.phase is SessionPhase.FAILED
    assert manager.snapshot().connection_status == "Connection Error"


@pytest.mark.asyncio
async def test_failed_open_is_terminal(harness):
    harness.fail_next_connect = OSError("connection refused")
    manager = harness.manager

    await manager.start()

    assert manager.phase is SessionPhase.FAILED
    assert manager.outcome.reason == "Connection lost: connection refused"
    assert harness.channel.disconnected


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        "{not json",
        b"\x80\x81",
        '{"type": "video_feed", "scan_pass": "many"}',
        '["video_feed"]',
    ],
)
async def test_malformed_payload_leaves_state_untouched(harness, payload):
    manager = harness.manager
    await manager.start()
    await harness.channel.deliver(video_feed(scan_pass=1, progress=20, lighting_ok=False))
    await settle()
    before = manager.snapshot()

    await harness.channel.deliver(payload)
    await settle()

    after = manager.snapshot()
    assert after.phase is SessionPhase.STREAMING
    assert after.status_text == before.status_text == "Please improve lighting"
    assert harness.channel.credits == 2


@pytest.mark.asyncio
async def test_unknown_message_type_is_ignored(harness):
    manager = harness.manager
    await manager.start()

    await harness.channel.deliver({"type": "server_stats", "fps": 30})

    assert manager.phase is SessionPhase.STREAMING
    assert harness.channel.credits == 1


@pytest.mark.asyncio
async def test_reset_then_start_uses_fresh_channel_and_id(harness):
    manager = harness.manager
    await manager.start()
    first = harness.channel
    await first.deliver({"type": "analysis_error", "message": "boom"})
    assert manager.phase is SessionPhase.FAILED

    await manager.reset()

    assert manager.phase is SessionPhase.IDLE
    assert manager.outcome is None
    assert manager.session_id is None
    view = manager.snapshot()
    assert view.scan_pass == 1 and view.scan_percent == 0.0
    assert view.conditions_met is False

    await manager.start()

    assert manager.phase is SessionPhase.STREAMING
    assert harness.channel is not first
    assert manager.session_id == "session-2"
    assert harness.channel.credits == 1


@pytest.mark.asyncio
async def test_start_while_streaming_tears_down_previous_session(harness):
    manager = harness.manager
    await manager.start()
    first = harness.channel

    await manager.start()

    assert first.disconnected
    assert harness.channel is not first
    assert manager.phase is SessionPhase.STREAMING

    # messages on the old channel no longer reach the controller
    await first.deliver({"type": "analysis_error", "message": "stale"})
    assert manager.phase is SessionPhase.STREAMING


@pytest.mark.asyncio
async def test_stop_releases_channel_and_timer(tmp_path):
    harness = ManagerHarness(make_settings(tmp_path, pacing_ms=50))
    manager = harness.manager
    await manager.start()
    channel = harness.channel
    await channel.deliver(video_feed())

    await manager.stop()
    await asyncio.sleep(0.1)

    assert channel.disconnected
    assert channel.credits == 1
    assert manager.phase is SessionPhase.IDLE


@pytest.mark.asyncio
async def test_snapshot_tracks_conditions_and_progress(harness):
    manager = harness.manager
    await manager.start()
    channel = harness.channel

    await channel.deliver(video_feed(scan_pass=1, progress=0, face_straight=False))
    view = manager.snapshot()
    assert view.status_text == "Please face straight ahead"
    assert not view.show_progress_bar
    assert not view.show_pass_indicator

    await channel.deliver(video_feed(scan_pass=2, progress=24.5))
    view = manager.snapshot()
    assert view.status_text == "Scanning in progress: 25%"
    assert view.scan_pass == 2
    assert view.overall_percent == 62.25
    assert view.show_progress_bar and view.show_pass_indicator
    assert view.to_dict()["conditions"] == {"face_straight": True, "distance_ok": True, "lighting_ok": True}


@pytest.mark.asyncio
async def test_preview_frames_are_decoded(harness):
    manager = harness.manager
    await manager.start()
    frames = manager.preview_frames()
    reader = asyncio.ensure_future(frames.__anext__())
    await asyncio.sleep(0)

    jpeg = b"\xff\xd8fake-jpeg\xff\xd9"
    await harness.channel.deliver(video_feed(data=base64.b64encode(jpeg).decode("ascii")))

    assert await asyncio.wait_for(reader, timeout=1.0) == jpeg
    await frames.aclose()


@pytest.mark.asyncio
async def test_progress_holds_while_conditions_fail(harness):
    manager = harness.manager
    await manager.start()
    channel = harness.channel

    await channel.deliver(video_feed(scan_pass=1, progress=10))
    await channel.deliver(video_feed(scan_pass=1, progress=80, face_straight=False))

    view = manager.snapshot()
    assert view.conditions_met is False
    assert view.scan_percent == 10.0
    assert view.overall_percent == 5.0
    assert view.status_text == "Please face straight ahead"

    await channel.deliver(video_feed(scan_pass=1, progress=85))
    assert manager.snapshot().scan_percent == 85.0


@pytest.mark.asyncio
async def test_progress_view_never_moves_backwards(harness):
    manager = harness.manager
    await manager.start()
    channel = harness.channel

    await channel.deliver(video_feed(scan_pass=1, progress=70))
    await channel.deliver(video_feed(scan_pass=1, progress=20))

    view = manager.snapshot()
    assert view.scan_percent == 70.0
    assert view.overall_percent == 35.0
