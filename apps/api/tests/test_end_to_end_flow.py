import pytest

from services.session_token import create_session_token


CREATOR_ID = "creator-1"
CREATOR_HEADER = {"Authorization": f"Bearer {create_session_token(CREATOR_ID, role='editor')['token']}"}
MODERATOR_HEADER = {"Authorization": f"Bearer {create_session_token('mod-1', role='moderator')['token']}"}
CLIP = bytes(range(256)) * 16


async def _upload(api_client, title: str) -> str:
    response = await api_client.post(
        "/videos",
        headers=CREATOR_HEADER,
        files={"file": ("clip.mp4", CLIP, "video/mp4")},
        data={"title": title},
    )
    assert response.status_code == 202
    return response.json()["record_id"]


@pytest.mark.asyncio
async def test_upload_process_and_stream_flow(api_client, runtime, captured_events):
    events = captured_events(CREATOR_ID)

    record_id = await _upload(api_client, "Studio session")

    await runtime.job_queue.join()

    assert [(event.state, event.progress) for event in events] == [
        ("processing", 10),
        ("processing", 30),
        ("processing", 80),
        ("completed", 100),
    ]

    status = await api_client.get(f"/videos/{record_id}/status", headers=CREATOR_HEADER)
    assert status.json()["state"] == "completed"
    assert status.json()["duration_seconds"] == 12.0
    assert status.json()["resolution"] == "1280x720"
    assert status.json()["thumbnail_handle"].startswith("thumbnails/")

    issued = await api_client.post(f"/videos/{record_id}/stream-token", headers=CREATOR_HEADER)
    assert issued.status_code == 200
    stream_url = issued.json()["stream_url"]

    head = await api_client.get(stream_url, headers={"Range": "bytes=0-1023"})
    tail = await api_client.get(stream_url, headers={"Range": "bytes=-16"})
    full = await api_client.get(stream_url)

    assert head.status_code == 206
    assert head.content == CLIP[:1024]
    assert tail.status_code == 206
    assert tail.content == CLIP[-16:]
    assert full.status_code == 200
    assert full.content == CLIP


@pytest.mark.asyncio
async def test_flagged_upload_needs_moderator_review(api_client, runtime):
    record_id = await _upload(api_client, "Explicit prank compilation")
    await runtime.job_queue.join()

    status = await api_client.get(f"/videos/{record_id}/status", headers=CREATOR_HEADER)
    assert status.json()["verdict"] == "flagged"

    blocked = await api_client.post(f"/videos/{record_id}/stream-token", headers=CREATOR_HEADER)
    assert blocked.status_code == 403

    review = await api_client.patch(
        f"/videos/admin/{record_id}/sensitivity",
        headers=MODERATOR_HEADER,
        json={"status": "safe"},
    )
    assert review.json()["previous_verdict"] == "flagged"

    issued = await api_client.post(f"/videos/{record_id}/stream-token", headers=CREATOR_HEADER)
    assert issued.status_code == 200
    streamed = await api_client.get(issued.json()["stream_url"])
    assert streamed.content == CLIP


@pytest.mark.asyncio
async def test_probe_failure_surfaces_in_status(api_client, runtime, fake_prober, captured_events):
    from services.errors import ProbeError

    fake_prober.probe_error = ProbeError("Invalid data found when processing input")
    events = captured_events(CREATOR_ID)

    record_id = await _upload(api_client, "Broken file")
    await runtime.job_queue.join()

    status = await api_client.get(f"/videos/{record_id}/status", headers=CREATOR_HEADER)
    assert status.json()["state"] == "failed"
    assert "Invalid data" in status.json()["error_message"]
    assert events[-1].state == "failed"

    issued = await api_client.post(f"/videos/{record_id}/stream-token", headers=CREATOR_HEADER)
    assert issued.status_code == 400
