"""API tests for the generation, fan-out, video and edit endpoints."""

import asyncio
import json
import time

import httpx
import jwt
import pytest

from genbatch.models.batch import ItemStatus
from genbatch.models.events import BatchCompleteEvent, ItemUpdateEvent, parse_frame
from genbatch.services.qstash import QStashPublisher
from genbatch.services.qstash_signature import body_hash


def parse_stream(text: str) -> list:
    return [parse_frame(line) for line in text.splitlines() if line.strip()]


def signed_headers(settings, body: bytes, path: str, retried: int = 0) -> dict[str, str]:
    now = int(time.time())
    token = jwt.encode(
        {
            "iss": "Upstash",
            "sub": f"{settings.public_base_url}{path}",
            "exp": now + 300,
            "nbf": now - 1,
            "iat": now,
            "jti": f"jwt_{now}",
            "body": body_hash(body),
        },
        settings.qstash_current_signing_key,
        algorithm="HS256",
    )
    return {
        "Upstash-Signature": token,
        "Upstash-Retried": str(retried),
        "Content-Type": "application/json",
    }


@pytest.mark.asyncio
class TestGenerateStream:
    async def test_logs_list_entries_with_cost(self, test_client):
        # Arrange
        await test_client.post(
            "/api/generate",
            json={"batch_id": "20260303-090000", "prompts": ["a red boat", "please fail"]},
        )
        await test_client.post(
            "/api/generate", json={"batch_id": "20260303-100000", "prompts": ["a kite"]}
        )

        # Act
        day = (await test_client.get("/api/logs", params={"date": "2026-03-03"})).json()
        one_batch = (
            await test_client.get(
                "/api/logs", params={"date": "2026-03-03", "batch_id": "20260303-090000"}
            )
        ).json()

        # Assert
        assert day["count"] == 3
        assert one_batch["count"] == 2
        by_status = {entry["status"]: entry for entry in one_batch["entries"]}
        assert by_status["completed"]["cost"] > 0
        assert by_status["failed"]["cost"] == 0
        assert one_batch["total_cost"] == pytest.approx(by_status["completed"]["cost"])

    async def test_logs_default_to_today(self, test_client):
        await test_client.post(
            "/api/generate", json={"batch_id": "ad-hoc-run", "prompts": ["a kite"]}
        )

        response = await test_client.get("/api/logs")

        assert response.status_code == 200
        assert [entry["batch_id"] for entry in response.json()["entries"]] == ["ad-hoc-run"]

    async def test_stream_then_reconcile(self, test_client):
        # Arrange
        body = {
            "batch_id": "20260301-083000",
            "prompts": ["a red boat", "please fail", "a blue boat"],
            "config": {"concurrency": 2},
        }

        # Act
        response = await test_client.post("/api/generate", json=body)

        # Assert: stream
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/x-ndjson")
        events = parse_stream(response.text)
        assert isinstance(events[-1], BatchCompleteEvent)
        assert events[-1].completed == 2
        assert events[-1].failed == 1
        terminal = {
            event.index: event.status.value
            for event in events
            if isinstance(event, ItemUpdateEvent) and event.status.value in ("completed", "failed")
        }
        assert terminal == {0: "completed", 1: "failed", 2: "completed"}

        # Act: durable log
        status_response = await test_client.get(
            "/api/batch-status", params={"batch_id": "20260301-083000"}
        )

        # Assert
        assert status_response.status_code == 200
        report = status_response.json()
        assert [c["index"] for c in report["completed_indices"]] == [0, 2]
        assert [f["index"] for f in report["failed_indices"]] == [1]

    async def test_resumed_run_logs_original_indices(self, test_client):
        body = {
            "batch_id": "20260301-090000",
            "prompts": ["third", "fifth"],
            "item_indices": [2, 4],
        }

        response = await test_client.post("/api/generate", json=body)

        events = parse_stream(response.text)
        assert {e.index for e in events if isinstance(e, ItemUpdateEvent)} == {0, 1}
        report = (
            await test_client.get(
                "/api/batch-status",
                params={"batch_id": "20260301-090000", "date": "2026-03-01"},
            )
        ).json()
        assert [c["index"] for c in report["completed_indices"]] == [2, 4]

    async def test_misconfigured_provider_streams_batch_error(self, test_client, fake_provider):
        fake_provider.configured = False

        response = await test_client.post(
            "/api/generate", json={"batch_id": "20260301-100000", "prompts": ["a"]}
        )

        events = parse_stream(response.text)
        assert len(events) == 1
        assert events[0].type == "batch_error"
        assert "not configured" in events[0].error

    async def test_empty_prompt_is_rejected(self, test_client):
        response = await test_client.post(
            "/api/generate", json={"batch_id": "20260301-100000", "prompts": ["ok", "   "]}
        )

        assert response.status_code == 400
        assert "Prompt 1" in response.json()["detail"]

    async def test_unknown_provider_is_rejected(self, test_client):
        response = await test_client.post(
            "/api/generate",
            json={
                "batch_id": "20260301-100000",
                "prompts": ["a"],
                "config": {"provider": "midjourney"},
            },
        )

        assert response.status_code == 400

    async def test_mismatched_item_indices_is_rejected(self, test_client):
        response = await test_client.post(
            "/api/generate",
            json={"batch_id": "20260301-100000", "prompts": ["a", "b"], "item_indices": [3]},
        )

        assert response.status_code == 422

    @pytest.mark.parametrize("item_indices", [[2, 2], [-1, 0]])
    async def test_repeated_or_negative_item_indices_are_rejected(self, test_client, item_indices):
        response = await test_client.post(
            "/api/generate",
            json={
                "batch_id": "20260301-100000",
                "prompts": ["a", "b"],
                "item_indices": item_indices,
            },
        )

        assert response.status_code == 422


def install_publisher(app) -> list[dict]:
    """Route queue publishes to an in-memory list."""
    published: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        published.append(json.loads(request.content))
        return httpx.Response(201, json={"messageId": f"msg_{len(published)}"})

    app.state.publisher = QStashPublisher(
        token="qstash_test_token",
        base_url="https://qstash.test",
        public_base_url="http://test",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    return published


@pytest.mark.asyncio
class TestDistributedBatch:
    async def test_start_publishes_one_message_per_prompt(self, test_app, test_client):
        # Arrange
        published = install_publisher(test_app)

        # Act
        response = await test_client.post(
            "/api/batch/start",
            json={"batch_id": "20260302-120000", "prompts": ["one", "two", "three"]},
        )

        # Assert
        assert response.status_code == 200
        assert response.json() == {"batch_id": "20260302-120000", "total": 3, "messages": 3}
        assert [payload["index"] for payload in published] == [0, 1, 2]

        progress = await test_client.get(
            "/api/batch/progress", params={"batch_id": "20260302-120000"}
        )
        assert progress.json()["pending"] == 3
        assert progress.json()["status"] == "running"

    async def test_starts_in_the_same_second_get_distinct_ids(self, test_app, test_client):
        install_publisher(test_app)

        first = await test_client.post("/api/batch/start", json={"prompts": ["x"]})
        second = await test_client.post("/api/batch/start", json={"prompts": ["y", "z"]})

        first_id, second_id = first.json()["batch_id"], second.json()["batch_id"]
        assert first_id != second_id
        first_progress = (
            await test_client.get("/api/batch/progress", params={"batch_id": first_id})
        ).json()
        assert first_progress["total"] == 1

    async def test_reused_batch_id_conflicts(self, test_app, test_client, job_store):
        # Arrange
        published = install_publisher(test_app)
        await test_client.post(
            "/api/batch/start", json={"batch_id": "20260302-121500", "prompts": ["x"]}
        )
        await job_store.update_item("20260302-121500", 0, status=ItemStatus.COMPLETED)

        # Act
        response = await test_client.post(
            "/api/batch/start", json={"batch_id": "20260302-121500", "prompts": ["x", "y"]}
        )

        # Assert
        assert response.status_code == 409
        assert len(published) == 1
        meta = await job_store.get_meta("20260302-121500")
        assert meta.prompts == ["x"]
        record = await job_store.get_item("20260302-121500", 0)
        assert record.status == ItemStatus.COMPLETED

    async def test_process_item_requires_signature(self, test_client):
        response = await test_client.post(
            "/api/batch/process-item",
            content=b'{"batch_id":"x","index":0,"prompt":"a","config":{}}',
        )

        assert response.status_code == 401

    async def test_process_item_completes_and_reports_progress(
        self, test_settings, test_client, job_store
    ):
        # Arrange
        from genbatch.models.generation import GenerationConfig
        from genbatch.models.job_record import BatchMeta

        await job_store.create_batch(
            BatchMeta(
                batch_id="20260302-130000",
                name="Signed",
                total=1,
                config=GenerationConfig(),
                prompts=["a lantern"],
            )
        )
        body = json.dumps(
            {"batch_id": "20260302-130000", "index": 0, "prompt": "a lantern", "config": {}}
        ).encode()

        # Act
        response = await test_client.post(
            "/api/batch/process-item",
            content=body,
            headers=signed_headers(test_settings, body, "/api/batch/process-item"),
        )

        # Assert
        assert response.status_code == 200
        assert response.json() == {"status": "completed", "index": 0}
        progress = (
            await test_client.get("/api/batch/progress", params={"batch_id": "20260302-130000"})
        ).json()
        assert progress["completed"] == 1
        assert progress["status"] == "completed"
        assert progress["items"][0]["result"]["url"].startswith("https://cdn.test/")

    async def test_transient_failure_asks_for_redelivery(self, test_settings, test_client):
        body = json.dumps(
            {"batch_id": "20260302-140000", "index": 0, "prompt": "flaky", "config": {}}
        ).encode()

        response = await test_client.post(
            "/api/batch/process-item",
            content=body,
            headers=signed_headers(test_settings, body, "/api/batch/process-item"),
        )

        assert response.status_code == 503
        assert response.json()["status"] == "retry"

    async def test_last_delivery_is_acknowledged(self, test_settings, test_client):
        body = json.dumps(
            {"batch_id": "20260302-140000", "index": 0, "prompt": "flaky", "config": {}}
        ).encode()

        response = await test_client.post(
            "/api/batch/process-item",
            content=body,
            headers=signed_headers(test_settings, body, "/api/batch/process-item", retried=3),
        )

        assert response.status_code == 200
        assert response.json()["status"] == "failed"

    async def test_malformed_payload_is_acknowledged(self, test_settings, test_client):
        body = b'{"batch_id": "20260302-150000"}'

        response = await test_client.post(
            "/api/batch/process-item",
            content=body,
            headers=signed_headers(test_settings, body, "/api/batch/process-item"),
        )

        assert response.status_code == 200
        assert response.json()["status"] == "rejected"

    async def test_unknown_batch_progress(self, test_client):
        response = await test_client.get("/api/batch/progress", params={"batch_id": "nope"})

        assert response.status_code == 404


async def wait_for_status(client, batch_id: str, expected: str, attempts: int = 200) -> dict:
    for _ in range(attempts):
        data = (await client.get(f"/api/video-batches/{batch_id}")).json()
        if data["batch"]["status"] == expected and not data["polling"]:
            return data
        await asyncio.sleep(0.01)
    raise AssertionError(f"batch {batch_id} never reached {expected}")


@pytest.mark.asyncio
class TestVideoEndpoints:
    async def test_start_and_poll_single_task(self, test_client, fake_task_provider):
        fake_task_provider.polls_to_finish = 1

        start = await test_client.post(
            "/api/generate-video/start",
            json={"index": 3, "image_url": "https://img.test/a.png", "prompt": "zoom in"},
        )
        poll = await test_client.get(
            "/api/generate-video/poll", params={"task_ids": start.json()["task_id"]}
        )

        assert start.json() == {"index": 3, "task_id": "task-0"}
        result = poll.json()["results"][0]
        assert result["state"] == "success"
        assert result["video_url"] == "https://cdn.test/task-0.mp4"

    async def test_poll_requires_task_ids(self, test_client):
        response = await test_client.get("/api/generate-video/poll", params={"task_ids": " , "})

        assert response.status_code == 400

    async def test_video_batch_runs_to_completion(self, test_client, fake_task_provider):
        # Act
        response = await test_client.post(
            "/api/video-batches",
            json={
                "name": "Motion",
                "items": [
                    {"prompt": f"pan {n}", "image_url": f"https://img.test/{n}.png"}
                    for n in range(3)
                ],
            },
        )

        # Assert
        assert response.status_code == 201
        batch_id = response.json()["batch"]["id"]
        data = await wait_for_status(test_client, batch_id, "completed")
        assert [item["status"] for item in data["batch"]["items"]] == ["completed"] * 3
        assert fake_task_provider.max_open <= 2

    async def test_stop_and_resume(self, test_client, fake_task_provider):
        # Arrange
        fake_task_provider.polls_to_finish = 1000
        created = await test_client.post(
            "/api/video-batches",
            json={"items": [{"prompt": "drift", "image_url": "https://img.test/0.png"}]},
        )
        batch_id = created.json()["batch"]["id"]
        await asyncio.sleep(0.03)

        # Act
        stopped = await test_client.post(f"/api/video-batches/{batch_id}/stop")

        # Assert
        assert stopped.json()["batch"]["status"] == "interrupted"
        assert stopped.json()["polling"] is False

        # Act
        fake_task_provider.polls_to_finish = 0
        resumed = await test_client.post(f"/api/video-batches/{batch_id}/resume")

        # Assert
        assert resumed.status_code == 200
        assert resumed.json()["polling"] is True
        await wait_for_status(test_client, batch_id, "completed")
        assert list(fake_task_provider.inputs) == ["task-0"]

    async def test_resume_completed_batch_without_failures_conflicts(self, test_client):
        created = await test_client.post(
            "/api/video-batches",
            json={"items": [{"prompt": "drift", "image_url": "https://img.test/0.png"}]},
        )
        batch_id = created.json()["batch"]["id"]
        await wait_for_status(test_client, batch_id, "completed")

        response = await test_client.post(f"/api/video-batches/{batch_id}/resume")

        assert response.status_code == 409

    async def test_colliding_video_batch_id_conflicts(self, test_client, monkeypatch):
        # Arrange
        monkeypatch.setattr(
            "genbatch.models.batch.generate_batch_id", lambda now=None: "20260302-160000-abc123"
        )
        body = {"items": [{"prompt": "drift", "image_url": "https://img.test/0.png"}]}
        first = await test_client.post("/api/video-batches", json=body)

        # Act
        second = await test_client.post("/api/video-batches", json=body)

        # Assert
        assert first.status_code == 201
        assert second.status_code == 409
        await wait_for_status(test_client, "20260302-160000-abc123", "completed")

    async def test_unknown_video_batch(self, test_client):
        assert (await test_client.get("/api/video-batches/missing")).status_code == 404
        assert (await test_client.post("/api/video-batches/missing/stop")).status_code == 404
        assert (await test_client.post("/api/video-batches/missing/resume")).status_code == 404


@pytest.mark.asyncio
class TestEditEndpoint:
    async def test_single_edit(self, test_client):
        response = await test_client.post(
            "/api/edit", json={"image_url": "https://cdn.test/src.png", "prompt": "add snow"}
        )

        assert response.status_code == 200
        result = response.json()["results"][0]
        assert result["prompt"] == "add snow"
        assert result["image"]["url"].startswith("https://cdn.test/")

    async def test_variations_report_failures_separately(self, test_client):
        response = await test_client.post(
            "/api/edit",
            json={
                "image_url": "https://cdn.test/src.png",
                "variations": [
                    {"label": "winter", "prompt": "add snow"},
                    {"label": "broken", "prompt": "please fail"},
                ],
            },
        )

        data = response.json()
        assert [r["label"] for r in data["results"]] == ["winter"]
        assert data["errors"][0]["label"] == "broken"

    async def test_single_failed_edit_is_bad_gateway(self, test_client):
        response = await test_client.post(
            "/api/edit", json={"image_url": "https://cdn.test/src.png", "prompt": "please fail"}
        )

        assert response.status_code == 502

    async def test_prompt_or_variations_required(self, test_client):
        response = await test_client.post("/api/edit", json={"image_url": "https://cdn.test/a"})

        assert response.status_code == 422


@pytest.mark.asyncio
class TestHealth:
    async def test_health(self, test_client):
        response = await test_client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}
