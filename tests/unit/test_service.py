"""Integration-style tests for ArtifactService against a scripted transport."""

import json

import pytest

from contracts.storage import ArtifactKind, EntityStatus
from relic.errors import ConfigurationError, JobErrorType, TransportError
from relic.jobs.models import JobPhase
from relic.jobs.operations import AI_DISCLAIMER
from relic.reliability.connectivity import ManualConnectivity
from relic.reliability.models import BinaryPayload
from relic.reliability.offline import OfflineOperationQueue, ReplaySummary
from relic.service import ArtifactService
from relic.storage import InMemoryEntityStore
from tests.helpers import GLB_BYTES, http_error

TRIPOSR_FILE = "https://stabilityai-triposr.hf.space/file=/tmp/model.glb"
PNG_URI = "data:image/png;base64,iVBORw0KGgo="


@pytest.fixture
def connectivity():
    return ManualConnectivity(online=True)


@pytest.fixture
def store():
    return InMemoryEntityStore()


@pytest.fixture
def service(config, transport, sleep, store, connectivity, tmp_path):
    return ArtifactService(
        store,
        transport=transport,
        connectivity=connectivity,
        queue=OfflineOperationQueue(tmp_path / "queue.json"),
        config=config,
        sleep=sleep,
    )


class TestStartJob:
    """Tests for running operations through the service."""

    @pytest.mark.asyncio
    async def test_reconstruct_with_fallback(self, service, transport, store, media):
        transport.script("trellis", http_error(503))
        transport.script("triposr", {"url": "/file=/tmp/model.glb"})
        transport.files[TRIPOSR_FILE] = BinaryPayload(GLB_BYTES)

        artifact = await service.start_job("art-42", media, "reconstruct3d")

        assert artifact.format == "glb"
        assert artifact.kind == ArtifactKind.MODEL_3D
        assert service.get_job("art-42").method_used == "triposr"
        assert store.get_entity("art-42")["status"] == EntityStatus.COMPLETE

    @pytest.mark.asyncio
    async def test_reconstruct_remove_background(self, service, transport, media):
        """remove_background reaches triposr's request."""
        transport.script("triposr", {"url": "/file=/tmp/model.glb"})
        transport.files[TRIPOSR_FILE] = BinaryPayload(GLB_BYTES)

        await service.start_job(
            "art-42", media, "reconstruct3d", {"method": "triposr", "remove_background": False}
        )

        _, body = transport.calls[0]
        assert body["do_remove_background"] is False

    @pytest.mark.asyncio
    async def test_colorize_after_rate_limits(self, service, transport, sleep, media):
        """Two 429s then success: rate-limit delays and a scheme-labelled method."""
        transport.script("deoldify", http_error(429), http_error(429), PNG_URI)

        artifact = await service.start_job("art-7", media, "colorize", {"color_scheme": "roman"})

        assert sleep.delays == [5.0, 10.0]
        assert artifact.source_method == "deoldify-roman"
        assert artifact.kind == ArtifactKind.COLOR_VARIANT
        assert artifact.metadata["color_scheme"] == "roman"
        assert service.get_job("art-7").retry_count == 2

    @pytest.mark.asyncio
    async def test_info_card(self, service, transport, media):
        content = json.dumps({"material": "Terracotta", "aiConfidence": 0.7})
        transport.script("groq-vision", {"choices": [{"message": {"content": content}}]})

        artifact = await service.start_job(
            "art-9", media, "generate_info_card", {"metadata": {"site_name": "Knossos"}}
        )

        card = json.loads(artifact.data)
        assert card["disclaimer"] == AI_DISCLAIMER
        assert artifact.format == "json"
        assert artifact.kind == ArtifactKind.INFO_CARD
        _, body = transport.calls[0]
        assert "Site Name: Knossos" in body["messages"][1]["content"][0]["text"]

    @pytest.mark.asyncio
    async def test_unknown_operation(self, service, media):
        with pytest.raises(ConfigurationError):
            await service.start_job("art-1", media, "sculpt")

    @pytest.mark.asyncio
    async def test_submit_job_runs_in_background(self, service, transport, media):
        transport.script("deoldify", PNG_URI)

        task = service.submit_job("art-7", media, "colorize")
        artifact = await task

        assert artifact.source_method == "deoldify-original"
        assert service.get_job("art-7").phase == JobPhase.COMPLETE

    @pytest.mark.asyncio
    async def test_reset_job(self, service, transport, media):
        transport.script("deoldify", http_error(400))
        await service.start_job("art-7", media, "colorize")

        assert service.reset_job("art-7").phase == JobPhase.IDLE
        assert not service.cancel_job("art-7")


class TestOfflineFlow:
    """Tests for queueing while offline and replaying on reconnect."""

    @pytest.mark.asyncio
    async def test_offline_request_replays_on_reconnect(
        self, service, transport, store, connectivity, media
    ):
        connectivity.set_online(False)
        await service.start()

        await service.start_job("art-7", media, "colorize", {"color_scheme": "greek"})

        assert service.get_job("art-7").error.error_type == JobErrorType.NETWORK
        assert [op.op_type for op in service.list_pending()] == ["colorize"]
        assert transport.calls == []

        transport.script("deoldify", PNG_URI)
        connectivity.set_online(True)
        await service.offline_manager.wait_for_replays()

        assert service.list_pending() == []
        assert service.get_job("art-7").phase == JobPhase.COMPLETE
        artifact = store.get_artifact("art-7", ArtifactKind.COLOR_VARIANT)
        assert artifact.source_method == "deoldify-greek"
        service.stop()

    @pytest.mark.asyncio
    async def test_failed_replay_stays_queued(self, service, transport, media):
        service.enqueue_request("art-7", media, "colorize")
        transport.script("deoldify", TransportError("Connection refused"))

        summary = await service.replay_all()

        assert summary == ReplaySummary(processed=0, failed=0, remaining=1)
        (op,) = service.list_pending()
        assert op.retry_count == 1
        assert "Connection refused" in op.last_error

    @pytest.mark.asyncio
    async def test_exhausted_replay_is_dropped(self, config, transport, sleep, tmp_path, media):
        dropped = []
        service = ArtifactService(
            transport=transport,
            queue=OfflineOperationQueue(tmp_path / "queue.json", max_retries=1),
            config=config,
            sleep=sleep,
            on_dropped=lambda op, error: dropped.append(error),
        )
        service.enqueue_request("art-7", media, "colorize")
        transport.script("deoldify", http_error(400))

        await service.replay_all()
        summary = await service.replay_all()

        assert summary.failed == 1
        assert dropped[0].error_type == JobErrorType.PROCESSING_FAILED

    def test_injected_empty_queue_is_used(self, config, transport, tmp_path, media):
        queue = OfflineOperationQueue(tmp_path / "mine.json", max_retries=1)
        service = ArtifactService(transport=transport, queue=queue, config=config)

        assert service.queue is queue
        service.enqueue_request("art-7", media, "colorize")
        assert (tmp_path / "mine.json").exists()
        assert not config.offline_queue.path.exists()

    def test_enqueue_validates_operation(self, service):
        with pytest.raises(ConfigurationError):
            service.enqueue("sculpt", {})

    def test_enqueue_request_validates_params(self, service, media):
        with pytest.raises(ConfigurationError):
            service.enqueue_request("art-7", media, "colorize", {"color_scheme": "custom"})
        assert service.list_pending() == []

    def test_clear_queue(self, service, media):
        service.enqueue_request("art-7", media, "colorize")
        assert service.clear_queue() == 1
