"""Tests for the stateless distributed item handler.

Tests focus on:
- Redelivery of a terminal item is acknowledged without a provider call
- Transient failures ask for redelivery until the delivery budget is used
- Permanent failures are acknowledged and recorded
"""

import pytest
import pytest_asyncio

from genbatch.models.batch import ItemStatus
from genbatch.models.generation import GenerationConfig
from genbatch.models.job_record import BatchMeta, ItemJobPayload
from genbatch.services.exceptions import ConfigurationError
from genbatch.services.generation_log import GenerationLogService
from genbatch.workers.fanout_handler import HandlerOutcome, process_item_job

BATCH_ID = "20260301-110000"


@pytest.fixture
def payloads() -> list[ItemJobPayload]:
    prompts = ["a harbor", "please fail", "flaky request"]
    return [
        ItemJobPayload(batch_id=BATCH_ID, index=index, prompt=prompt, config=GenerationConfig())
        for index, prompt in enumerate(prompts)
    ]


@pytest_asyncio.fixture
async def seeded_store(job_store, payloads):
    await job_store.create_batch(
        BatchMeta(
            batch_id=BATCH_ID,
            name="Harbor",
            total=len(payloads),
            config=GenerationConfig(),
            prompts=[payload.prompt for payload in payloads],
        )
    )
    return job_store


@pytest.mark.asyncio
class TestProcessItemJob:
    async def test_success_updates_store_and_log(
        self, seeded_store, payloads, fake_provider, uow_factory
    ):
        # Arrange
        log_service = GenerationLogService(uow_factory)

        # Act
        result = await process_item_job(
            payloads[0], store=seeded_store, provider=fake_provider, log_service=log_service
        )

        # Assert
        assert result.outcome == HandlerOutcome.COMPLETED
        assert result.acknowledge
        record = await seeded_store.get_item(BATCH_ID, 0)
        assert record.status == ItemStatus.COMPLETED
        assert record.result.url == "https://cdn.test/1.png"
        assert record.deliveries == 1
        report = await log_service.status_report(BATCH_ID)
        assert [c.index for c in report.completed_indices] == [0]

    async def test_redelivery_of_terminal_item_is_skipped(
        self, seeded_store, payloads, fake_provider
    ):
        # Arrange
        await process_item_job(payloads[0], store=seeded_store, provider=fake_provider)

        # Act
        result = await process_item_job(
            payloads[0], store=seeded_store, provider=fake_provider, delivery_attempt=2
        )

        # Assert
        assert result.outcome == HandlerOutcome.SKIPPED
        assert result.acknowledge
        assert len(fake_provider.calls) == 1

    async def test_permanent_failure_is_acknowledged(
        self, seeded_store, payloads, fake_provider, uow_factory
    ):
        # Arrange
        log_service = GenerationLogService(uow_factory)

        # Act
        result = await process_item_job(
            payloads[1], store=seeded_store, provider=fake_provider, log_service=log_service
        )

        # Assert
        assert result.outcome == HandlerOutcome.FAILED
        assert result.acknowledge
        assert "please fail" in result.error
        record = await seeded_store.get_item(BATCH_ID, 1)
        assert record.status == ItemStatus.FAILED
        report = await log_service.status_report(BATCH_ID)
        assert [f.index for f in report.failed_indices] == [1]

    async def test_transient_failure_requests_redelivery(
        self, seeded_store, payloads, fake_provider
    ):
        # Act
        result = await process_item_job(
            payloads[2],
            store=seeded_store,
            provider=fake_provider,
            delivery_attempt=1,
            max_deliveries=4,
        )

        # Assert
        assert result.outcome == HandlerOutcome.RETRY
        assert not result.acknowledge
        record = await seeded_store.get_item(BATCH_ID, 2)
        assert record.status == ItemStatus.QUEUED
        assert "429" in record.error

    async def test_transient_failure_on_last_delivery_is_dead_lettered(
        self, seeded_store, payloads, fake_provider, uow_factory
    ):
        # Arrange
        log_service = GenerationLogService(uow_factory)

        # Act
        result = await process_item_job(
            payloads[2],
            store=seeded_store,
            provider=fake_provider,
            log_service=log_service,
            delivery_attempt=4,
            max_deliveries=4,
        )

        # Assert
        assert result.outcome == HandlerOutcome.FAILED
        assert result.error.startswith("Dead-lettered after 4 deliveries")
        record = await seeded_store.get_item(BATCH_ID, 2)
        assert record.status == ItemStatus.FAILED
        assert record.deliveries == 4
        report = await log_service.status_report(BATCH_ID)
        assert [f.index for f in report.failed_indices] == [2]

    async def test_configuration_error_propagates(self, seeded_store, payloads, fake_provider):
        # Arrange
        fake_provider.configured = False

        # Act / Assert
        with pytest.raises(ConfigurationError):
            await process_item_job(payloads[0], store=seeded_store, provider=fake_provider)

        record = await seeded_store.get_item(BATCH_ID, 0)
        assert record.status == ItemStatus.QUEUED
        assert fake_provider.calls == []
