import logging

import pytest

from catalog.errors import EmbeddingGenerationError
from catalog.pipelines.saga import SagaAborted, SagaRunner, SagaStep, StepStatus


def _step(name, journal, *, fail=False, compensation_fails=False, failure_reason=None):
    async def action():
        journal.append(f"do {name}")
        if fail:
            raise RuntimeError(f"{name} broke")
        return name.upper()

    async def compensation():
        journal.append(f"undo {name}")
        if compensation_fails:
            raise RuntimeError(f"cannot undo {name}")

    return SagaStep(name, action, compensation, failure_reason=failure_reason)


@pytest.mark.asyncio
async def test_runs_steps_in_order_and_collects_results():
    journal = []
    saga = SagaRunner("test")
    saga.add_step(_step("a", journal)).add_step(_step("b", journal))

    results = await saga.run()

    assert journal == ["do a", "do b"]
    assert results == {"a": "A", "b": "B"}
    assert all(step.status is StepStatus.EXECUTED for step in saga.steps)


@pytest.mark.asyncio
async def test_failure_compensates_failed_and_completed_steps_in_reverse():
    journal = []
    saga = SagaRunner("test")
    for step in (_step("a", journal), _step("b", journal), _step("c", journal, fail=True), _step("d", journal)):
        saga.add_step(step)

    with pytest.raises(SagaAborted) as exc_info:
        await saga.run()

    assert journal == ["do a", "do b", "do c", "undo c", "undo b", "undo a"]
    assert exc_info.value.step.name == "c"
    assert exc_info.value.reason == "c broke"
    assert saga.steps[3].status is StepStatus.PENDING


@pytest.mark.asyncio
async def test_failure_reason_prefix():
    journal = []
    saga = SagaRunner("test")
    saga.add_step(_step("stage", journal, fail=True, failure_reason="Error saving items"))

    with pytest.raises(SagaAborted) as exc_info:
        await saga.run()

    assert exc_info.value.reason == "Error saving items. Error: stage broke"


@pytest.mark.asyncio
async def test_non_retryable_cause_is_described():
    async def action():
        raise EmbeddingGenerationError("Invalid API key", status_code=401)

    saga = SagaRunner("test")
    saga.add_step(SagaStep("embed", action))

    with pytest.raises(SagaAborted) as exc_info:
        await saga.run()

    assert exc_info.value.reason == "Non-retryable embedding error: Invalid API key"


@pytest.mark.asyncio
async def test_failed_compensation_is_logged_and_others_still_run(caplog):
    journal = []
    saga = SagaRunner("test")
    saga.add_step(_step("a", journal))
    saga.add_step(_step("b", journal, compensation_fails=True))
    saga.add_step(_step("c", journal, fail=True))

    with caplog.at_level(logging.CRITICAL, logger="catalog.pipelines.saga"):
        with pytest.raises(SagaAborted):
            await saga.run()

    assert journal == ["do a", "do b", "do c", "undo c", "undo b", "undo a"]
    assert saga.steps[1].status is StepStatus.COMPENSATION_FAILED
    assert saga.steps[0].status is StepStatus.COMPENSATED
    assert any("could not compensate step 'b'" in r.getMessage() for r in caplog.records)
