"""Tests for the forward/compensate pipeline."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from bounty_board_service.services.pipeline import Pipeline, StepStatus


@pytest.mark.unit
async def test_steps_see_earlier_results():
    async def second(results):
        return results["first"] + 1

    pipeline = Pipeline("demo").add("first", AsyncMock(return_value=1)).add("second", second)

    results = await pipeline.run()

    assert results == {"first": 1, "second": 2}
    assert [record.status for record in pipeline.trail] == [
        StepStatus.COMPLETED,
        StepStatus.COMPLETED,
    ]


@pytest.mark.unit
async def test_failure_compensates_in_reverse_order():
    order: list[str] = []

    async def undo_a(result):
        order.append(f"undo-a:{result}")

    async def undo_b(result):
        order.append(f"undo-b:{result}")

    pipeline = (
        Pipeline("demo")
        .add("a", AsyncMock(return_value="A"), undo_a)
        .add("b", AsyncMock(return_value="B"), undo_b)
        .add("c", AsyncMock(side_effect=RuntimeError("boom")))
    )

    with pytest.raises(RuntimeError, match="boom"):
        await pipeline.run()

    assert order == ["undo-b:B", "undo-a:A"]
    assert [(record.name, record.status) for record in pipeline.trail] == [
        ("a", StepStatus.COMPLETED),
        ("b", StepStatus.COMPLETED),
        ("c", StepStatus.FAILED),
        ("b", StepStatus.COMPENSATED),
        ("a", StepStatus.COMPENSATED),
    ]


@pytest.mark.unit
async def test_compensation_failure_keeps_original_error():
    undo_first = AsyncMock()
    pipeline = (
        Pipeline("demo")
        .add("first", AsyncMock(return_value=1), undo_first)
        .add("second", AsyncMock(return_value=2), AsyncMock(side_effect=OSError("disk")))
        .add("third", AsyncMock(side_effect=ValueError("bad")))
    )

    with pytest.raises(ValueError, match="bad"):
        await pipeline.run()

    undo_first.assert_awaited_once_with(1)
    failed = [record for record in pipeline.trail if record.status == StepStatus.COMPENSATION_FAILED]
    assert len(failed) == 1
    assert failed[0].name == "second"
    assert failed[0].error == "OSError"
