from pathlib import Path
from unittest.mock import MagicMock

import pytest

from composition.distributor import DistributionResult
from composition.mosaic_pipeline import FinalizeResult
from conftest import make_grid
from runtime.errors import TranscodeFailure
from worker import execute_job, worker_loop


def finished_job():
    grid = make_grid("grid_done", videos=[f"videos/{i}.webm" for i in range(16)])
    return {"generation_id": "grid_done", "grid": grid.to_dict(), "recipients": ["a@x"]}


def test_execute_job_success():
    pipeline = MagicMock()
    pipeline.run_for_grid.return_value = FinalizeResult(
        run_id="r1",
        url="https://cdn.example.com/m.mp4",
        local_path=Path("outputs/mosaic_r1.mp4"),
        distribution=DistributionResult(url="https://cdn.example.com/m.mp4", local_url="x", uploaded=True),
    )

    result = execute_job(finished_job(), pipeline)

    assert result["status"] == "success"
    assert result["url"] == "https://cdn.example.com/m.mp4"
    assert result["uploaded"] is True
    grid, recipients = pipeline.run_for_grid.call_args[0]
    assert grid.generation_id == "grid_done"
    assert recipients == ["a@x"]


def test_execute_job_failure_is_reported():
    pipeline = MagicMock()
    pipeline.run_for_grid.side_effect = TranscodeFailure("vstack failed")

    result = execute_job(finished_job(), pipeline)

    assert result["status"] == "failure"
    assert result["error"]["message"] == "vstack failed"
    assert result["url"] is None


@pytest.mark.asyncio
async def test_worker_loop_processes_one_job():
    store = MagicMock()
    store.pop_finalize_job.return_value = finished_job()
    pipeline = MagicMock()
    pipeline.run_for_grid.side_effect = TranscodeFailure("boom")

    await worker_loop(store, pipeline, once=True)

    pushed = store.push_finalize_result.call_args[0][0]
    assert pushed["generation_id"] == "grid_done"
    store.record_result.assert_called_once_with(
        "grid_done", {"status": "failure", "url": None, "error": "boom"}
    )


@pytest.mark.asyncio
async def test_worker_loop_idle_once_returns():
    store = MagicMock()
    store.pop_finalize_job.return_value = None

    await worker_loop(store, MagicMock(), once=True)

    store.push_finalize_result.assert_not_called()
