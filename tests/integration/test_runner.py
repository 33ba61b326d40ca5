import pytest

from src.core.exceptions import ConfigurationError
from src.db.models import PipelineRun, Repository
from src.db.models.pipeline import PipelineType, RunStatus
from src.db.models.raw import EntityKind
from src.services.pipeline_runner import PipelineRunner, build_runtime
from src.services.pipeline_service import STOPPED_MESSAGE, PipelineService
from src.services.raw_store import RawStore

pytestmark = pytest.mark.integration


async def open_run(session_maker, pipeline: PipelineType) -> int:
    async with session_maker() as db, db.begin():
        run = await PipelineService(db).start(pipeline)
        return run.id


async def load_run(session_maker, run_id: int) -> tuple[PipelineRun, dict]:
    async with session_maker() as db:
        run = await db.get(PipelineRun, run_id)
        status = await PipelineService(db).get_status(run.pipeline_type)
        return run, status


class TestPipelineRunner:
    """Tests for executing a run and closing it."""

    async def test_completed_run(self, session_maker, make_settings) -> None:
        runner = PipelineRunner(build_runtime(make_settings(), session_maker))
        run_id = await open_run(session_maker, PipelineType.CONTRIBUTOR_RANKINGS)

        report = await runner.run("contributor_rankings", run_id)

        run, status = await load_run(session_maker, run_id)
        assert report.items_processed == 0
        assert run.status == RunStatus.COMPLETED.value
        assert run.error_message is None
        assert run.completed_at is not None
        assert not status["is_running"]

    async def test_entity_errors_are_summarized(self, session_maker, make_settings) -> None:
        async with session_maker() as db, db.begin():
            await RawStore().append(
                db,
                EntityKind.MERGE_REQUEST,
                "octo/demo#1",
                "/repos/octo/demo/pulls",
                {"number": 1, "title": "no base"},
            )
        runner = PipelineRunner(build_runtime(make_settings(), session_maker))
        run_id = await open_run(session_maker, PipelineType.DATA_PROCESSING)

        await runner.run(PipelineType.DATA_PROCESSING, run_id)

        run, _ = await load_run(session_maker, run_id)
        assert run.status == RunStatus.COMPLETED.value
        assert run.error_message.startswith("1 item(s) failed: ")

    async def test_stop_request_completes_run(self, session_maker, make_settings) -> None:
        async with session_maker() as db, db.begin():
            db.add(Repository(external_id=10, full_name="octo/demo", name="demo"))
        runner = PipelineRunner(build_runtime(make_settings(), session_maker))
        run_id = await open_run(session_maker, PipelineType.REPOSITORY_PROCESSING)
        async with session_maker() as db, db.begin():
            assert await PipelineService(db).stop(PipelineType.REPOSITORY_PROCESSING)

        report = await runner.run(PipelineType.REPOSITORY_PROCESSING, run_id)

        run, status = await load_run(session_maker, run_id)
        assert report.stopped
        assert run.status == RunStatus.COMPLETED.value
        assert run.items_processed == 0
        assert run.error_message == STOPPED_MESSAGE
        assert not status["is_running"]
        assert not status["stop_requested"]

    async def test_fatal_error_fails_run(self, session_maker, make_settings) -> None:
        runner = PipelineRunner(build_runtime(make_settings(github_token=""), session_maker))
        run_id = await open_run(session_maker, PipelineType.GITHUB_SYNC)

        with pytest.raises(ConfigurationError):
            await runner.run(PipelineType.GITHUB_SYNC, run_id)

        run, status = await load_run(session_maker, run_id)
        assert run.status == RunStatus.FAILED.value
        assert run.error_message == "GITHUB_TOKEN is not configured"
        assert status["status"] == RunStatus.FAILED.value
        assert not status["is_running"]
