import os
from datetime import timedelta

import pytest
import pytest_asyncio

from devflow.contracts import (
    Phase,
    QuestionState,
    QuestionType,
    ResponseType,
    RunState,
    SignalPayload,
    StepStatus,
    utcnow,
)
from devflow.persistence import InMemoryWorkflowRepository, SQLiteWorkflowRepository
from devflow.persistence.postgres import PostgresWorkflowRepository, _affected
from devflow.persistence.models import PendingQuestion, RunRecord, WorkItem


async def _postgres_repo() -> PostgresWorkflowRepository:
    dsn = os.getenv("TEST_PG_DSN")
    if not dsn:
        pytest.skip("TEST_PG_DSN not set")
    repo = PostgresWorkflowRepository(dsn)
    try:
        conn = await repo._connect()
    except Exception:
        pytest.skip("PostgreSQL server not available")
    try:
        await conn.execute(
            "TRUNCATE work_items, runs, step_history, questions, deliveries"
        )
    finally:
        await conn.close()
    return repo


@pytest_asyncio.fixture(params=["inmemory", "sqlite", "postgres"])
async def repo(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteWorkflowRepository(tmp_path / "devflow.db")
    if request.param == "postgres":
        return await _postgres_repo()
    return InMemoryWorkflowRepository()


def _run(run_id: str = "refinement-ISS-1-1", item_id: str = "ISS-1") -> RunRecord:
    return RunRecord(
        run_id=run_id,
        dedupe_key=f"refinement:{item_id}",
        item_id=item_id,
        phase=Phase.REFINEMENT,
    )


def _question(question_id: str = "q1", comment_id: str = "comment-1") -> PendingQuestion:
    return PendingQuestion(
        id=question_id,
        item_id="ISS-1",
        run_id="refinement-ISS-1-1",
        step_name="ask_po_questions",
        key="0",
        question_type=QuestionType.CLARIFICATION,
        comment_id=comment_id,
        timeout_at=utcnow() + timedelta(hours=1),
    )


@pytest.mark.asyncio
async def test_item_status_compare_and_set(repo):
    saved = await repo.save_item(WorkItem(id="ISS-1", external_id="ISS-1", status="Backlog"))
    version = saved.version

    assert await repo.compare_and_set_status("ISS-1", version, "To Refinement")
    # a writer holding the old version loses
    assert not await repo.compare_and_set_status("ISS-1", version, "Refinement Failed")

    item = await repo.get_item("ISS-1")
    assert item.status == "To Refinement"
    assert item.version == version + 1
    assert await repo.get_item("missing") is None


@pytest.mark.asyncio
async def test_save_item_keeps_version_for_same_status(repo):
    first = await repo.save_item(WorkItem(id="ISS-1", external_id="ISS-1", status="Backlog"))
    again = await repo.save_item(
        WorkItem(id="ISS-1", external_id="ISS-1", status="Backlog", title="Renamed")
    )
    moved = await repo.save_item(WorkItem(id="ISS-1", external_id="ISS-1", status="Done"))

    assert again.version == first.version
    assert again.title == "Renamed"
    assert moved.version == first.version + 1


@pytest.mark.asyncio
async def test_list_children(repo):
    await repo.save_item(WorkItem(id="P", external_id="P", status="Backlog"))
    for child in ("C1", "C2"):
        await repo.save_item(
            WorkItem(id=child, external_id=child, status="Backlog", parent_id="P")
        )

    children = await repo.list_children("P")
    assert sorted(c.id for c in children) == ["C1", "C2"]
    assert await repo.list_children("C1") == []


@pytest.mark.asyncio
async def test_single_active_run_per_dedupe_key(repo):
    assert await repo.create_run(_run("refinement-ISS-1-1"))
    assert not await repo.create_run(_run("refinement-ISS-1-2"))

    active = await repo.find_active_run("refinement:ISS-1")
    assert active.run_id == "refinement-ISS-1-1"

    await repo.set_run_state("refinement-ISS-1-1", RunState.COMPLETED)
    assert await repo.find_active_run("refinement:ISS-1") is None
    assert await repo.create_run(_run("refinement-ISS-1-2"))

    runs = await repo.list_runs(item_id="ISS-1")
    assert sorted(r.run_id for r in runs) == ["refinement-ISS-1-1", "refinement-ISS-1-2"]


@pytest.mark.asyncio
async def test_step_history_and_blocked_reopen(repo):
    await repo.create_run(_run())
    run_id = "refinement-ISS-1-1"

    await repo.mark_step_started(run_id, "sync_item")
    await repo.mark_step_completed(
        run_id, "sync_item", StepStatus.COMPLETED, output={"id": "ISS-1"}
    )
    await repo.mark_step_completed(run_id, "save_context", StepStatus.SKIPPED)
    await repo.mark_step_started(run_id, "ask")
    await repo.mark_step_completed(run_id, "ask", StepStatus.BLOCKED)
    await repo.set_run_state(run_id, RunState.BLOCKED, current_step="ask")

    # resuming reopens the blocked step instead of adding a row
    await repo.mark_step_started(run_id, "ask")
    await repo.mark_step_completed(run_id, "ask", StepStatus.COMPLETED, output=["yes"])

    run = await repo.get_run(run_id)
    assert run.state == RunState.BLOCKED
    assert run.current_step == "ask"
    by_name = {s.step_name: s for s in run.steps}
    assert len(run.steps) == 3
    assert by_name["sync_item"].output == {"id": "ISS-1"}
    assert by_name["save_context"].status == StepStatus.SKIPPED
    assert by_name["ask"].attempts == 2
    assert by_name["ask"].output == ["yes"]
    assert run.finished_step("ask") is not None


@pytest.mark.asyncio
async def test_question_resolves_once(repo):
    await repo.create_run(_run())
    await repo.create_question(_question())

    assert (await repo.find_question_by_comment("comment-1")).id == "q1"
    assert (await repo.find_question("refinement-ISS-1-1", "ask_po_questions", "0")).id == "q1"
    assert await repo.find_question("refinement-ISS-1-1", "ask_po_questions", "1") is None

    answer = SignalPayload(
        question_id="q1",
        response_type=ResponseType.OPTION_SELECTED,
        selected_option="A",
        responded_by="alice",
    )
    assert await repo.resolve_question("q1", QuestionState.ANSWERED, answer)
    assert not await repo.resolve_question("q1", QuestionState.TIMED_OUT)

    stored = await repo.get_question("q1")
    assert stored.state == QuestionState.ANSWERED
    assert stored.selected_option == "A"
    assert stored.as_signal().responded_by == "alice"
    assert await repo.list_questions(state=QuestionState.PENDING) == []
    assert len(await repo.list_questions(run_id="refinement-ISS-1-1")) == 1


@pytest.mark.asyncio
async def test_record_delivery_is_idempotent(repo):
    assert await repo.record_delivery("delivery-1")
    assert not await repo.record_delivery("delivery-1")
    assert await repo.record_delivery("delivery-2")


@pytest.mark.asyncio
async def test_status_only_save_keeps_parent_and_details(repo):
    await repo.save_item(
        WorkItem(
            id="C1",
            external_id="C1",
            identifier="ENG-2",
            status="UserStory In Progress",
            parent_id="P",
            team_id="team-1",
            title="Child",
        )
    )

    saved = await repo.save_item(WorkItem(id="C1", external_id="C1", status="UserStory Ready"))

    assert saved.status == "UserStory Ready"
    assert saved.parent_id == "P"
    assert saved.team_id == "team-1"
    assert saved.identifier == "ENG-2"
    assert saved.title == "Child"
    assert [c.id for c in await repo.list_children("P")] == ["C1"]


@pytest.mark.parametrize(
    "tag,expected",
    [("UPDATE 1", 1), ("INSERT 0 1", 1), ("INSERT 0 0", 0), ("DELETE 3", 3), ("", 0)],
)
def test_affected_reads_command_tag(tag, expected):
    assert _affected(tag) == expected


@pytest.mark.asyncio
async def test_cancelled_run_is_not_revived(repo):
    await repo.create_run(_run())
    await repo.set_run_state("refinement-ISS-1-1", RunState.CANCELLED, error="cancelled")

    # a worker finishing its pass late must not overwrite the cancellation
    await repo.set_run_state("refinement-ISS-1-1", RunState.BLOCKED, current_step="ask")

    run = await repo.get_run("refinement-ISS-1-1")
    assert run.state == RunState.CANCELLED
    assert run.error == "cancelled"
    assert await repo.find_active_run("refinement:ISS-1") is None
