"""End-to-end refinement runs through the router and runtime."""

import asyncio

import pytest

from devflow.collaborators import ContextChunk, ProposedStory, Refinement, SuggestedSplit
from devflow.contracts import Phase, QuestionState, RunState
from devflow.errors import PhaseFailedError
from devflow.runtime import PipelineRuntime


def trigger(item_id, status="To Refinement", delivery_id=None):
    event = {"eventType": "issue", "action": "update", "itemId": item_id, "status": status}
    if delivery_id:
        event["deliveryId"] = delivery_id
    return event


def reply(item_id, parent, body, comment_id, delivery_id=None):
    event = {
        "eventType": "comment",
        "action": "create",
        "commentId": comment_id,
        "itemId": item_id,
        "parentCommentId": parent,
        "body": body,
        "authorId": "po-user",
    }
    if delivery_id:
        event["deliveryId"] = delivery_id
    return event


@pytest.mark.asyncio
async def test_refinement_blocks_on_po_questions_and_resumes(
    service, tracker, generator, eventually
):
    tracker.add_issue("ISS-1", "To Refinement", team_id="team-1")
    generator.refinement = Refinement(
        task_type="feature",
        summary="Export reports as CSV",
        questions_for_po=["Which columns?", "Is Excel needed?"],
    )
    repository = service.repository

    started = await service.router.route(trigger("ISS-1"))
    assert started.accepted
    run_id = started.run_id

    async def two_pending():
        pending = await repository.list_questions(run_id=run_id, state=QuestionState.PENDING)
        run = await repository.get_run(run_id)
        return pending if len(pending) == 2 and run.state == RunState.BLOCKED else None

    questions = await eventually(two_pending)
    assert tracker.status_of("ISS-1") == "Refinement In Progress"
    assert tracker.labels == [("ISS-1", "team-1", "feature")]
    question_comments = [b for b in tracker.comments_on("ISS-1") if "DevFlow Question" in b]
    assert len(question_comments) == 2

    first = await service.router.route(
        reply("ISS-1", questions[0].comment_id, "REJECT: id, date and total", "c-1")
    )
    assert first.accepted
    assert first.reason == "delivered"

    duplicate = await service.router.route(
        reply("ISS-1", questions[0].comment_id, "APPROVE", "c-2")
    )
    assert not duplicate.accepted
    assert duplicate.reason == "already_answered"

    await asyncio.sleep(0.05)
    assert (await repository.get_run(run_id)).state == RunState.BLOCKED

    await service.router.route(reply("ISS-1", questions[1].comment_id, "APPROVE", "c-3"))

    outcome = await asyncio.wait_for(service.runtime.wait(run_id), 5)
    assert outcome.state == RunState.COMPLETED
    assert tracker.status_of("ISS-1") == "Refinement Ready"
    po_answers = await tracker.get_document("ISS-1", "po_answers")
    assert "id, date and total" in po_answers
    assert "approved" in po_answers
    assert generator.called("refine") == 1
    assert "## Refinement" in await tracker.get_document("ISS-1", "refinement")


@pytest.mark.asyncio
async def test_refinement_saves_context_documents(service, tracker, context_store):
    tracker.add_issue("ISS-1", "To Refinement")
    context_store.chunks = [
        ContextChunk(path=f"src/mod{i}.py", content=f"def f{i}(): pass", score=1.0)
        for i in range(8)
    ]
    context_store.documentation = "The export module writes files."

    started = await service.router.route(trigger("ISS-1"))
    outcome = await service.runtime.wait(started.run_id)

    assert outcome.state == RunState.COMPLETED
    assert outcome.outputs["save_codebase_context"] == 5
    codebase = await tracker.get_document("ISS-1", "codebase_context")
    assert "src/mod4.py" in codebase
    assert "src/mod5.py" not in codebase
    assert await tracker.get_document("ISS-1", "documentation_context") == (
        "The export module writes files."
    )


@pytest.mark.asyncio
async def test_large_refinement_creates_subtasks(service, tracker, generator):
    tracker.add_issue("ISS-1", "To Refinement")
    generator.refinement = Refinement(
        summary="Too big",
        suggested_title="Reporting overhaul",
        complexity_estimate="XL",
        suggested_split=SuggestedSplit(
            reason="Independent parts",
            proposed_stories=[ProposedStory(title="Backend"), ProposedStory(title="UI")],
        ),
    )

    started = await service.router.route(trigger("ISS-1"))
    outcome = await service.runtime.wait(started.run_id)

    assert outcome.state == RunState.COMPLETED
    assert tracker.subtasks == [("ISS-1", ["Backend", "UI"])]
    assert tracker.content_updates == [
        {"item_id": "ISS-1", "title": "Reporting overhaul", "description": None}
    ]


@pytest.mark.asyncio
async def test_blocking_failure_marks_item_failed(service, tracker, generator):
    tracker.add_issue("ISS-1", "To Refinement")
    generator.refine_error = RuntimeError("model unavailable")

    started = await service.router.route(trigger("ISS-1"))

    with pytest.raises(PhaseFailedError) as excinfo:
        await service.runtime.wait(started.run_id)

    assert excinfo.value.step_name == "generate_refinement"
    assert tracker.status_of("ISS-1") == "Refinement Failed"
    run = await service.repository.get_run(started.run_id)
    assert run.state == RunState.FAILED
    # one retry configured in the fixture
    assert generator.called("refine") == 2


@pytest.mark.asyncio
async def test_failed_subtask_creation_is_not_retried(service, tracker, generator):
    tracker.add_issue("ISS-1", "To Refinement")
    tracker.fail_subtasks = 1
    generator.refinement = Refinement(
        summary="Too big",
        complexity_estimate="L",
        suggested_split=SuggestedSplit(
            proposed_stories=[ProposedStory(title="A"), ProposedStory(title="B")]
        ),
    )

    started = await service.router.route(trigger("ISS-1"))
    with pytest.raises(PhaseFailedError):
        await service.runtime.wait(started.run_id)

    assert len(tracker.subtasks) == 1
    assert tracker.status_of("ISS-1") == "Refinement Failed"


@pytest.mark.asyncio
async def test_second_trigger_while_blocked_is_rejected(service, tracker, generator, eventually):
    tracker.add_issue("ISS-1", "To Refinement")
    generator.refinement = Refinement(summary="s", questions_for_po=["Why?"])

    started = await service.router.route(trigger("ISS-1", delivery_id="d-1"))

    async def blocked():
        run = await service.repository.get_run(started.run_id)
        return run.state == RunState.BLOCKED

    await eventually(blocked)
    again = await service.router.route(trigger("ISS-1", delivery_id="d-2"))

    assert not again.accepted
    assert again.reason == "run already active"
    assert again.run_id == started.run_id
    assert len(await service.repository.list_runs(item_id="ISS-1")) == 1
    await service.runtime.shutdown()


@pytest.mark.asyncio
async def test_concurrent_starts_create_one_run(service, tracker):
    tracker.add_issue("ISS-1", "To Refinement")
    await service.router.route(
        {"eventType": "issue", "action": "create", "itemId": "ISS-1", "status": "To Refinement"}
    )

    results = await asyncio.gather(
        *(service.runtime.start("ISS-1", Phase.REFINEMENT) for _ in range(3)),
        return_exceptions=True,
    )

    started = [r for r in results if not isinstance(r, BaseException)]
    assert len(started) == 1
    await service.runtime.wait(started[0].run_id)


@pytest.mark.asyncio
async def test_cancel_command_releases_blocked_run(service, tracker, generator, eventually):
    tracker.add_issue("ISS-1", "To Refinement")
    generator.refinement = Refinement(summary="s", questions_for_po=["Why?"])

    started = await service.router.route(trigger("ISS-1"))

    async def blocked():
        run = await service.repository.get_run(started.run_id)
        return run.state == RunState.BLOCKED

    await eventually(blocked)
    outcome = await service.router.route(
        {
            "eventType": "comment",
            "action": "create",
            "commentId": "c-9",
            "itemId": "ISS-1",
            "body": "/cancel",
            "authorId": "lead",
        }
    )

    assert outcome.accepted
    assert outcome.command == "/cancel"
    run = await service.repository.get_run(started.run_id)
    assert run.state == RunState.CANCELLED
    pending = await service.repository.list_questions(state=QuestionState.PENDING)
    assert pending == []


@pytest.mark.asyncio
async def test_recover_resumes_blocked_run(service, tracker, generator, eventually, config):
    tracker.add_issue("ISS-1", "To Refinement")
    generator.refinement = Refinement(summary="s", questions_for_po=["Why?"])

    started = await service.router.route(trigger("ISS-1"))

    async def question():
        pending = await service.repository.list_questions(
            run_id=started.run_id, state=QuestionState.PENDING
        )
        run = await service.repository.get_run(started.run_id)
        return pending[0] if pending and run.state == RunState.BLOCKED else None

    pending = await eventually(question)
    # simulate a process restart: drop the in-process task
    await service.runtime.shutdown()
    service.runtime._tasks.clear()

    assert await service.runtime.recover() == [started.run_id]
    await service.router.route(reply("ISS-1", pending.comment_id, "APPROVE", "c-1"))

    outcome = await asyncio.wait_for(service.runtime.wait(started.run_id), 5)
    assert outcome.state == RunState.COMPLETED
    assert generator.called("refine") == 1


@pytest.mark.asyncio
async def test_cancel_from_another_runtime_ends_blocked_run(service, tracker, generator, eventually):
    tracker.add_issue("ISS-1", "To Refinement")
    generator.refinement = Refinement(summary="s", questions_for_po=["Why?"])

    started = await service.router.route(trigger("ISS-1"))

    async def blocked():
        run = await service.repository.get_run(started.run_id)
        return run.state == RunState.BLOCKED

    await eventually(blocked)
    # an operator process shares only the repository and the transport
    operator = PipelineRuntime({}, service.repository, service.transport, service.broker)
    assert await operator.cancel(started.run_id)

    outcome = await asyncio.wait_for(service.runtime.wait(started.run_id), 5)
    assert outcome.state == RunState.CANCELLED
    assert generator.called("refine") == 1
    assert tracker.status_of("ISS-1") == "Refinement In Progress"
