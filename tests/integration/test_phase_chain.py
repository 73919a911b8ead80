"""User-story, technical-plan and code-generation runs, and parent cascades."""

import asyncio

import pytest

from devflow.collaborators import (
    AmbiguityReport,
    CodeChanges,
    GeneratedFile,
    ProposedStory,
    Refinement,
    SuggestedSplit,
)
from devflow.config import PhaseConfig
from devflow.contracts import Phase, QuestionOption, QuestionState, QuestionType, RunState
from devflow.errors import PhaseFailedError


def issue_event(item_id, status, action="update"):
    return {"eventType": "issue", "action": action, "itemId": item_id, "status": status}


class Replier:
    """Answer the questions of a run one at a time, as a PO would."""

    def __init__(self, service, eventually, item_id="ISS-1"):
        self.service = service
        self.eventually = eventually
        self.item_id = item_id
        self.count = 0

    async def next_question(self, run_id):
        repository = self.service.repository

        async def pending():
            questions = await repository.list_questions(
                run_id=run_id, state=QuestionState.PENDING
            )
            return questions[0] if questions else None

        return await self.eventually(pending)

    async def answer(self, run_id, body):
        question = await self.next_question(run_id)
        self.count += 1
        outcome = await self.service.router.route(
            {
                "eventType": "comment",
                "action": "create",
                "commentId": f"reply-{self.count}",
                "itemId": self.item_id,
                "parentCommentId": question.comment_id,
                "body": body,
                "authorId": "po-user",
            }
        )
        assert outcome.accepted, outcome
        return question


async def _run_phase(service, item_id, status):
    tracker = service.broker.tracker
    tracker.issues[item_id].status = status
    started = await service.router.route(issue_event(item_id, status))
    assert started.accepted, started
    return started.run_id


@pytest.mark.asyncio
async def test_issue_travels_from_refinement_to_pull_request(
    service, tracker, generator, source_control, eventually
):
    tracker.add_issue("ISS-1", "To Refinement", title="Add CSV export")
    replier = Replier(service, eventually)

    run_id = await _run_phase(service, "ISS-1", "To Refinement")
    assert (await service.runtime.wait(run_id)).state == RunState.COMPLETED
    assert tracker.status_of("ISS-1") == "Refinement Ready"

    run_id = await _run_phase(service, "ISS-1", "To User Story")
    assert (await service.runtime.wait(run_id)).state == RunState.COMPLETED
    assert tracker.status_of("ISS-1") == "UserStory Ready"
    assert "- [ ] works" in await tracker.get_document("ISS-1", "user_story")

    run_id = await _run_phase(service, "ISS-1", "To Plan")
    assert (await service.runtime.wait(run_id)).state == RunState.COMPLETED
    assert tracker.status_of("ISS-1") == "Plan Ready"
    assert "`app.py`" in await tracker.get_document("ISS-1", "technical_plan")
    assert await tracker.get_document("ISS-1", "best_practices") == "Prefer small functions."

    run_id = await _run_phase(service, "ISS-1", "To Code")
    approval = await replier.answer(run_id, "APPROVE")
    outcome = await asyncio.wait_for(service.runtime.wait(run_id), 5)

    assert approval.question_type == QuestionType.APPROVAL
    assert outcome.state == RunState.COMPLETED
    assert tracker.status_of("ISS-1") == "Code Review"
    assert len(source_control.pull_requests) == 1
    pr = source_control.pull_requests[0]
    assert pr["branch"] == "devflow/iss-1-add-csv-export"
    assert pr["draft"] is True
    assert outcome.outputs["open_pull_request"]["url"] == "https://git.example/pr/1"


@pytest.mark.asyncio
async def test_user_story_splits_large_refinement(service, tracker, generator):
    tracker.add_issue("ISS-1", "To Refinement")
    generator.refinement = Refinement(
        summary="Big",
        complexity_estimate="XL",
        suggested_split=SuggestedSplit(
            reason="Two teams", proposed_stories=[ProposedStory(title="API")]
        ),
    )
    service.config.phases.clear()
    service.config.phases[Phase.REFINEMENT] = PhaseConfig(
        features={"subtask_creation": False}
    )

    run_id = await _run_phase(service, "ISS-1", "To Refinement")
    await service.runtime.wait(run_id)
    assert tracker.subtasks == []

    run_id = await _run_phase(service, "ISS-1", "To User Story")
    outcome = await service.runtime.wait(run_id)

    assert outcome.state == RunState.COMPLETED
    assert tracker.subtasks == [("ISS-1", ["API"])]
    assert any("split into 1 sub-issues" in c for c in tracker.comments_on("ISS-1"))
    assert generator.called("user_story") == 0
    assert await tracker.get_document("ISS-1", "user_story") is None


@pytest.mark.asyncio
async def test_plan_without_user_story_fails(service, tracker):
    tracker.add_issue("ISS-1", "To Plan")

    run_id = await _run_phase(service, "ISS-1", "To Plan")

    with pytest.raises(PhaseFailedError) as excinfo:
        await service.runtime.wait(run_id)
    assert excinfo.value.step_name == "load_user_story"
    assert tracker.status_of("ISS-1") == "Plan Failed"


@pytest.mark.asyncio
async def test_code_generation_asks_for_clarification_and_solution(
    service, tracker, generator, source_control, eventually
):
    tracker.add_issue("ISS-1", "To Code", title="Sync job")
    await tracker.append_document("ISS-1", "technical_plan", "## Technical Plan\nDo it")
    generator.ambiguity = AmbiguityReport(
        ambiguous=True,
        question="Run the job with a queue or cron?",
        options=[
            QuestionOption(id="A", label="Queue", recommended=True),
            QuestionOption(id="B", label="Cron"),
        ],
    )
    generator.code = [
        CodeChanges(
            validation_passed=False,
            solution_options=[
                QuestionOption(id="A", label="Retry wrapper"),
                QuestionOption(id="B", label="Idempotent writes", recommended=True),
            ],
        ),
        CodeChanges(
            files=[GeneratedFile(path="jobs.py", action="create", content="x = 1\n")],
            pr_title="Add sync job",
        ),
    ]
    replier = Replier(service, eventually)

    run_id = await _run_phase(service, "ISS-1", "To Code")
    clarification = await replier.answer(run_id, "OPTION:B")
    choice = await replier.answer(run_id, "option:a")
    approval = await replier.answer(run_id, "APPROVE")
    outcome = await asyncio.wait_for(service.runtime.wait(run_id), 5)

    assert [q.question_type for q in (clarification, choice, approval)] == [
        QuestionType.CLARIFICATION,
        QuestionType.SOLUTION_CHOICE,
        QuestionType.APPROVAL,
    ]
    assert outcome.state == RunState.COMPLETED
    assert outcome.outputs["clarify_ambiguity"]["label"] == "Cron"
    code_calls = [c for c in generator.calls if c[0] == "generate_code"]
    assert code_calls[-1][2]["solution"] == {
        "option": "A",
        "label": "Retry wrapper",
        "source": "human",
    }
    assert source_control.pull_requests[0]["title"] == "Add sync job"
    approval_comment = [c for c in tracker.comments_on("ISS-1") if "Approval Request" in c][0]
    assert "**+ jobs.py** (create)" in approval_comment


@pytest.mark.asyncio
async def test_rejected_approval_fails_without_pull_request(
    service, tracker, source_control, eventually
):
    tracker.add_issue("ISS-1", "To Code")
    await tracker.append_document("ISS-1", "technical_plan", "plan")
    replier = Replier(service, eventually)

    run_id = await _run_phase(service, "ISS-1", "To Code")
    await replier.answer(run_id, "REJECT: wrong module")

    with pytest.raises(PhaseFailedError) as excinfo:
        await asyncio.wait_for(service.runtime.wait(run_id), 5)

    assert excinfo.value.step_name == "pre_pr_approval"
    assert "wrong module" in str(excinfo.value)
    assert tracker.status_of("ISS-1") == "Code Failed"
    assert source_control.pull_requests == []


@pytest.mark.asyncio
async def test_unanswered_approval_times_out(service, tracker, source_control, config):
    config.questions.timeout_hours = 0
    tracker.add_issue("ISS-1", "To Code")
    await tracker.append_document("ISS-1", "technical_plan", "plan")

    run_id = await _run_phase(service, "ISS-1", "To Code")

    with pytest.raises(PhaseFailedError) as excinfo:
        await asyncio.wait_for(service.runtime.wait(run_id), 5)

    assert "timed out" in str(excinfo.value)
    assert tracker.status_of("ISS-1") == "Code Failed"
    questions = await service.repository.list_questions(run_id=run_id)
    assert [q.state for q in questions] == [QuestionState.TIMED_OUT]


@pytest.mark.asyncio
async def test_parent_trigger_cascades_to_children(service, tracker):
    tracker.add_issue("P", "Refinement Ready")
    for child in ("C1", "C2", "C3"):
        status = "Plan Ready" if child == "C3" else "Refinement Ready"
        tracker.add_issue(child, status, parent_id="P")
        await tracker.append_document(child, "refinement", "## Refinement\nok")
        await service.router.route(
            {**issue_event(child, status, action="create"), "parentId": "P"}
        )
    await service.router.route(issue_event("P", "Refinement Ready", action="create"))

    outcome = await service.router.route(issue_event("P", "To User Story"))

    assert outcome.accepted
    assert outcome.reason == "cascaded"
    assert outcome.cascaded.children_count == 3
    assert sorted(outcome.cascaded.cascaded_ids) == ["C1", "C2"]
    assert outcome.cascaded.skipped_ids == ["C3"]

    assert await service.repository.list_runs(item_id="P") == []
    for child in ("C1", "C2"):
        runs = await service.repository.list_runs(item_id=child)
        assert len(runs) == 1
        result = await service.runtime.wait(runs[0].run_id)
        assert result.state == RunState.COMPLETED
        assert tracker.status_of(child) == "UserStory Ready"
    assert tracker.status_of("C3") == "Plan Ready"


@pytest.mark.asyncio
async def test_last_child_ready_rolls_parent_up(service, tracker):
    tracker.add_issue("P", "UserStory In Progress")
    await service.router.route(issue_event("P", "UserStory In Progress", action="create"))
    for child in ("C1", "C2"):
        tracker.add_issue(child, "UserStory In Progress", parent_id="P")
        await service.router.route(
            {**issue_event(child, "UserStory In Progress", action="create"), "parentId": "P"}
        )

    # status updates leave out parentId; the stored link is kept
    await service.router.route(issue_event("C1", "UserStory Ready"))
    assert [c.id for c in await service.repository.list_children("P")] == ["C1", "C2"]
    assert (await service.repository.get_item("P")).status == "UserStory In Progress"

    await service.router.route(issue_event("C2", "UserStory Ready"))
    assert (await service.repository.get_item("P")).status == "To Plan"
    assert tracker.status_of("P") == "To Plan"
