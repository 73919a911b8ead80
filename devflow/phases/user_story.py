"""User-story phase: write the story for a refined issue, or split it."""

from __future__ import annotations

from typing import Any, List, Optional

from ..collaborators import Refinement, SuggestedSplit, UserStory
from ..contracts import Phase, RunState
from ..errors import NonRetryableStepError
from ..executor import Step, StepContext
from .base import PhaseOrchestrator, issue_of
from .refinement import SPLIT_COMPLEXITIES


def render_user_story(story: UserStory) -> str:
    lines = ["## User Story", "", story.content]
    if story.acceptance_criteria:
        lines += ["", "### Acceptance criteria"]
        lines += [f"- [ ] {c}" for c in story.acceptance_criteria]
    return "\n".join(lines)


def _split_of(ctx: StepContext) -> Optional[SuggestedSplit]:
    data = ctx.outputs.get("load_refinement") or {}
    structured = data.get("refinement")
    if not structured:
        return None
    refinement = Refinement.model_validate(structured)
    if (
        refinement.complexity_estimate in SPLIT_COMPLEXITIES
        and refinement.suggested_split
        and refinement.suggested_split.proposed_stories
    ):
        return refinement.suggested_split
    return None


class UserStoryOrchestrator(PhaseOrchestrator):
    phase = Phase.USER_STORY

    def steps(self) -> List[Step]:
        def not_split(ctx: StepContext) -> bool:
            return not ctx.outputs.get("split_into_subtasks")

        return [
            self.sync_step(),
            self.status_step("status_in_progress", "in_progress"),
            Step("load_refinement", self.load_refinement),
            self.document_step(
                "load_codebase_context",
                "codebase_context",
                feature="reuse_codebase_context",
            ),
            self.document_step(
                "load_documentation_context",
                "documentation_context",
                feature="reuse_documentation_context",
            ),
            Step(
                "split_into_subtasks",
                self.split_into_subtasks,
                feature="task_splitting",
                when=lambda ctx: _split_of(ctx) is not None,
            ),
            Step("generate_user_story", self.generate_user_story, when=not_split),
            Step("append_user_story", self.append_user_story, when=not_split),
            self.status_step("status_ready", "ready"),
        ]

    async def _latest_refinement(self, item_id: str) -> Optional[dict]:
        """Structured output of the item's last completed refinement run."""
        repository = self.services.repository
        runs = [
            r
            for r in await repository.list_runs(item_id=item_id)
            if r.phase == Phase.REFINEMENT and r.state == RunState.COMPLETED
        ]
        for summary in sorted(runs, key=lambda r: r.created_at, reverse=True):
            run = await repository.get_run(summary.run_id)
            step = run.finished_step("generate_refinement") if run else None
            if step is not None and step.output:
                return step.output
        return None

    async def load_refinement(self, ctx: StepContext, _: Any) -> dict:
        document = await self.services.tracker.get_document(ctx.item_id, "refinement")
        structured = await self._latest_refinement(ctx.item_id)
        if document is None and structured is None:
            raise NonRetryableStepError(f"No refinement found for {ctx.item_id}")
        return {"document": document, "refinement": structured}

    async def split_into_subtasks(self, ctx: StepContext, _: Any) -> dict:
        split = _split_of(ctx)
        result = await self.services.tracker.create_subtasks(
            ctx.item_id, split.proposed_stories
        )
        if result.failed:
            raise NonRetryableStepError(
                f"Failed to create {len(result.failed)}/{len(split.proposed_stories)} sub-issues"
            )
        titles = "\n".join(f"- {s.title}" for s in split.proposed_stories)
        await self.services.tracker.add_comment(
            ctx.item_id,
            f"This task was split into {len(result.created)} sub-issues:\n\n{titles}\n\n{split.reason}".rstrip()
            + "\n",
        )
        return {"created": result.created}

    async def generate_user_story(self, ctx: StepContext, _: Any) -> UserStory:
        context = {
            "refinement": ctx.outputs["load_refinement"]["document"],
            "codebase_context": ctx.outputs.get("load_codebase_context"),
            "documentation_context": ctx.outputs.get("load_documentation_context"),
        }
        return await self.services.generator.user_story(issue_of(ctx), context)

    async def append_user_story(self, ctx: StepContext, _: Any) -> bool:
        story = ctx.output("generate_user_story", UserStory)
        await self.services.tracker.append_document(
            ctx.item_id, "user_story", render_user_story(story)
        )
        return True
