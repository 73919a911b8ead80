"""Technical-plan phase."""

from __future__ import annotations

from typing import Any, List, Optional

from ..collaborators import TechnicalPlan
from ..contracts import Phase
from ..executor import Step, StepContext
from .base import PhaseOrchestrator, issue_of


def render_plan(plan: TechnicalPlan) -> str:
    lines = ["## Technical Plan", "", plan.content]
    if plan.files_affected:
        lines += ["", "### Files affected"]
        lines += [f"- `{path}`" for path in plan.files_affected]
    return "\n".join(lines)


class TechnicalPlanOrchestrator(PhaseOrchestrator):
    phase = Phase.TECHNICAL_PLAN

    def steps(self) -> List[Step]:
        return [
            self.sync_step(),
            self.status_step("status_in_progress", "in_progress"),
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
            self.document_step("load_user_story", "user_story", failure="blocking"),
            Step(
                "fetch_best_practices",
                self.fetch_best_practices,
                feature="best_practices_query",
                failure="non_blocking",
            ),
            Step(
                "save_best_practices",
                self.save_best_practices,
                feature="best_practices_query",
                when=lambda ctx: bool(ctx.outputs.get("fetch_best_practices")),
                failure="non_blocking",
            ),
            Step("generate_plan", self.generate_plan),
            Step("append_plan", self.append_plan),
            self.status_step("status_ready", "ready"),
        ]

    async def fetch_best_practices(self, ctx: StepContext, _: Any) -> Optional[str]:
        issue = issue_of(ctx)
        return await self.services.generator.best_practices(issue, issue.title)

    async def save_best_practices(self, ctx: StepContext, _: Any) -> bool:
        await self.services.tracker.append_document(
            ctx.item_id, "best_practices", ctx.outputs["fetch_best_practices"]
        )
        return True

    async def generate_plan(self, ctx: StepContext, _: Any) -> TechnicalPlan:
        context = {
            "user_story": ctx.outputs["load_user_story"],
            "codebase_context": ctx.outputs.get("load_codebase_context"),
            "documentation_context": ctx.outputs.get("load_documentation_context"),
            "best_practices": ctx.outputs.get("fetch_best_practices"),
        }
        return await self.services.generator.technical_plan(issue_of(ctx), context)

    async def append_plan(self, ctx: StepContext, _: Any) -> bool:
        plan = ctx.output("generate_plan", TechnicalPlan)
        await self.services.tracker.append_document(
            ctx.item_id, "technical_plan", render_plan(plan)
        )
        return True
