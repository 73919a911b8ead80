"""Code-generation phase: generate changes and open a draft pull request.

Three points may ask a human before continuing: an open design question
found in the plan, a choice between alternative solutions when the
generated code does not validate, and a final approval before the pull
request is opened. A timed-out clarification or solution choice falls back
to the recommended option; a rejected or timed-out approval aborts the run.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional, Sequence

from ..collaborators import AmbiguityReport, CodeChanges, PullRequest
from ..contracts import Phase, QuestionOption, QuestionType, ResponseType, SignalPayload
from ..errors import NonRetryableStepError
from ..executor import Step, StepContext
from .base import PhaseOrchestrator, issue_of

logger = logging.getLogger(__name__)

PREVIEW_LINES = 20


def recommended_option(options: Sequence[QuestionOption]) -> Optional[QuestionOption]:
    for option in options:
        if option.recommended:
            return option
    return options[0] if options else None


def resolve_choice(
    answer: SignalPayload, options: Sequence[QuestionOption]
) -> Dict[str, Any]:
    """Translate an answer into the decision the generator should follow."""
    if answer.response_type == ResponseType.OPTION_SELECTED:
        for option in options:
            if option.id.upper() == (answer.selected_option or "").upper():
                return {"option": option.id, "label": option.label, "source": "human"}
    if answer.response_type in (ResponseType.CUSTOM_TEXT, ResponseType.REJECTED):
        if answer.custom_text:
            return {"option": None, "label": answer.custom_text, "source": "human"}
    fallback = recommended_option(options)
    return {
        "option": fallback.id if fallback else None,
        "label": fallback.label if fallback else "",
        "source": "default",
    }


def render_preview(changes: CodeChanges) -> str:
    lines = [f"**{len(changes.files)} file(s)**", ""]
    for f in changes.files:
        symbol = {"create": "+", "delete": "-"}.get(f.action, "~")
        lines.append(f"**{symbol} {f.path}** ({f.action})")
        if f.content:
            snippet = "\n".join(f.content.splitlines()[:PREVIEW_LINES])
            lines += ["```", snippet, "```"]
    if changes.summary:
        lines += ["", changes.summary]
    return "\n".join(lines)


def branch_name(identifier: str, title: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")[:40]
    prefix = (identifier or "task").lower()
    return f"devflow/{prefix}-{slug}" if slug else f"devflow/{prefix}"


class CodeGenerationOrchestrator(PhaseOrchestrator):
    phase = Phase.CODE_GENERATION

    def steps(self) -> List[Step]:
        return [
            self.sync_step(),
            self.status_step("status_in_progress", "in_progress"),
            self.document_step("load_plan", "technical_plan", failure="blocking"),
            self.document_step(
                "load_codebase_context",
                "codebase_context",
                feature="reuse_codebase_context",
            ),
            Step(
                "clarify_ambiguity",
                self.clarify_ambiguity,
                feature="ambiguity_detection",
            ),
            Step("generate_code", self.generate_code),
            Step(
                "choose_solution",
                self.choose_solution,
                feature="solution_choice",
                when=lambda ctx: self._needs_choice(ctx),
            ),
            Step("pre_pr_approval", self.pre_pr_approval, feature="pre_pr_approval"),
            Step("open_pull_request", self.open_pull_request),
            self.status_step("status_review", "ready"),
        ]

    @staticmethod
    def _needs_choice(ctx: StepContext) -> bool:
        changes = ctx.output("generate_code", CodeChanges)
        return not changes.validation_passed and bool(changes.solution_options)

    @staticmethod
    def _final_changes(ctx: StepContext) -> CodeChanges:
        return ctx.output("choose_solution", CodeChanges) or ctx.output(
            "generate_code", CodeChanges
        )

    def _context(self, ctx: StepContext) -> Dict[str, Any]:
        return {
            "technical_plan": ctx.outputs["load_plan"],
            "codebase_context": ctx.outputs.get("load_codebase_context"),
            "clarification": ctx.outputs.get("clarify_ambiguity"),
        }

    # ------------------------------------------------------------------
    async def clarify_ambiguity(self, ctx: StepContext, _: Any) -> Optional[Dict[str, Any]]:
        report: AmbiguityReport = await self.services.generator.detect_ambiguity(
            issue_of(ctx), self._context(ctx)
        )
        if not report.ambiguous or not report.question:
            return None
        answer = await ctx.ask(
            QuestionType.CLARIFICATION, report.question, report.options
        )
        decision = resolve_choice(answer, report.options)
        logger.info(
            f"Clarification for run_id={ctx.run_id} resolved by {decision['source']}"
        )
        return {"question": report.question, **decision}

    async def generate_code(self, ctx: StepContext, _: Any) -> CodeChanges:
        return await self.services.generator.generate_code(
            issue_of(ctx), self._context(ctx)
        )

    async def choose_solution(self, ctx: StepContext, _: Any) -> CodeChanges:
        changes = ctx.output("generate_code", CodeChanges)
        answer = await ctx.ask(
            QuestionType.SOLUTION_CHOICE,
            "The generated code did not pass validation. Which approach should be used?",
            changes.solution_options,
        )
        decision = resolve_choice(answer, changes.solution_options)
        context = {**self._context(ctx), "solution": decision}
        return await self.services.generator.generate_code(issue_of(ctx), context)

    async def pre_pr_approval(self, ctx: StepContext, _: Any) -> Dict[str, Any]:
        changes = self._final_changes(ctx)
        answer = await ctx.ask(
            QuestionType.APPROVAL,
            f"Create a pull request for {changes.pr_title or issue_of(ctx).title}?",
            preview=render_preview(changes),
        )
        if answer.response_type == ResponseType.APPROVED:
            return {"approved": True, "by": answer.responded_by}
        if answer.response_type == ResponseType.TIMEOUT:
            raise NonRetryableStepError("Pre-PR approval timed out")
        raise NonRetryableStepError(
            f"Changes rejected by {answer.responded_by}: {answer.custom_text}"
        )

    async def open_pull_request(self, ctx: StepContext, _: Any) -> PullRequest:
        issue = issue_of(ctx)
        changes = self._final_changes(ctx)
        return await self.services.source_control.open_pull_request(
            branch=branch_name(issue.identifier, issue.title),
            title=changes.pr_title or issue.title,
            commit_message=changes.commit_message or f"{issue.identifier}: {issue.title}",
            files=changes.files,
            draft=True,
        )
