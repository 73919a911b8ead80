"""Refinement phase: turn a raw backlog issue into a refined task."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from ..collaborators import Refinement, SuggestedSplit
from ..contracts import Phase, QuestionType
from ..errors import NonRetryableStepError
from ..executor import Question, Step, StepContext
from .base import PhaseOrchestrator, chunks_markdown, issue_of

logger = logging.getLogger(__name__)

RAG_TOP_K = 10
SAVED_CHUNKS = 5
SPLIT_COMPLEXITIES = ("L", "XL")


def render_refinement(refinement: Refinement) -> str:
    lines = [
        "## Refinement",
        "",
        refinement.summary,
        "",
        f"**Type:** {refinement.task_type}",
        f"**Complexity:** {refinement.complexity_estimate}",
    ]
    if refinement.questions_for_po:
        lines += ["", "### Questions for the PO"]
        lines += [f"- {q}" for q in refinement.questions_for_po]
    if refinement.suggested_split and refinement.suggested_split.proposed_stories:
        lines += ["", "### Suggested split"]
        lines += [f"- {s.title}" for s in refinement.suggested_split.proposed_stories]
    return "\n".join(lines)


def _refinement(ctx: StepContext) -> Optional[Refinement]:
    return ctx.output("generate_refinement", Refinement)


def _split_of(ctx: StepContext) -> Optional[SuggestedSplit]:
    refinement = _refinement(ctx)
    if (
        refinement is None
        or refinement.complexity_estimate not in SPLIT_COMPLEXITIES
        or refinement.suggested_split is None
        or not refinement.suggested_split.proposed_stories
    ):
        return None
    return refinement.suggested_split


class RefinementOrchestrator(PhaseOrchestrator):
    phase = Phase.REFINEMENT

    def steps(self) -> List[Step]:
        return [
            self.sync_step(),
            self.status_step("status_in_progress", "in_progress"),
            Step("get_po_answers", self.get_po_answers),
            Step(
                "retrieve_code_context",
                self.retrieve_code_context,
                feature="rag_context",
                failure="non_blocking",
            ),
            Step(
                "save_codebase_context",
                self.save_codebase_context,
                feature="context_documents",
                when=lambda ctx: bool(ctx.outputs.get("retrieve_code_context")),
                failure="non_blocking",
            ),
            Step(
                "analyze_documentation",
                self.analyze_documentation,
                feature="documentation_analysis",
                failure="non_blocking",
            ),
            Step(
                "save_documentation_context",
                self.save_documentation_context,
                feature="context_documents",
                when=lambda ctx: bool(ctx.outputs.get("analyze_documentation")),
                failure="non_blocking",
            ),
            Step("generate_refinement", self.generate_refinement),
            Step(
                "add_task_type_label",
                self.add_task_type_label,
                when=lambda ctx: bool(issue_of(ctx).team_id),
                failure="non_blocking",
            ),
            Step(
                "update_content",
                self.update_content,
                when=lambda ctx: bool(
                    _refinement(ctx).suggested_title
                    or _refinement(ctx).reformulated_description
                ),
            ),
            Step("append_refinement", self.append_refinement),
            Step(
                "create_subtasks",
                self.create_subtasks,
                feature="subtask_creation",
                when=lambda ctx: _split_of(ctx) is not None,
            ),
            Step(
                "ask_po_questions",
                self.ask_po_questions,
                feature="po_questions",
                when=lambda ctx: bool(_refinement(ctx).questions_for_po),
            ),
            Step(
                "append_po_answers",
                self.append_po_answers,
                when=lambda ctx: bool(ctx.outputs.get("ask_po_questions")),
                failure="non_blocking",
            ),
            self.status_step("status_ready", "ready"),
        ]

    # ------------------------------------------------------------------
    async def get_po_answers(self, ctx: StepContext, _: Any) -> List[Dict[str, str]]:
        return await self.services.tracker.get_po_answers(ctx.item_id)

    async def retrieve_code_context(self, ctx: StepContext, _: Any):
        issue = issue_of(ctx)
        return await self.services.context_store.search(
            f"{issue.title}\n{issue.description}", top_k=RAG_TOP_K
        )

    async def save_codebase_context(self, ctx: StepContext, _: Any) -> int:
        chunks = ctx.outputs["retrieve_code_context"][:SAVED_CHUNKS]
        await self.services.tracker.append_document(
            ctx.item_id, "codebase_context", chunks_markdown(chunks)
        )
        return len(chunks)

    async def analyze_documentation(self, ctx: StepContext, _: Any) -> Optional[str]:
        issue = issue_of(ctx)
        return await self.services.context_store.analyze_documentation(
            f"{issue.title}\n{issue.description}"
        )

    async def save_documentation_context(self, ctx: StepContext, _: Any) -> bool:
        await self.services.tracker.append_document(
            ctx.item_id, "documentation_context", ctx.outputs["analyze_documentation"]
        )
        return True

    async def generate_refinement(self, ctx: StepContext, _: Any) -> Refinement:
        context = {
            "po_answers": ctx.outputs.get("get_po_answers"),
            "code_context": ctx.outputs.get("retrieve_code_context"),
            "documentation": ctx.outputs.get("analyze_documentation"),
        }
        return await self.services.generator.refine(issue_of(ctx), context)

    async def add_task_type_label(self, ctx: StepContext, _: Any) -> str:
        issue = issue_of(ctx)
        label = _refinement(ctx).task_type
        await self.services.tracker.add_label(ctx.item_id, issue.team_id, label)
        return label

    async def update_content(self, ctx: StepContext, _: Any) -> bool:
        refinement = _refinement(ctx)
        await self.services.tracker.update_content(
            ctx.item_id,
            title=refinement.suggested_title or None,
            description=refinement.reformulated_description or None,
        )
        return True

    async def append_refinement(self, ctx: StepContext, _: Any) -> bool:
        await self.services.tracker.append_document(
            ctx.item_id, "refinement", render_refinement(_refinement(ctx))
        )
        return True

    async def create_subtasks(self, ctx: StepContext, _: Any) -> Dict[str, int]:
        stories = _split_of(ctx).proposed_stories
        result = await self.services.tracker.create_subtasks(ctx.item_id, stories)
        if result.failed:
            # partially created children must not be duplicated by a retry
            raise NonRetryableStepError(
                f"Failed to create {len(result.failed)}/{len(stories)} sub-issues"
            )
        return {"total": len(stories), "created": len(result.created), "failed": 0}

    async def ask_po_questions(self, ctx: StepContext, _: Any) -> List[Dict[str, Any]]:
        questions = _refinement(ctx).questions_for_po
        answers = await ctx.ask_all(
            [Question(QuestionType.CLARIFICATION, q) for q in questions]
        )
        return [
            {"question": q, "answer": a.model_dump(mode="json")}
            for q, a in zip(questions, answers)
        ]

    async def append_po_answers(self, ctx: StepContext, _: Any) -> bool:
        lines = ["## PO answers", ""]
        for entry in ctx.outputs["ask_po_questions"]:
            answer = entry["answer"]
            reply = (
                answer.get("custom_text")
                or answer.get("selected_option")
                or answer["response_type"]
            )
            lines.append(f"- **{entry['question']}** {reply}")
        await self.services.tracker.append_document(
            ctx.item_id, "po_answers", "\n".join(lines)
        )
        return True
