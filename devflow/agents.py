"""pydantic-ai backed implementation of the ``Generator`` collaborator."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional, Type, TypeVar

from pydantic_ai import Agent
from pydantic_ai.models import Model

from .config import DevflowConfig
from .contracts import Phase

from .collaborators import (
    AmbiguityReport,
    CodeChanges,
    Refinement,
    TechnicalPlan,
    TrackerIssue,
    UserStory,
)

logger = logging.getLogger(__name__)

OutputT = TypeVar("OutputT")

INSTRUCTIONS: Dict[str, str] = {
    "refine": (
        "You refine backlog issues. Classify the task type, estimate complexity "
        "(XS to XL), rewrite the description when it is unclear, list the "
        "questions the product owner must answer and propose a split for L or XL work."
    ),
    "user_story": (
        "You write a user story with acceptance criteria from a refined issue."
    ),
    "technical_plan": (
        "You write a technical implementation plan from a user story and the "
        "provided code context. List the files that will change."
    ),
    "detect_ambiguity": (
        "Decide whether the plan leaves a design decision open. If it does, "
        "phrase one question with lettered options and mark the one you recommend."
    ),
    "generate_code": (
        "Generate the code changes that implement the technical plan. Report "
        "whether the result validates; when it does not, offer alternative solutions."
    ),
    "best_practices": (
        "Summarise current best practices relevant to the task as Markdown."
    ),
}


TASK_PHASES: Dict[str, Phase] = {
    "refine": Phase.REFINEMENT,
    "user_story": Phase.USER_STORY,
    "technical_plan": Phase.TECHNICAL_PLAN,
    "best_practices": Phase.TECHNICAL_PLAN,
    "detect_ambiguity": Phase.CODE_GENERATION,
    "generate_code": Phase.CODE_GENERATION,
}


def phase_model_overrides(config: DevflowConfig) -> Dict[str, str]:
    """Per-task model names taken from each phase's ``ai_model``."""
    overrides = {}
    for task, phase in TASK_PHASES.items():
        model = config.phase(phase).ai_model
        if model:
            overrides[task] = model
    return overrides


def build_prompt(issue: TrackerIssue, context: Dict[str, Any]) -> str:
    """Render an issue and its gathered context as a prompt."""
    parts = [f"# {issue.identifier or issue.id}: {issue.title}", issue.description]
    for key, value in context.items():
        if value in (None, "", [], {}):
            continue
        if not isinstance(value, str):
            value = json.dumps(value, indent=2, default=str)
        parts.append(f"## {key}\n{value}")
    return "\n\n".join(p for p in parts if p)


class AgentGenerator:
    """Generate phase artifacts with one ``pydantic_ai.Agent`` per output type."""

    def __init__(self, model: Model | str, model_overrides: Optional[Dict[str, Model | str]] = None):
        self.model = model
        self.model_overrides = model_overrides or {}
        self._agents: Dict[str, Agent] = {}

    @classmethod
    def from_config(
        cls, config: DevflowConfig, model: Model | str | None = None
    ) -> "AgentGenerator":
        """Build a generator using ``config.ai_model`` and the per-phase models.

        An explicit ``model`` replaces the configured default; phase models
        still apply to their tasks.
        """
        if model is None:
            model = config.ai_model
        if model is None:
            raise ValueError("No AI model configured; set ai_model")
        return cls(model, model_overrides=phase_model_overrides(config))

    def _agent(self, task: str, output_type: Type[OutputT]) -> Agent[None, OutputT]:
        agent = self._agents.get(task)
        if agent is None:
            agent = Agent(
                self.model_overrides.get(task, self.model),
                output_type=output_type,
                instructions=INSTRUCTIONS[task],
                name=f"devflow-{task}",
            )
            self._agents[task] = agent
        return agent

    async def _run(self, task: str, output_type: Type[OutputT], prompt: str) -> OutputT:
        logger.debug(f"Running {task} agent")
        result = await self._agent(task, output_type).run(prompt)
        return result.output

    async def refine(self, issue: TrackerIssue, context: Dict[str, Any]) -> Refinement:
        return await self._run("refine", Refinement, build_prompt(issue, context))

    async def user_story(self, issue: TrackerIssue, context: Dict[str, Any]) -> UserStory:
        return await self._run("user_story", UserStory, build_prompt(issue, context))

    async def technical_plan(
        self, issue: TrackerIssue, context: Dict[str, Any]
    ) -> TechnicalPlan:
        return await self._run(
            "technical_plan", TechnicalPlan, build_prompt(issue, context)
        )

    async def detect_ambiguity(
        self, issue: TrackerIssue, context: Dict[str, Any]
    ) -> AmbiguityReport:
        return await self._run(
            "detect_ambiguity", AmbiguityReport, build_prompt(issue, context)
        )

    async def generate_code(
        self, issue: TrackerIssue, context: Dict[str, Any]
    ) -> CodeChanges:
        return await self._run("generate_code", CodeChanges, build_prompt(issue, context))

    async def best_practices(self, issue: TrackerIssue, query: str) -> str:
        return await self._run(
            "best_practices", str, build_prompt(issue, {"query": query})
        )
