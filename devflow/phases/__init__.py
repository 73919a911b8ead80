"""Phase orchestrators."""

from __future__ import annotations

from typing import Dict

from ..contracts import Phase
from .base import PhaseOrchestrator, PhaseServices
from .code_generation import CodeGenerationOrchestrator
from .refinement import RefinementOrchestrator
from .technical_plan import TechnicalPlanOrchestrator
from .user_story import UserStoryOrchestrator

ORCHESTRATORS = {
    Phase.REFINEMENT: RefinementOrchestrator,
    Phase.USER_STORY: UserStoryOrchestrator,
    Phase.TECHNICAL_PLAN: TechnicalPlanOrchestrator,
    Phase.CODE_GENERATION: CodeGenerationOrchestrator,
}


def build_orchestrators(services: PhaseServices) -> Dict[Phase, PhaseOrchestrator]:
    return {phase: cls(services) for phase, cls in ORCHESTRATORS.items()}


__all__ = [
    "CodeGenerationOrchestrator",
    "PhaseOrchestrator",
    "PhaseServices",
    "RefinementOrchestrator",
    "TechnicalPlanOrchestrator",
    "UserStoryOrchestrator",
    "build_orchestrators",
]
