"""Interfaces of the external systems the pipeline drives.

The tracker, the AI generator, the code-context store and source control are
implemented outside devflow. Phases only talk to them through the protocols
below, and everything they exchange is a pydantic model so step outputs can
be persisted and reused on resume.
"""

from __future__ import annotations

from typing import Dict, List, Literal, Optional, Protocol

from pydantic import BaseModel, Field

from .contracts import QuestionOption

Complexity = Literal["XS", "S", "M", "L", "XL"]


class TrackerIssue(BaseModel):
    """Issue as returned by the tracker."""

    id: str
    identifier: str = ""
    title: str = ""
    description: str = ""
    status: str
    parent_id: Optional[str] = None
    team_id: Optional[str] = None
    labels: List[str] = Field(default_factory=list)
    priority: Optional[int] = None


class ContextChunk(BaseModel):
    path: str
    content: str
    score: float = 0.0


class ProposedStory(BaseModel):
    title: str
    description: str = ""


class SuggestedSplit(BaseModel):
    reason: str = ""
    proposed_stories: List[ProposedStory] = Field(default_factory=list)


class Refinement(BaseModel):
    """Output of the refinement generator."""

    task_type: str = "feature"
    summary: str
    suggested_title: Optional[str] = None
    reformulated_description: Optional[str] = None
    complexity_estimate: Complexity = "M"
    questions_for_po: List[str] = Field(default_factory=list)
    suggested_split: Optional[SuggestedSplit] = None


class UserStory(BaseModel):
    content: str
    acceptance_criteria: List[str] = Field(default_factory=list)


class TechnicalPlan(BaseModel):
    content: str
    files_affected: List[str] = Field(default_factory=list)


class AmbiguityReport(BaseModel):
    """Design ambiguity found before generating code."""

    ambiguous: bool = False
    question: str = ""
    options: List[QuestionOption] = Field(default_factory=list)


class GeneratedFile(BaseModel):
    path: str
    action: Literal["create", "modify", "delete"] = "modify"
    content: str = ""


class CodeChanges(BaseModel):
    files: List[GeneratedFile] = Field(default_factory=list)
    commit_message: str = ""
    pr_title: str = ""
    summary: str = ""
    validation_passed: bool = True
    solution_options: List[QuestionOption] = Field(default_factory=list)


class SubtaskResult(BaseModel):
    created: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)


class PullRequest(BaseModel):
    branch: str
    url: str
    number: Optional[int] = None


class TrackerClient(Protocol):
    """Issue tracker operations used by the phases."""

    async def get_issue(self, item_id: str) -> TrackerIssue: ...

    async def update_status(self, item_id: str, status: str) -> None: ...

    async def add_comment(
        self, item_id: str, body: str, parent_comment_id: Optional[str] = None
    ) -> str:
        """Post a comment and return its id."""
        ...

    async def add_label(self, item_id: str, team_id: str, label: str) -> None: ...

    async def update_content(
        self,
        item_id: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
    ) -> None: ...

    async def append_document(self, item_id: str, kind: str, content: str) -> None:
        """Attach a phase document (refinement, user story, plan, context)."""
        ...

    async def get_document(self, item_id: str, kind: str) -> Optional[str]: ...

    async def get_po_answers(self, item_id: str) -> List[Dict[str, str]]:
        """Return earlier PO question/answer pairs for the issue."""
        ...

    async def create_subtasks(
        self, parent_id: str, stories: List[ProposedStory]
    ) -> SubtaskResult: ...


class Generator(Protocol):
    """AI generation backend."""

    async def refine(self, issue: TrackerIssue, context: Dict[str, object]) -> Refinement: ...

    async def user_story(
        self, issue: TrackerIssue, context: Dict[str, object]
    ) -> UserStory: ...

    async def technical_plan(
        self, issue: TrackerIssue, context: Dict[str, object]
    ) -> TechnicalPlan: ...

    async def detect_ambiguity(
        self, issue: TrackerIssue, context: Dict[str, object]
    ) -> AmbiguityReport: ...

    async def generate_code(
        self, issue: TrackerIssue, context: Dict[str, object]
    ) -> CodeChanges: ...

    async def best_practices(self, issue: TrackerIssue, query: str) -> str: ...


class ContextStore(Protocol):
    """Retrieval over indexed code and documentation."""

    async def search(self, query: str, top_k: int = 10) -> List[ContextChunk]: ...

    async def analyze_documentation(self, query: str) -> Optional[str]: ...


class SourceControl(Protocol):
    """Branch, commit and pull request operations."""

    async def open_pull_request(
        self,
        branch: str,
        title: str,
        commit_message: str,
        files: List[GeneratedFile],
        draft: bool = True,
    ) -> PullRequest: ...
