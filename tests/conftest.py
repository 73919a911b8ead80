"""Shared fakes and fixtures for the devflow test-suite."""

import asyncio
from typing import Dict, List, Optional

import pytest

from devflow.collaborators import (
    AmbiguityReport,
    CodeChanges,
    ContextChunk,
    GeneratedFile,
    ProposedStory,
    PullRequest,
    Refinement,
    SubtaskResult,
    TechnicalPlan,
    TrackerIssue,
    UserStory,
)
import devflow.persistence as persistence
from devflow.config import DevflowConfig, QuestionConfig, StepDefaults
from devflow.persistence import InMemoryWorkflowRepository
from devflow.service import build_service
from devflow.transports import InMemoryTransport


class InspectableTransport(InMemoryTransport):
    """In-memory transport whose queue depth tests can assert on."""

    def pending(self, topic: str) -> int:
        return len(self._queues.get(topic, ()))


class FakeTracker:
    """Tracker that keeps issues, comments and documents in memory."""

    def __init__(self) -> None:
        self.issues: Dict[str, TrackerIssue] = {}
        self.comments: List[Dict[str, Optional[str]]] = []
        self.documents: Dict[tuple, List[str]] = {}
        self.status_history: List[tuple] = []
        self.labels: List[tuple] = []
        self.content_updates: List[Dict[str, Optional[str]]] = []
        self.subtasks: List[tuple] = []
        self.po_answers: List[Dict[str, str]] = []
        self.fail_subtasks = 0

    def add_issue(self, item_id: str, status: str, **fields) -> TrackerIssue:
        issue = TrackerIssue(
            id=item_id,
            identifier=fields.pop("identifier", item_id.upper()),
            title=fields.pop("title", f"Issue {item_id}"),
            status=status,
            **fields,
        )
        self.issues[item_id] = issue
        return issue

    def status_of(self, item_id: str) -> str:
        return self.issues[item_id].status

    def comments_on(self, item_id: str) -> List[str]:
        return [c["body"] for c in self.comments if c["item_id"] == item_id]

    async def get_issue(self, item_id: str) -> TrackerIssue:
        return self.issues[item_id].model_copy()

    async def update_status(self, item_id: str, status: str) -> None:
        self.status_history.append((item_id, status))
        if item_id in self.issues:
            self.issues[item_id].status = status

    async def add_comment(
        self, item_id: str, body: str, parent_comment_id: Optional[str] = None
    ) -> str:
        comment_id = f"comment-{len(self.comments) + 1}"
        self.comments.append(
            {"id": comment_id, "item_id": item_id, "body": body, "parent": parent_comment_id}
        )
        return comment_id

    async def add_label(self, item_id: str, team_id: str, label: str) -> None:
        self.labels.append((item_id, team_id, label))

    async def update_content(self, item_id, title=None, description=None) -> None:
        self.content_updates.append(
            {"item_id": item_id, "title": title, "description": description}
        )

    async def append_document(self, item_id: str, kind: str, content: str) -> None:
        self.documents.setdefault((item_id, kind), []).append(content)

    async def get_document(self, item_id: str, kind: str) -> Optional[str]:
        parts = self.documents.get((item_id, kind))
        return "\n\n".join(parts) if parts else None

    async def get_po_answers(self, item_id: str) -> List[Dict[str, str]]:
        return list(self.po_answers)

    async def create_subtasks(
        self, parent_id: str, stories: List[ProposedStory]
    ) -> SubtaskResult:
        self.subtasks.append((parent_id, [s.title for s in stories]))
        failed = [s.title for s in stories[: self.fail_subtasks]]
        created = [f"{parent_id}-sub-{i}" for i, _ in enumerate(stories[len(failed):])]
        return SubtaskResult(created=created, failed=failed)


class FakeGenerator:
    """Generator returning canned artifacts and recording its calls."""

    def __init__(self) -> None:
        self.refinement = Refinement(summary="Refined summary")
        self.story = UserStory(content="As a user I want it", acceptance_criteria=["works"])
        self.plan = TechnicalPlan(content="Change the handler", files_affected=["app.py"])
        self.ambiguity = AmbiguityReport()
        self.code = [
            CodeChanges(
                files=[GeneratedFile(path="app.py", content="print('hi')\n")],
                commit_message="Implement feature",
                pr_title="Implement feature",
            )
        ]
        self.refine_error: Optional[Exception] = None
        self.calls: List[tuple] = []

    async def refine(self, issue, context) -> Refinement:
        self.calls.append(("refine", issue.id, context))
        if self.refine_error is not None:
            raise self.refine_error
        return self.refinement

    async def user_story(self, issue, context) -> UserStory:
        self.calls.append(("user_story", issue.id, context))
        return self.story

    async def technical_plan(self, issue, context) -> TechnicalPlan:
        self.calls.append(("technical_plan", issue.id, context))
        return self.plan

    async def detect_ambiguity(self, issue, context) -> AmbiguityReport:
        self.calls.append(("detect_ambiguity", issue.id, context))
        return self.ambiguity

    async def generate_code(self, issue, context) -> CodeChanges:
        self.calls.append(("generate_code", issue.id, context))
        generated = len([c for c in self.calls if c[0] == "generate_code"])
        return self.code[min(generated, len(self.code)) - 1]

    async def best_practices(self, issue, query: str) -> str:
        self.calls.append(("best_practices", issue.id, query))
        return "Prefer small functions."

    def called(self, name: str) -> int:
        return len([c for c in self.calls if c[0] == name])


class FakeContextStore:
    def __init__(self) -> None:
        self.chunks: List[ContextChunk] = []
        self.documentation: Optional[str] = None

    async def search(self, query: str, top_k: int = 10) -> List[ContextChunk]:
        return self.chunks[:top_k]

    async def analyze_documentation(self, query: str) -> Optional[str]:
        return self.documentation


class FakeSourceControl:
    def __init__(self) -> None:
        self.pull_requests: List[Dict[str, object]] = []

    async def open_pull_request(
        self, branch, title, commit_message, files, draft=True
    ) -> PullRequest:
        self.pull_requests.append(
            {"branch": branch, "title": title, "files": files, "draft": draft}
        )
        number = len(self.pull_requests)
        return PullRequest(branch=branch, url=f"https://git.example/pr/{number}", number=number)


async def _eventually(check, timeout: float = 2.0, interval: float = 0.01):
    """Poll an async ``check`` until it returns a truthy value."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        value = await check()
        if value:
            return value
        if loop.time() >= deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)


@pytest.fixture(autouse=True)
def _reset_repository_instance():
    yield
    persistence._repository_instance = None


@pytest.fixture
def eventually():
    return _eventually


@pytest.fixture
def tracker():
    return FakeTracker()


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def context_store():
    return FakeContextStore()


@pytest.fixture
def source_control():
    return FakeSourceControl()


@pytest.fixture
def config():
    return DevflowConfig(
        steps=StepDefaults(timeout_seconds=2.0, retries=1, backoff_base=0),
        questions=QuestionConfig(timeout_hours=1.0),
    )


@pytest.fixture
def repository():
    return InMemoryWorkflowRepository()


@pytest.fixture
def transport():
    return InspectableTransport(poll_interval=0.01)


@pytest.fixture
def service(tracker, generator, context_store, source_control, config, repository, transport):
    return build_service(
        tracker,
        generator,
        context_store,
        source_control,
        config=config,
        repository=repository,
        transport=transport,
    )
