from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Type
import base64

import pydantic
from pydantic import AfterValidator

from kubevalidator import config


class Model(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(extra="ignore")


def _validate_commit_sha(sha: str) -> str:
    if len(sha) != 40:
        raise ValueError("Commit hash must have length 40")
    return sha


CommitSha = Annotated[str, AfterValidator(_validate_commit_sha)]

AnnotationLevel = Literal["notice", "warning", "failure"]

Conclusion = Literal[
    "action_required",
    "cancelled",
    "failure",
    "neutral",
    "success",
    "skipped",
    "stale",
    "timed_out",
]


class User(Model):
    login: str


class Repository(Model):
    id: Optional[int] = None
    name: str
    full_name: Optional[str] = None
    owner: User
    html_url: Optional[str] = None
    private: Optional[bool] = None

    @property
    def slug(self) -> str:
        return f"{self.owner.login}/{self.name}"

    @property
    def api_path(self) -> str:
        return f"/repos/{self.slug}"

    def __str__(self) -> str:
        return self.full_name or self.slug


class Content(Model):
    type: str
    encoding: Optional[str] = None
    size: Optional[int] = None
    name: Optional[str] = None
    path: str
    content: Optional[str] = None
    sha: Optional[str] = None
    html_url: Optional[str] = None

    def decoded_bytes(self) -> bytes:
        if self.encoding != "base64" or self.content is None:
            raise ValueError(f"Unknown encoding {self.encoding}")
        return base64.b64decode(self.content)

    def decoded_content(self) -> str:
        return self.decoded_bytes().decode()


class PrRef(Model):
    ref: str
    sha: CommitSha


class PartialPullRequest(Model):
    id: Optional[int] = None
    number: int
    url: Optional[str] = None
    head: PrRef
    base: PrRef


class PullRequest(PartialPullRequest):
    state: Optional[Literal["open", "closed"]] = None
    title: Optional[str] = None
    html_url: Optional[str] = None

    def __str__(self) -> str:
        return f"PR(#{self.number}, {self.head.ref})"


class PrFile(Model):
    sha: Optional[str] = None
    filename: str
    status: Literal[
        "added", "removed", "modified", "renamed", "copied", "changed", "unchanged"
    ]


class App(Model):
    id: int
    slug: Optional[str] = None


class PartialCheckSuite(Model):
    id: int

    def __hash__(self):
        return self.id


class CheckSuite(PartialCheckSuite):
    head_branch: Optional[str] = None
    head_sha: CommitSha
    status: Optional[
        Literal["queued", "in_progress", "completed", "pending", "requested", "waiting"]
    ] = None
    conclusion: Optional[Conclusion] = None
    pull_requests: List[PartialPullRequest] = pydantic.Field(default_factory=list)
    app: Optional[App] = None


class Annotation(Model):
    path: str
    annotation_level: AnnotationLevel
    message: str
    start_line: Optional[int] = None
    end_line: Optional[int] = None
    start_column: Optional[int] = None
    end_column: Optional[int] = None
    title: Optional[str] = None

    @property
    def is_failure(self) -> bool:
        return self.annotation_level == "failure"

    def to_payload(self) -> Dict[str, Any]:
        # GitHub requires line numbers; file level findings go on the first line
        start_line = self.start_line or 1
        end_line = self.end_line or start_line
        payload: Dict[str, Any] = {
            "path": self.path,
            "start_line": start_line,
            "end_line": end_line,
            "annotation_level": self.annotation_level,
            "message": self.message,
        }
        # columns are only accepted for single line annotations
        if start_line == end_line and self.start_column is not None:
            payload["start_column"] = self.start_column
            payload["end_column"] = self.end_column or self.start_column
        if self.title is not None:
            payload["title"] = self.title
        return payload


class CheckRunOutput(Model):
    title: Optional[str] = None
    summary: Optional[str] = None
    text: Optional[str] = None
    annotations: List[Annotation] = pydantic.Field(default_factory=list)


class CheckRun(Model):
    id: Optional[int] = None
    name: str
    head_sha: CommitSha
    status: Literal[
        "completed", "queued", "in_progress", "pending", "requested", "waiting"
    ] = "queued"
    conclusion: Optional[Conclusion] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    app: Optional[App] = None
    check_suite: Optional[PartialCheckSuite] = None
    output: Optional[CheckRunOutput] = None
    html_url: Optional[str] = None

    @classmethod
    def make_app_check_run(cls: Type["CheckRun"], **kwargs) -> "CheckRun":
        return cls(name=config.CHECK_RUN_NAME, **kwargs)


class InstallationRef(Model):
    id: int


class Installation(InstallationRef):
    account: Optional[User] = None
    app_id: Optional[int] = None


class WebhookEvent(Model):
    model_config = pydantic.ConfigDict(extra="ignore", frozen=True)

    action: Optional[str] = None
    installation: Optional[InstallationRef] = None
    payload: Dict[str, Any] = pydantic.Field(default_factory=dict, repr=False)

    @property
    def name(self) -> str:
        return type(self).__name__


class CheckSuiteEvent(WebhookEvent):
    check_suite: CheckSuite
    repository: Repository


class PullRequestEvent(WebhookEvent):
    pull_request: PullRequest
    repository: Repository


class CheckRunEvent(WebhookEvent):
    check_run: CheckRun
    repository: Repository


class InstallationEvent(WebhookEvent):
    installation: Installation


class InstallationRepositoriesEvent(WebhookEvent):
    installation: Installation


class UnknownEvent(WebhookEvent):
    event: str

    @property
    def name(self) -> str:
        return self.event


EVENT_TYPES: Dict[str, Type[WebhookEvent]] = {
    "check_suite": CheckSuiteEvent,
    "pull_request": PullRequestEvent,
    "check_run": CheckRunEvent,
    "installation": InstallationEvent,
    "installation_repositories": InstallationRepositoriesEvent,
}


def parse_event(event: str, data: Mapping[str, Any]) -> WebhookEvent:
    """Build the typed event for a webhook delivery.

    Deliveries of event kinds that are not handled become an ``UnknownEvent``
    carrying the event name, so they can be logged and ignored.
    """
    payload = dict(data)
    event_type = EVENT_TYPES.get(event)
    if event_type is None:
        return UnknownEvent(
            event=event,
            action=payload.get("action"),
            payload=payload,
        )
    return event_type.model_validate({**payload, "payload": payload})
