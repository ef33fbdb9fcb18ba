"""
Declarative resource models: Task, Workspace, AgentConfig and TaskSpawner.

Every resource has ``metadata`` (identity, labels, ownership, versioning), a
user-owned ``spec`` and, for Task and TaskSpawner, a controller-owned
``status``. Models accept both snake_case and camelCase keys so that
manifests written as ``dependsOn`` or ``depends_on`` load the same way.

Example:
    Loading a manifest::

        task = load_resource(
            {
                "kind": "Task",
                "metadata": {"name": "fix-42"},
                "spec": {"type": "claude-code", "prompt": "Fix issue 42"},
            }
        )
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from spindle.enums import AgentType, CredentialType, MCPTransport, TaskPhase, TaskSpawnerPhase

TASKSPAWNER_LABEL = "spindle.dev/taskspawner"
ITEM_ID_LABEL = "spindle.dev/item-id"

_DURATION_PATTERN = re.compile(r"^(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?$")
_NAME_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$")


def parse_duration(value: str) -> float:
    """Parse a duration string such as ``"30s"``, ``"5m"`` or ``"1h30m"``.

    Args:
        value: Duration string

    Returns:
        Duration in seconds

    Raises:
        ValueError: If the string is not a valid, non-zero duration
    """
    match = _DURATION_PATTERN.match(value.strip())
    if not match or not any(match.groups()):
        raise ValueError(f"invalid duration: {value!r}")
    hours, minutes, seconds = (int(g) if g else 0 for g in match.groups())
    total = hours * 3600 + minutes * 60 + seconds
    if total <= 0:
        raise ValueError(f"duration must be positive: {value!r}")
    return float(total)


class _Model(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        validate_assignment=True,
    )


class ObjectMeta(_Model):
    """Identity and bookkeeping shared by all resources."""

    name: str = Field(..., description="Resource name, unique per kind and namespace")
    namespace: str = Field(default="default", description="Namespace scoping the name")
    labels: dict[str, str] = Field(default_factory=dict, description="Free-form labels")
    owner: str | None = Field(default=None, description="Name of the owning TaskSpawner, if any")
    uid: str = Field(default="", description="Store-assigned unique identifier")
    creation_timestamp: datetime | None = Field(default=None, description="Set by the store on create")
    resource_version: int = Field(default=0, description="Incremented by the store on every write")

    @field_validator("name", "namespace")
    @classmethod
    def validate_name(cls, value: str) -> str:
        if len(value) > 253 or not _NAME_PATTERN.match(value):
            raise ValueError(f"{value!r} must be lowercase alphanumerics, '-' or '.', starting and ending alphanumeric")
        return value


class Resource(_Model):
    """Base class for all declarative resources."""

    kind: ClassVar[str] = ""

    metadata: ObjectMeta

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def key(self) -> str:
        """Namespaced key, ``namespace/name``."""
        return f"{self.metadata.namespace}/{self.metadata.name}"

    def to_manifest(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible manifest including ``kind``."""
        data = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        return {"kind": self.kind, **data}


# =============================================================================
# Task
# =============================================================================


class Credentials(_Model):
    """How the agent authenticates with its model provider."""

    type: CredentialType = Field(..., description="Credential type (api-key or oauth)")
    secret_ref: str = Field(..., description="Name of the secret holding the credential")


class ExecutionOverrides(_Model):
    """Per-Task execution overrides passed to the pod executor."""

    resources: dict[str, str] = Field(default_factory=dict, description="Resource limits, e.g. {'cpu': '2'}")
    active_deadline_seconds: int | None = Field(default=None, ge=1, description="Execution timeout in seconds")
    env: dict[str, str] = Field(default_factory=dict, description="Extra environment variables")
    node_selector: dict[str, str] = Field(default_factory=dict, description="Node placement constraints")


class TaskSpec(_Model):
    """Desired state of a Task. Immutable after creation."""

    type: AgentType = Field(..., description="Agent type to run")
    prompt: str = Field(..., min_length=1, description="Prompt, may reference dependency results")
    credentials: Credentials | None = Field(default=None, description="Agent credentials reference")
    model: str | None = Field(default=None, description="Model override for the agent")
    image: str | None = Field(default=None, description="Container image override")
    workspace_ref: str | None = Field(default=None, description="Name of the Workspace to clone")
    agent_config_ref: str | None = Field(default=None, description="Name of the AgentConfig to apply")
    depends_on: list[str] = Field(default_factory=list, description="Sibling Tasks that must succeed first")
    branch: str | None = Field(default=None, description="Mutual-exclusion key and git branch")
    ttl_seconds_after_finished: int | None = Field(
        default=None, ge=0, description="Delete the Task this many seconds after it finishes"
    )
    literal: bool = Field(
        default=False, description="Use prompt and branch verbatim, never rendering them against dependencies"
    )
    overrides: ExecutionOverrides = Field(default_factory=ExecutionOverrides)

    @field_validator("depends_on")
    @classmethod
    def validate_depends_on(cls, value: list[str]) -> list[str]:
        if len(set(value)) != len(value):
            raise ValueError("depends_on entries must be unique")
        return value


class TaskStatus(_Model):
    """Observed state of a Task. Written only by the Task controller."""

    phase: TaskPhase = Field(default=TaskPhase.PENDING)
    job_name: str | None = Field(default=None, description="Executor job handle")
    pod_name: str | None = Field(default=None, description="Executor pod handle")
    branch: str | None = Field(default=None, description="Rendered branch in effect while running")
    start_time: datetime | None = None
    completion_time: datetime | None = None
    outputs: list[str] = Field(default_factory=list, description="Raw captured result lines, in order")
    results: dict[str, str] = Field(default_factory=dict, description="Normalized results, last write wins")
    message: str = ""


class Task(Resource):
    """One orchestrated unit of containerized work."""

    kind: ClassVar[str] = "Task"

    spec: TaskSpec
    status: TaskStatus = Field(default_factory=TaskStatus)

    @property
    def phase(self) -> TaskPhase:
        return self.status.phase

    @property
    def effective_branch(self) -> str:
        """Branch used for mutual exclusion: the rendered one once known."""
        return self.status.branch or self.spec.branch or ""

    @property
    def spawner(self) -> str | None:
        return self.metadata.owner


# =============================================================================
# Workspace
# =============================================================================


class WorkspaceFile(_Model):
    """A file written into the cloned repository before the agent starts."""

    path: str = Field(..., min_length=1)
    content: str

    @field_validator("path")
    @classmethod
    def validate_path(cls, value: str) -> str:
        if value.startswith("/") or ".." in value.split("/"):
            raise ValueError("path must be relative and must not escape the repository")
        return value


class GitRemote(_Model):
    """An additional git remote configured in the workspace."""

    name: str
    url: str

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        if value == "origin":
            raise ValueError("remote name 'origin' is reserved")
        return value


class WorkspaceSpec(_Model):
    """Git repository binding."""

    repo: str = Field(..., min_length=1, description="Repository URL")
    ref: str | None = Field(default=None, description="Branch, tag or commit to check out")
    secret_ref: str | None = Field(default=None, description="Secret holding a git token")
    files: list[WorkspaceFile] = Field(default_factory=list)
    remotes: list[GitRemote] = Field(default_factory=list)


class Workspace(Resource):
    """A git repository binding referenced read-only by Tasks."""

    kind: ClassVar[str] = "Workspace"

    spec: WorkspaceSpec


# =============================================================================
# AgentConfig
# =============================================================================


class ContentBlock(_Model):
    """A named block of content (a skill or an agent definition)."""

    name: str = Field(..., min_length=1)
    content: str


class PluginSpec(_Model):
    """A plugin bundling skills and agents."""

    name: str = Field(..., min_length=1)
    skills: list[ContentBlock] = Field(default_factory=list)
    agents: list[ContentBlock] = Field(default_factory=list)


class MCPServerSpec(_Model):
    """An MCP server descriptor made available to the agent."""

    name: str = Field(..., min_length=1)
    transport: MCPTransport
    command: str | None = Field(default=None, description="Command for stdio transport")
    args: list[str] = Field(default_factory=list)
    url: str | None = Field(default=None, description="URL for http/sse transport")
    headers: dict[str, str] = Field(default_factory=dict)
    env: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_transport(self) -> MCPServerSpec:
        """Ensure the fields required by the transport are present."""
        if self.transport == MCPTransport.STDIO:
            if not self.command:
                raise ValueError("command is required for stdio transport")
        elif not self.url:
            raise ValueError(f"url is required for {self.transport} transport")
        return self


class AgentConfigSpec(_Model):
    """Agent instructions, plugins and MCP servers."""

    agents_md: str | None = Field(default=None, description="Instructions written to AGENTS.md")
    plugins: list[PluginSpec] = Field(default_factory=list)
    mcp_servers: list[MCPServerSpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_unique_names(self) -> AgentConfigSpec:
        for label, names in (
            ("plugin", [p.name for p in self.plugins]),
            ("MCP server", [s.name for s in self.mcp_servers]),
        ):
            if len(set(names)) != len(names):
                raise ValueError(f"{label} names must be unique")
        return self


class AgentConfig(Resource):
    """A bundle of agent instructions, plugins and MCP servers."""

    kind: ClassVar[str] = "AgentConfig"

    spec: AgentConfigSpec


# =============================================================================
# TaskSpawner
# =============================================================================


class GitHubIssuesFilter(_Model):
    """Issue-tracker discovery filter."""

    labels: list[str] = Field(default_factory=list, description="Items must carry every one of these")
    exclude_labels: list[str] = Field(default_factory=list, description="Items must carry none of these")
    state: Literal["open", "closed", "all"] = Field(default="open")
    types: list[Literal["issues", "pulls"]] = Field(default_factory=lambda: ["issues"])


class CronSchedule(_Model):
    """Time-based discovery."""

    schedule: str = Field(..., min_length=1, description="Five-field cron expression")


class When(_Model):
    """Discovery source selector. Exactly one source must be set."""

    github_issues: GitHubIssuesFilter | None = None
    cron: CronSchedule | None = None

    @model_validator(mode="after")
    def validate_one_source(self) -> When:
        configured = [s for s in (self.github_issues, self.cron) if s is not None]
        if len(configured) != 1:
            raise ValueError("exactly one of github_issues or cron must be set")
        return self


class TaskTemplate(_Model):
    """Task spec fields used for every spawned Task, parameterized by item."""

    type: AgentType
    prompt_template: str | None = Field(default=None, description="Prompt template; a default is used if unset")
    credentials: Credentials | None = None
    model: str | None = None
    image: str | None = None
    workspace_ref: str | None = None
    agent_config_ref: str | None = None
    depends_on: list[str] = Field(default_factory=list)
    branch: str | None = Field(default=None, description="Branch template")
    ttl_seconds_after_finished: int | None = Field(default=None, ge=0)
    overrides: ExecutionOverrides = Field(default_factory=ExecutionOverrides)


class TaskSpawnerSpec(_Model):
    """Discovery policy."""

    when: When
    task_template: TaskTemplate
    poll_interval: str = Field(default="5m", description="Discovery cadence, e.g. '30s', '5m'")
    max_concurrency: int | None = Field(default=None, ge=0, description="Cap on non-terminal owned Tasks")
    max_total_tasks: int | None = Field(default=None, ge=0, description="Lifetime cap on created Tasks")
    suspend: bool = False

    @field_validator("poll_interval")
    @classmethod
    def validate_poll_interval(cls, value: str) -> str:
        parse_duration(value)
        return value

    @property
    def poll_interval_seconds(self) -> float:
        return parse_duration(self.poll_interval)


class Condition(_Model):
    """A named boolean condition on a TaskSpawner's status."""

    type: str
    status: bool
    reason: str
    message: str = ""
    last_transition_time: datetime | None = None


class TaskSpawnerStatus(_Model):
    """Observed state of a TaskSpawner. Written only by the spawner controller."""

    phase: TaskSpawnerPhase | None = None
    total_discovered: int = 0
    total_tasks_created: int = 0
    active_tasks: int = 0
    last_discovery_time: datetime | None = None
    message: str = ""
    conditions: list[Condition] = Field(default_factory=list)

    def set_condition(self, condition: Condition) -> None:
        """Add or replace a condition, keeping the transition time if unchanged."""
        for i, existing in enumerate(self.conditions):
            if existing.type == condition.type:
                if existing.status == condition.status:
                    condition.last_transition_time = existing.last_transition_time
                self.conditions[i] = condition
                return
        self.conditions.append(condition)

    def get_condition(self, condition_type: str) -> Condition | None:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None


class TaskSpawner(Resource):
    """A policy that discovers external items and creates Tasks from them."""

    kind: ClassVar[str] = "TaskSpawner"

    spec: TaskSpawnerSpec
    status: TaskSpawnerStatus = Field(default_factory=TaskSpawnerStatus)


RESOURCE_KINDS: dict[str, type[Resource]] = {
    cls.kind: cls for cls in (Task, Workspace, AgentConfig, TaskSpawner)
}


def load_resource(manifest: dict[str, Any]) -> Resource:
    """Build a resource from a manifest dictionary with a ``kind`` key.

    Raises:
        ValueError: If the kind is missing or unknown
        pydantic.ValidationError: If the manifest does not match the schema
    """
    data = dict(manifest)
    data.pop("apiVersion", None)
    kind = data.pop("kind", None)
    if kind not in RESOURCE_KINDS:
        raise ValueError(f"unknown resource kind: {kind!r}")
    return RESOURCE_KINDS[kind].model_validate(data)
