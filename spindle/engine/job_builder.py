"""Build executor start requests from a Task and the resources it references."""

from __future__ import annotations

import json
from urllib.parse import urlparse

from spindle.config.settings import DEFAULT_COMMANDS, DEFAULT_IMAGES, ExecutorSettings
from spindle.enums import AgentType, CredentialType
from spindle.exceptions import ValidationError
from spindle.executors.base import ExecutionRequest, WorkspaceSetup
from spindle.models.resources import TASKSPAWNER_LABEL, AgentConfig, AgentConfigSpec, Task, Workspace

_API_KEY_ENV = {
    AgentType.CLAUDE_CODE: "ANTHROPIC_API_KEY",
    AgentType.CODEX: "CODEX_API_KEY",
    AgentType.GEMINI: "GEMINI_API_KEY",
    AgentType.OPENCODE: "OPENCODE_API_KEY",
}

_OAUTH_ENV = {
    AgentType.CLAUDE_CODE: "CLAUDE_CODE_OAUTH_TOKEN",
    AgentType.CODEX: "CODEX_AUTH_JSON",
    AgentType.GEMINI: "GEMINI_API_KEY",
    AgentType.OPENCODE: "OPENCODE_API_KEY",
}


def credential_env_var(agent_type: AgentType, credential_type: CredentialType) -> str:
    """Environment variable an agent reads its credential from."""
    table = _API_KEY_ENV if credential_type == CredentialType.API_KEY else _OAUTH_ENV
    return table[agent_type]


def mcp_servers_json(spec: AgentConfigSpec) -> str:
    """Render MCP servers in the ``.mcp.json`` layout agents understand."""
    servers = {}
    for server in spec.mcp_servers:
        entry = {
            "type": str(server.transport),
            "command": server.command,
            "args": server.args,
            "url": server.url,
            "headers": server.headers,
            "env": server.env,
        }
        servers[server.name] = {k: v for k, v in entry.items() if v}
    return json.dumps({"mcpServers": servers}, sort_keys=True)


def plugin_files(spec: AgentConfigSpec) -> dict[str, str]:
    """Lay out plugin skills and agents as files under the plugin directory."""
    files = {}
    for plugin in spec.plugins:
        for skill in plugin.skills:
            files[f"{plugin.name}/skills/{skill.name}/SKILL.md"] = skill.content
        for agent in plugin.agents:
            files[f"{plugin.name}/agents/{agent.name}.md"] = agent.content
    return files


def upstream_repo(url: str) -> str | None:
    """Return ``owner/repo`` for a GitHub-style URL, or None."""
    path = urlparse(url).path if "://" in url else url.split(":", 1)[-1]
    parts = [p for p in path.removesuffix(".git").split("/") if p]
    if len(parts) < 2:
        return None
    return f"{parts[-2]}/{parts[-1]}"


class JobBuilder:
    """Turn a Task into an ExecutionRequest."""

    def __init__(self, settings: ExecutorSettings | None = None) -> None:
        self.settings = settings or ExecutorSettings()

    def build(
        self,
        task: Task,
        prompt: str,
        branch: str | None = None,
        workspace: Workspace | None = None,
        agent_config: AgentConfig | None = None,
    ) -> ExecutionRequest:
        """Build the start request for a Task.

        Args:
            task: Task to run
            prompt: Rendered prompt
            branch: Rendered branch, if any
            workspace: Resolved ``workspace_ref``
            agent_config: Resolved ``agent_config_ref``

        Raises:
            ValidationError: If a plugin or server name would escape the
                plugin directory
        """
        spec = task.spec
        agent_type = str(spec.type)
        image = spec.image or self.settings.images.get(agent_type) or DEFAULT_IMAGES[agent_type]
        command = list(self.settings.commands.get(agent_type) or DEFAULT_COMMANDS[agent_type])
        if spec.model:
            command += ["--model", spec.model]

        env = {"SPINDLE_AGENT_TYPE": agent_type, "SPINDLE_TASK": task.name}
        if spec.model:
            env["SPINDLE_MODEL"] = spec.model
        if branch:
            env["SPINDLE_BRANCH"] = branch
        spawner = task.metadata.labels.get(TASKSPAWNER_LABEL)
        if spawner:
            env["SPINDLE_TASKSPAWNER"] = spawner

        secret_env = {}
        if spec.credentials is not None:
            secret_env[credential_env_var(spec.type, spec.credentials.type)] = spec.credentials.secret_ref

        setup = None
        if workspace is not None:
            ws = workspace.spec
            if ws.ref:
                env["SPINDLE_BASE_BRANCH"] = ws.ref
            remotes = {r.name: r.url for r in ws.remotes}
            if "upstream" in remotes:
                upstream = upstream_repo(remotes["upstream"])
                if upstream:
                    env["SPINDLE_UPSTREAM_REPO"] = upstream
            if ws.secret_ref:
                secret_env["GITHUB_TOKEN"] = ws.secret_ref
            setup = WorkspaceSetup(
                repo=ws.repo,
                ref=ws.ref,
                branch=branch,
                secret_ref=ws.secret_ref,
                files={f.path: f.content for f in ws.files},
                remotes=remotes,
            )

        files = {}
        if agent_config is not None:
            ac = agent_config.spec
            if ac.agents_md:
                env["SPINDLE_AGENTS_MD"] = ac.agents_md
            if ac.mcp_servers:
                env["SPINDLE_MCP_SERVERS"] = mcp_servers_json(ac)
            files = plugin_files(ac)
            for path in files:
                if ".." in path.split("/"):
                    raise ValidationError(f"plugin path {path!r} escapes the plugin directory", field="plugins")

        # Built-in variables win over user overrides.
        overrides = {k: v for k, v in spec.overrides.env.items() if k not in env}
        env.update(overrides)

        return ExecutionRequest(
            key=task.key,
            name=task.name,
            image=image,
            command=command,
            prompt=prompt,
            env=env,
            secret_env=secret_env,
            plugin_files=files,
            workspace=setup,
            deadline_seconds=spec.overrides.active_deadline_seconds,
            resources=dict(spec.overrides.resources),
            node_selector=dict(spec.overrides.node_selector),
            labels=dict(task.metadata.labels),
            uid=task.metadata.uid,
        )
