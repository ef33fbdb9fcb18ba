"""Pick the source adapter a TaskSpawner polls."""

from __future__ import annotations

import httpx
import structlog

from spindle.config.settings import GitHubSettings
from spindle.engine.job_builder import upstream_repo
from spindle.exceptions import NotFoundError, SourceError
from spindle.models.resources import TaskSpawner, Workspace
from spindle.sources.base import SourceAdapter
from spindle.sources.cron import CronSource
from spindle.sources.github import GitHubIssuesSource
from spindle.store import ResourceStore

log = structlog.get_logger(__name__)


class SourceRegistry:
    """Resolve and cache source adapters.

    A GitHub spawner polls the repository of the Workspace its task template
    references, falling back to the configured ``github.owner``/``github.repo``.
    One adapter (and one connection pool) is kept per repository.
    """

    def __init__(
        self,
        store: ResourceStore,
        github: GitHubSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.store = store
        self.github = github or GitHubSettings()
        self._transport = transport
        self._cron = CronSource()
        self._github_sources: dict[tuple[str, str], GitHubIssuesSource] = {}

    async def for_spawner(self, spawner: TaskSpawner) -> SourceAdapter:
        """Return the adapter for a spawner's ``when`` clause.

        Raises:
            SourceError: If no repository can be determined
        """
        if spawner.spec.when.cron is not None:
            return self._cron

        owner, repo = await self._repository(spawner)
        key = (owner, repo)
        if key not in self._github_sources:
            token = self.github.token.get_secret_value() if self.github.token else None
            self._github_sources[key] = GitHubIssuesSource(
                owner=owner,
                repo=repo,
                api_base_url=self.github.api_base_url,
                token=token,
                per_page=self.github.per_page,
                max_pages=self.github.max_pages,
                timeout=self.github.timeout,
                transport=self._transport,
            )
            log.info("github_source_registered", owner=owner, repo=repo)
        return self._github_sources[key]

    async def _repository(self, spawner: TaskSpawner) -> tuple[str, str]:
        ref = spawner.spec.task_template.workspace_ref
        if ref:
            try:
                workspace = await self.store.get(Workspace.kind, spawner.namespace, ref)
            except NotFoundError as e:
                raise SourceError(f'Workspace "{ref}" not found') from e
            assert isinstance(workspace, Workspace)
            slug = upstream_repo(workspace.spec.repo)
            if slug:
                owner, repo = slug.split("/")
                return owner, repo
        if self.github.owner and self.github.repo:
            return self.github.owner, self.github.repo
        raise SourceError("no GitHub repository configured for spawner")

    async def close(self) -> None:
        for source in self._github_sources.values():
            await source.close()
        self._github_sources.clear()
