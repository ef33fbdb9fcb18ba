"""Load resource manifests from YAML files and apply them to a store."""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

import structlog
import yaml

from spindle.exceptions import AlreadyExistsError, ConfigurationError, ValidationError
from spindle.models.resources import AgentConfig, Resource, Task, TaskSpawner, Workspace, load_resource
from spindle.store import ResourceStore

log = structlog.get_logger(__name__)

_APPLY_ORDER = (Workspace.kind, AgentConfig.kind, Task.kind, TaskSpawner.kind)


def manifest_files(paths: Iterable[str | Path]) -> list[Path]:
    """Expand directories into the ``*.yaml``/``*.yml`` files they contain."""
    files = []
    for raw in paths:
        path = Path(raw)
        if path.is_dir():
            files.extend(sorted(p for p in path.rglob("*") if p.suffix in (".yaml", ".yml")))
        else:
            files.append(path)
    return files


def load_manifests(paths: Iterable[str | Path]) -> list[Resource]:
    """Parse every YAML document in the given files into resources.

    Raises:
        ConfigurationError: If a file cannot be read or parsed
        ValidationError: If a document does not match its kind's schema
    """
    resources = []
    for path in manifest_files(paths):
        try:
            with open(path) as f:
                documents = list(yaml.safe_load_all(f))
        except OSError as e:
            raise ConfigurationError(f"Cannot read manifest file: {path}") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {path}: {e}") from e

        for index, document in enumerate(documents):
            if document is None:
                continue
            if not isinstance(document, dict):
                raise ValidationError("manifest must be a mapping", field=f"{path}[{index}]")
            try:
                resources.append(load_resource(document))
            except ValueError as e:
                raise ValidationError(str(e), field=f"{path}[{index}]") from e
    return resources


def apply_order(resources: Iterable[Resource]) -> list[Resource]:
    """Order resources so that references and dependencies exist first.

    Workspaces and AgentConfigs come first, then Tasks with every Task after
    the Tasks it depends on, then TaskSpawners.
    """
    by_kind: dict[str, list[Resource]] = {kind: [] for kind in _APPLY_ORDER}
    for resource in resources:
        by_kind[resource.kind].append(resource)

    tasks = [t for t in by_kind[Task.kind] if isinstance(t, Task)]
    by_kind[Task.kind] = list(_topological(tasks))
    return [r for kind in _APPLY_ORDER for r in by_kind[kind]]


def _topological(tasks: list[Task]) -> list[Task]:
    by_key = {(t.namespace, t.name): t for t in tasks}
    ordered: list[Task] = []
    seen: set[tuple[str, str]] = set()

    def visit(task: Task, trail: frozenset[tuple[str, str]]) -> None:
        key = (task.namespace, task.name)
        if key in seen or key in trail:
            return
        for dep in task.spec.depends_on:
            upstream = by_key.get((task.namespace, dep))
            if upstream is not None:
                visit(upstream, trail | {key})
        seen.add(key)
        ordered.append(task)

    for task in tasks:
        visit(task, frozenset())
    return ordered


async def apply_manifests(store: ResourceStore, resources: Iterable[Resource]) -> list[Resource]:
    """Create resources, updating the ones that already exist.

    Returns:
        The resources as stored
    """
    applied = []
    for resource in apply_order(resources):
        try:
            stored = await store.create(resource)
            log.info("resource_applied", kind=resource.kind, key=resource.key, action="created")
        except AlreadyExistsError:
            current = await store.get(resource.kind, resource.namespace, resource.name)
            if isinstance(current, Task):
                log.info("resource_applied", kind=resource.kind, key=resource.key, action="unchanged")
                applied.append(current)
                continue
            resource.metadata.resource_version = current.metadata.resource_version
            stored = await store.update(resource)
            log.info("resource_applied", kind=resource.kind, key=resource.key, action="updated")
        applied.append(stored)
    return applied
