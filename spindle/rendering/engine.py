"""Sandboxed Jinja2 rendering for prompt and branch templates.

Templates are untrusted user input, so they are rendered in a
``SandboxedEnvironment`` with ``StrictUndefined``: any reference that does
not resolve raises instead of rendering as an empty string.

Example:
    >>> renderer = TemplateRenderer()
    >>> renderer.render("fix/{{ number }}", {"number": 42})
    'fix/42'
    >>> renderer.render("{{ deps['build'].results.branch }}", ctx)
"""

from __future__ import annotations

from collections.abc import Collection, Mapping
from typing import Any

import structlog
from jinja2 import StrictUndefined, TemplateSyntaxError, UndefinedError, meta, nodes
from jinja2.sandbox import SandboxedEnvironment, SecurityError

from spindle.exceptions import TemplateError, ValidationError

log = structlog.get_logger(__name__)

DEFAULT_PROMPT_TEMPLATE = (
    "{{ kind }} #{{ number }}: {{ title }}\n"
    "\n"
    "{{ body }}"
    "{% if comments %}\n"
    "\n"
    "Comments:\n"
    "{{ comments }}"
    "{% endif %}"
)


class TemplateRenderer:
    """Render prompt and branch templates against a closed context."""

    def __init__(self) -> None:
        self.env = SandboxedEnvironment(
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )

    def render(self, template: str, context: Mapping[str, Any]) -> str:
        """Render a template string.

        Args:
            template: Template source
            context: Variables available to the template

        Returns:
            Rendered text

        Raises:
            TemplateError: If the template is malformed, references
                something that does not exist, or trips the sandbox
        """
        try:
            return self.env.from_string(template).render(dict(context))
        except UndefinedError as e:
            raise TemplateError(f"unresolved template reference: {e.message}", reference=e.message) from e
        except TemplateSyntaxError as e:
            raise TemplateError(f"template syntax error: {e.message}") from e
        except SecurityError as e:
            raise TemplateError(f"template rejected by sandbox: {e}") from e

    def check_syntax(
        self,
        template: str,
        allowed_names: Collection[str],
        field: str | None = None,
        dependencies: Collection[str] | None = None,
    ) -> None:
        """Validate a template before it is ever rendered.

        Args:
            template: Template source
            allowed_names: Top-level names the template may reference
            field: Field path used in error messages
            dependencies: If given, the dependency names that ``deps[...]``
                lookups may use

        Raises:
            ValidationError: On a syntax error, an unknown top-level name,
                or a ``deps`` lookup outside ``dependencies``
        """
        try:
            ast = self.env.parse(template)
        except TemplateSyntaxError as e:
            raise ValidationError(f"template syntax error on line {e.lineno}: {e.message}", field=field) from e

        unknown = meta.find_undeclared_variables(ast) - set(allowed_names)
        if unknown:
            raise ValidationError(
                f"template references unknown names: {', '.join(sorted(unknown))}",
                field=field,
            )

        if dependencies is not None:
            for name in dependency_references(ast):
                if name not in dependencies:
                    raise ValidationError(f'template references dependency "{name}" not in depends_on', field=field)


def dependency_references(ast: nodes.Template) -> list[str]:
    """Return the constant names used in ``deps[...]`` or ``deps.name`` lookups."""
    names = []
    for node in ast.find_all((nodes.Getitem, nodes.Getattr)):
        if not isinstance(node.node, nodes.Name) or node.node.name != "deps":
            continue
        if isinstance(node, nodes.Getitem) and isinstance(node.arg, nodes.Const):
            names.append(str(node.arg.value))
        elif isinstance(node, nodes.Getattr):
            names.append(node.attr)
    return names
