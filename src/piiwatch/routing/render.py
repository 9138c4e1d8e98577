"""Alert rendering: finding event document → destination payload.

A template is an *input transformer*: a map from placeholder names to paths
into the event document, plus a document whose strings contain
``<placeholder>`` markers. Rendering resolves every path, substitutes the
values and returns a new payload; it has no side effects, so the same event
always renders to the same payload.

Static values (console region, issue board URL) are fixed at construction
and can be used as placeholders alongside the event paths.

Examples:
    >>> renderer = AlertRenderer(region="eu-west-1", issue_board_url="https://issues.example.com/board")
    >>> payload = renderer.render(event.to_document(), "generic")
    >>> payload.body["title"]
    'Finding for job job-42'

A path that is missing, null or not a scalar raises
:class:`~piiwatch.core.errors.RenderError`: a data-shape problem that
retrying cannot fix.
"""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from typing import Any

from piiwatch.core.errors import RenderError
from piiwatch.core.models import AlertPayload

_PLACEHOLDER_RE = re.compile(r"<([A-Za-z][A-Za-z0-9_]*)>")
_PATH_TOKEN_RE = re.compile(r"\.([^.\[\]]+)|\[(\d+)\]")

FINDING_INPUT_PATHS = {
    "jobId": "$.detail.classificationDetails.jobId",
    "severity": "$.detail.severity.description",
    "findingType": "$.detail.type",
}

CONSOLE_JOB_URL = (
    "https://<region>.console.aws.amazon.com/macie/home?region=<region>"
    "#findings?tab=job&search=classificationDetails.jobId%3D<jobId>&macros=current"
)


def resolve_path(document: dict[str, Any], path: str) -> Any:
    """Resolve a ``$.a.b[0].c`` path against ``document``.

    Raises:
        RenderError: The path is malformed or does not exist
    """
    if not path.startswith("$"):
        raise RenderError(f"Path must start with '$': {path}", field_path=path)
    rest = path[1:]
    tokens = list(_PATH_TOKEN_RE.finditer(rest))
    if "".join(m.group(0) for m in tokens) != rest:
        raise RenderError(f"Malformed path: {path}", field_path=path)

    current: Any = document
    for token in tokens:
        key, index = token.group(1), token.group(2)
        if key is not None:
            if not isinstance(current, dict) or key not in current:
                raise RenderError(f"Missing field {path}", field_path=path)
            current = current[key]
        else:
            if not isinstance(current, list) or int(index) >= len(current):
                raise RenderError(f"Missing field {path}", field_path=path)
            current = current[int(index)]
    return current


@dataclass(frozen=True)
class AlertTemplate:
    name: str
    document: dict[str, Any]
    input_paths: dict[str, str] = field(default_factory=lambda: dict(FINDING_INPUT_PATHS))


GENERIC_TEMPLATE = AlertTemplate(
    name="generic",
    document={
        "title": "Finding for job <jobId>",
        "summary": "PII finding",
        "text": "Potentially sensitive data (<findingType>) was detected in function logs",
        "severity": "<severity>",
        "jobId": "<jobId>",
        "findingType": "<findingType>",
        "links": [
            {"label": "View job", "url": CONSOLE_JOB_URL},
            {"label": "Create issue", "url": "<issueBoardUrl>"},
        ],
    },
)

TEAMS_TEMPLATE = AlertTemplate(
    name="teams",
    document={
        "@type": "MessageCard",
        "@context": "http://schema.org/extensions",
        "summary": "PII finding",
        "text": "Potentially sensitive data was detected in function logs",
        "title": "Finding for job <jobId>",
        "themeColor": "ee0000",
        "sections": [
            {
                "facts": [
                    {"name": "Job ID", "value": "<jobId>"},
                    {"name": "Severity", "value": "<severity>"},
                    {"name": "Type", "value": "<findingType>"},
                ],
                "markdown": True,
                "startGroup": True,
            }
        ],
        "potentialAction": [
            {"@type": "OpenUri", "name": "View job", "targets": [{"os": "default", "uri": CONSOLE_JOB_URL}]},
            {"@type": "OpenUri", "name": "Create issue", "targets": [{"os": "default", "uri": "<issueBoardUrl>"}]},
        ],
    },
)

BUILTIN_TEMPLATES = {t.name: t for t in (GENERIC_TEMPLATE, TEAMS_TEMPLATE)}


def _substitute(node: Any, values: dict[str, Any]) -> Any:
    if isinstance(node, dict):
        return {key: _substitute(value, values) for key, value in node.items()}
    if isinstance(node, list):
        return [_substitute(item, values) for item in node]
    if not isinstance(node, str):
        return copy.copy(node)

    whole = _PLACEHOLDER_RE.fullmatch(node)
    if whole:
        return _lookup(values, whole.group(1))
    return _PLACEHOLDER_RE.sub(lambda m: str(_lookup(values, m.group(1))), node)


def _lookup(values: dict[str, Any], name: str) -> Any:
    if name not in values:
        raise RenderError(f"Template placeholder <{name}> has no value", field_path=name)
    return values[name]


def render_template(template: AlertTemplate, document: dict[str, Any], static: dict[str, Any] | None = None) -> AlertPayload:
    """Render ``template`` against an event ``document``.

    Raises:
        RenderError: A path is missing, null or not a scalar
    """
    values: dict[str, Any] = dict(static or {})
    for name, path in template.input_paths.items():
        value = resolve_path(document, path)
        if value is None or isinstance(value, (dict, list)):
            raise RenderError(f"Field {path} is not a scalar value", field_path=path)
        if isinstance(value, str) and not value.strip():
            raise RenderError(f"Field {path} is empty", field_path=path)
        values[name] = value
    return AlertPayload(format=template.name, body=_substitute(template.document, values))


class AlertRenderer:
    """Renders finding documents for each destination format."""

    def __init__(
        self,
        *,
        region: str,
        issue_board_url: str,
        templates: dict[str, AlertTemplate] | None = None,
    ):
        self.templates = dict(templates or BUILTIN_TEMPLATES)
        self.static = {"region": region, "issueBoardUrl": issue_board_url}

    def render(self, document: dict[str, Any], format: str = "generic") -> AlertPayload:
        template = self.templates.get(format)
        if template is None:
            raise RenderError(f"No template for destination format {format!r}")
        return render_template(template, document, self.static)


__all__ = [
    "FINDING_INPUT_PATHS",
    "CONSOLE_JOB_URL",
    "AlertTemplate",
    "GENERIC_TEMPLATE",
    "TEAMS_TEMPLATE",
    "BUILTIN_TEMPLATES",
    "resolve_path",
    "render_template",
    "AlertRenderer",
]
