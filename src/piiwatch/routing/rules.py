"""Routing rules: which finding events go to which destination.

Matching is exact on ``(source, detail type)``; there are no wildcards or
content filters. Rules are static configuration and are validated once at
startup, where an invalid rule is an :class:`InvalidConfigError`.
"""

from __future__ import annotations

from collections.abc import Iterable

from piiwatch.core.errors import InvalidConfigError
from piiwatch.core.events import Event
from piiwatch.core.models import FINDING_DETAIL_TYPE, FINDING_SOURCE, Destination, RoutingRule

SUPPORTED_FORMATS = frozenset({"generic", "teams"})


def validate_rule(rule: RoutingRule) -> RoutingRule:
    """Return ``rule`` unchanged, or raise InvalidConfigError."""
    for key, value in (("source", rule.source), ("detail_type", rule.detail_type)):
        if not value or not value.strip():
            raise InvalidConfigError(f"rules.{rule.name}.{key}", value, f"Rule {rule.name!r} has an empty {key}")
        if "*" in value:
            raise InvalidConfigError(
                f"rules.{rule.name}.{key}", value, f"Rule {rule.name!r}: {key} must be an exact value"
            )
    destination = rule.destination
    if not destination.endpoint.startswith(("https://", "http://")):
        raise InvalidConfigError(f"rules.{rule.name}.endpoint", destination.endpoint)
    if destination.format not in SUPPORTED_FORMATS:
        raise InvalidConfigError(f"rules.{rule.name}.format", destination.format)
    if destination.authorization is not None and not destination.authorization.password_ref:
        raise InvalidConfigError(
            f"rules.{rule.name}.authorization", None, f"Rule {rule.name!r}: basic auth needs a password reference"
        )
    return rule


def validate_rules(rules: Iterable[RoutingRule]) -> list[RoutingRule]:
    validated = [validate_rule(rule) for rule in rules]
    names = [rule.name for rule in validated]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise InvalidConfigError("rules", duplicates, f"Duplicate rule names: {', '.join(duplicates)}")
    return validated


def matches(rule: RoutingRule, event: Event) -> bool:
    return event.source == rule.source and event.event_type == rule.detail_type


def match_rules(rules: Iterable[RoutingRule], event: Event) -> list[RoutingRule]:
    return [rule for rule in rules if matches(rule, event)]


def finding_rule(name: str, destination: Destination) -> RoutingRule:
    """The rule routing scanner findings to ``destination``."""
    return RoutingRule(name=name, source=FINDING_SOURCE, detail_type=FINDING_DETAIL_TYPE, destination=destination)


__all__ = ["SUPPORTED_FORMATS", "validate_rule", "validate_rules", "matches", "match_rules", "finding_rule"]
