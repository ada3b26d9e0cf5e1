"""
DriftScore - Security Rules Engine
YAML-declared rules that classify drift severity.

Two rule scopes:
  change -> matched against the FieldChange list ("encryption flag flipped off")
  state  -> matched against the current configuration ("public access enabled")

Every applicable rule is evaluated. Severity is the maximum over all matches;
among rules tied at that maximum the earliest declared one is primary.
A malformed rule is skipped with a warning, the rest still run.
"""

import fnmatch
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

import yaml

from driftscore.detection.differ import LIST, MAP, join_path, value_kind
from driftscore.errors import RuleEvaluationError, ValidationError
from driftscore.models import ChangeType, Severity
from driftscore.records import FieldChange

logger = logging.getLogger(__name__)

SCOPE_CHANGE = "change"
SCOPE_STATE = "state"

OPERATORS = ("equals", "not_equals", "contains", "absent", "present", "changed")

_UNSET = object()


@dataclass(frozen=True)
class RuleCondition:
    """Field path pattern + predicate. Patterns use shell wildcards (ingress.*.cidr)."""

    field: str
    operator: str
    value: Any = None
    change_types: tuple[str, ...] = ()       # change scope only; empty = any
    previous: Any = _UNSET                   # change scope only; required old value


@dataclass(frozen=True)
class SecurityRule:
    """One declarative rule. Immutable reference data."""

    id: str
    title: str
    severity: Severity
    drift_type: str
    condition: RuleCondition
    scope: str = SCOPE_CHANGE
    description: str = ""
    resource_types: tuple[str, ...] = ()     # empty = every resource type
    providers: tuple[str, ...] = ()          # empty = every provider

    def applies_to(self, resource_type: str, provider: str) -> bool:
        if self.resource_types and (resource_type or "").lower() not in self.resource_types:
            return False
        if self.providers and (provider or "").lower() not in self.providers:
            return False
        return True

    def match_changes(self, changes: Iterable[FieldChange]) -> list[str]:
        """Field paths of the changes this rule fires on."""
        cond = self.condition
        matched = []
        for path, old, new, change_type in _change_views(changes):
            if not self._path_matches(path):
                continue
            if cond.change_types and change_type.value not in cond.change_types:
                continue
            if cond.previous is not _UNSET:
                if change_type == ChangeType.ADDED or not self._equals(old, cond.previous):
                    continue
            if self._test(new, present=change_type != ChangeType.REMOVED):
                matched.append(path)
        return matched

    def match_state(self, configuration: Any) -> list[str]:
        """Configuration paths this rule fires on."""
        if self.condition.operator == "changed":
            raise RuleEvaluationError(self.id, "operator 'changed' needs change scope")

        nodes = [(p, v) for p, v in iter_nodes(configuration) if self._path_matches(p)]
        if self.condition.operator == "absent":
            return [] if nodes else [self.condition.field]
        return [p for p, v in nodes if self._test(v, present=True)]

    def _path_matches(self, path: str) -> bool:
        if not self.condition.field:
            raise RuleEvaluationError(self.id, "condition has no field")
        return fnmatch.fnmatchcase(path.lower(), self.condition.field.lower())

    def _test(self, actual: Any, present: bool) -> bool:
        op = self.condition.operator
        expected = self.condition.value
        if op == "present":
            return present
        if op == "absent":
            return not present
        if op == "changed":
            return True
        if op not in OPERATORS:
            raise RuleEvaluationError(self.id, f"unknown operator '{op}'")
        if not present:
            return False
        if op == "equals":
            return self._equals(actual, expected)
        if op == "not_equals":
            return not self._equals(actual, expected)
        return self._contains(actual, expected)

    def _equals(self, actual: Any, expected: Any) -> bool:
        try:
            return value_kind(actual) == value_kind(expected) and actual == expected
        except ValidationError as e:
            raise RuleEvaluationError(self.id, str(e)) from e

    def _contains(self, actual: Any, expected: Any) -> bool:
        if isinstance(actual, str):
            return isinstance(expected, str) and expected.lower() in actual.lower()
        if isinstance(actual, (list, tuple)):
            for item in actual:
                if self._equals(item, expected):
                    return True
                if isinstance(item, str) and isinstance(expected, str) \
                        and expected.lower() in item.lower():
                    return True
            return False
        if isinstance(actual, dict):
            return expected in actual
        return False


def iter_nodes(value: Any, path: str = ""):
    """Yield (path, value) for every node below the root, depth first."""
    kind = value_kind(value)
    if kind == MAP:
        for key in sorted(value):
            child = join_path(path, str(key))
            yield child, value[key]
            yield from iter_nodes(value[key], child)
    elif kind == LIST:
        for index, item in enumerate(value):
            child = join_path(path, str(index))
            yield child, item
            yield from iter_nodes(item, child)


def _change_views(changes: Iterable[FieldChange]):
    """The change itself plus every node inside an added/removed/replaced subtree.

    Adding a whole ingress entry must still trip a rule on ingress.*.cidr.
    """
    for change in changes:
        yield change.field_path, change.old_value, change.new_value, change.change_type
        if change.change_type == ChangeType.REMOVED:
            for sub_path, old in iter_nodes(change.old_value, change.field_path):
                yield sub_path, old, None, ChangeType.REMOVED
        else:
            for sub_path, new in iter_nodes(change.new_value, change.field_path):
                yield sub_path, None, new, change.change_type


# ============================================================
# Rule sets
# ============================================================

@dataclass(frozen=True)
class RuleSet:
    """Ordered, immutable collection of rules. Order is declaration order."""

    rules: tuple[SecurityRule, ...] = ()

    def __len__(self) -> int:
        return len(self.rules)

    def __iter__(self):
        return iter(self.rules)

    def extend(self, rules: Iterable[SecurityRule]) -> "RuleSet":
        return RuleSet(rules=self.rules + tuple(rules))

    def get(self, rule_id: str) -> Optional[SecurityRule]:
        for rule in self.rules:
            if rule.id == rule_id:
                return rule
        return None

    @classmethod
    def from_dicts(cls, entries: Iterable[dict]) -> "RuleSet":
        rules = []
        for index, entry in enumerate(entries):
            try:
                rules.append(build_rule(entry))
            except (KeyError, TypeError, ValidationError) as e:
                logger.warning(f"Skipping security rule #{index} ({entry!r}): {e}")
        return cls(rules=tuple(rules))


def build_rule(entry: dict) -> SecurityRule:
    cond = entry["condition"]
    applies = entry.get("applies_to") or {}
    previous = cond["previous"] if "previous" in cond else _UNSET
    return SecurityRule(
        id=str(entry["id"]),
        title=entry.get("title", entry["id"]),
        description=entry.get("description", ""),
        severity=Severity.parse(entry["severity"]),
        drift_type=entry.get("drift_type", "configuration_change"),
        scope=entry.get("scope", SCOPE_CHANGE),
        condition=RuleCondition(
            field=cond.get("field", ""),
            operator=cond.get("operator", "changed"),
            value=cond.get("value"),
            change_types=tuple(cond.get("change_types", ())),
            previous=previous,
        ),
        resource_types=tuple(t.lower() for t in applies.get("resource_types", ())),
        providers=tuple(p.lower() for p in applies.get("providers", ())),
    )


def load_ruleset(path: str) -> RuleSet:
    try:
        with open(path, "r") as f:
            config = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning(f"Security rules file not found at {path}")
        return RuleSet()
    ruleset = RuleSet.from_dicts(config.get("rules", []))
    logger.info(f"Loaded {len(ruleset)} security rules from {path}")
    return ruleset


# ============================================================
# Evaluation
# ============================================================

@dataclass(frozen=True)
class RuleMatch:
    """A rule that fired, with the field paths it fired on."""

    rule_id: str
    title: str
    severity: Severity
    drift_type: str
    field_paths: tuple[str, ...]


@dataclass(frozen=True)
class RuleEvaluation:
    matches: tuple[RuleMatch, ...] = ()      # declaration order
    errors: tuple[str, ...] = ()

    @property
    def severity(self) -> Optional[Severity]:
        if not self.matches:
            return None
        return max((m.severity for m in self.matches), key=lambda s: s.rank)

    @property
    def primary(self) -> Optional[RuleMatch]:
        top = self.severity
        for match in self.matches:
            if match.severity == top:
                return match
        return None

    @property
    def matched_rule_ids(self) -> list[str]:
        return [m.rule_id for m in self.matches]


class RulesEngine:
    """Evaluates a RuleSet against a diff and/or a current configuration. Stateless."""

    def __init__(self, ruleset: RuleSet):
        self.ruleset = ruleset

    def evaluate(
        self,
        resource_type: str,
        provider: str,
        changes: Iterable[FieldChange] = (),
        configuration: Any = None,
    ) -> RuleEvaluation:
        changes = tuple(changes)
        matches = []
        errors = []

        for rule in self.ruleset:
            if not rule.applies_to(resource_type, provider):
                continue
            try:
                if rule.scope == SCOPE_CHANGE:
                    paths = rule.match_changes(changes)
                elif rule.scope == SCOPE_STATE:
                    paths = rule.match_state(configuration) if configuration is not None else []
                else:
                    raise RuleEvaluationError(rule.id, f"unknown scope '{rule.scope}'")
            except RuleEvaluationError as e:
                logger.warning(f"Security rule skipped: {e}")
                errors.append(str(e))
                continue

            if paths:
                matches.append(RuleMatch(
                    rule_id=rule.id,
                    title=rule.title,
                    severity=rule.severity,
                    drift_type=rule.drift_type,
                    field_paths=tuple(dict.fromkeys(paths)),
                ))

        return RuleEvaluation(matches=tuple(matches), errors=tuple(errors))
