"""Rule-based result inversion.

An inversion rule is a pure function ResultStatus -> ResultStatus used for
"expect failure" style checks, e.g. a probe that passes when a
vulnerability is present should count as a failure.
"""

import re
from typing import Any, Callable, Iterable

from .logging_config import get_logger
from .metrics import record_inversion
from .result import ProbeResult
from .types import ResultStatus, UnknownInversionRuleError, coerce_status

logger = get_logger(__name__)

InversionRule = Callable[[ResultStatus], ResultStatus]

NO_INVERSION = "none"

S = ResultStatus

# Status remapping tables; statuses not listed are unchanged
EXPECT_FAILURE = {S.PASS: S.FAIL, S.FAIL: S.PASS}
EXPECT_WARNING = {S.PASS: S.WARNING, S.WARNING: S.PASS}
SECURITY_INVERTED = {S.PASS: S.FAIL, S.FAIL: S.PASS, S.WARNING: S.WARNING}
COLLAPSE_TO_FAIL = {S.TIMEOUT: S.FAIL, S.ERROR: S.FAIL}
COMPLIANCE_STRICT = {S.WARNING: S.FAIL}
COMPLIANCE_LENIENT = {S.FAIL: S.WARNING}


def table_rule(table: dict[ResultStatus, ResultStatus]) -> InversionRule:
    """Build a rule from a mapping table."""
    mapping = dict(table)
    return lambda status: mapping.get(status, status)


def chain_rules(*rules: InversionRule) -> InversionRule:
    """Apply rules one after another."""
    def chained(status: ResultStatus) -> ResultStatus:
        for rule in rules:
            status = rule(status)
        return status
    return chained


def default_rules() -> dict[str, InversionRule]:
    return {
        "expect_failure": table_rule(EXPECT_FAILURE),
        "expect_warning": table_rule(EXPECT_WARNING),
        "security_inverted": table_rule(SECURITY_INVERTED),
        # Two stages: an original timeout/error becomes fail, then pass
        "availability_inverted": chain_rules(table_rule(COLLAPSE_TO_FAIL), table_rule(EXPECT_FAILURE)),
        "compliance_strict": table_rule(COMPLIANCE_STRICT),
        "compliance_lenient": table_rule(COMPLIANCE_LENIENT),
    }


REQUIRED_RULES = ("expect_failure", "security_inverted")


class ResultInverter:
    """Registry of named inversion rules and their application."""

    def __init__(self):
        self._rules: dict[str, InversionRule] = default_rules()

    def add_rule(self, name: str, rule: InversionRule) -> None:
        if name == NO_INVERSION:
            raise ValueError(f"'{NO_INVERSION}' is reserved")
        self._rules[name] = rule

    def remove_rule(self, name: str) -> bool:
        return self._rules.pop(name, None) is not None

    def available_rules(self) -> list[str]:
        return list(self._rules)

    def has_rule(self, name: str | None) -> bool:
        return name in (None, NO_INVERSION) or name in self._rules

    def reset_to_defaults(self) -> None:
        self._rules = default_rules()

    def require_rule(self, name: str) -> InversionRule:
        """
        Raises:
            UnknownInversionRuleError: If no rule is registered under name
        """
        try:
            return self._rules[name]
        except KeyError:
            raise UnknownInversionRuleError(f"Unknown inversion mode: {name}", rule_name=name) from None

    def map_status(self, status: ResultStatus | str, rule_name: str) -> ResultStatus:
        """Status a rule would produce, without touching any result."""
        return self.require_rule(rule_name)(coerce_status(status))

    def apply_inversion(self, result: ProbeResult, rule_name: str | None) -> ProbeResult:
        """
        Return an inverted copy of result.

        The copy's data gains original_status, original_message and
        inversion_applied; its message is annotated with the change.
        rule_name None or "none" returns result unchanged.
        """
        if rule_name in (None, NO_INVERSION):
            return result

        rule = self.require_rule(rule_name)
        original_status = result.status
        new_status = coerce_status(rule(original_status))

        inverted = result.copy()
        inverted.status = new_status
        inverted.add_data("original_status", original_status.value)
        inverted.add_data("original_message", result.message)
        inverted.add_data("inversion_applied", rule_name)

        if new_status == original_status:
            note = f"[Inversion: {rule_name} - no change]"
        else:
            note = f"[Inverted: {original_status.value} → {new_status.value} via {rule_name}]"
        inverted.message = f"{result.message} {note}" if result.message else note

        changed = new_status != original_status
        record_inversion(rule_name, changed)
        logger.debug(
            "inversion_applied",
            probe=result.probe_name,
            rule=rule_name,
            original_status=original_status.value,
            inverted_status=new_status.value,
            changed=changed,
        )
        return inverted

    @staticmethod
    def matches_conditions(result: ProbeResult, conditions: dict[str, Any]) -> bool:
        """
        True when every condition holds.

        Supported conditions:
            probe_name: name or list of names
            status: status or list of statuses
            target_pattern: regex searched in the target
            score_threshold: score present and below the threshold
            execution_time_min / execution_time_max: bounds in seconds
            data_contains: dict of key/value pairs present in data
            custom_condition: callable(result) -> bool
        """
        for kind, expected in conditions.items():
            if kind == "probe_name":
                names = [expected] if isinstance(expected, str) else list(expected)
                if result.probe_name not in names:
                    return False
            elif kind == "status":
                values = [expected] if isinstance(expected, (str, ResultStatus)) else list(expected)
                if result.status not in {coerce_status(v) for v in values}:
                    return False
            elif kind == "target_pattern":
                if result.target and not re.search(expected, result.target):
                    return False
            elif kind == "score_threshold":
                if result.score is None or result.score >= expected:
                    return False
            elif kind == "execution_time_min":
                if result.execution_time < expected:
                    return False
            elif kind == "execution_time_max":
                if result.execution_time > expected:
                    return False
            elif kind == "data_contains":
                for key, value in expected.items():
                    if key not in result.data or result.data[key] != value:
                        return False
            elif kind == "custom_condition":
                if callable(expected) and not expected(result):
                    return False
            else:
                logger.warning("unknown_inversion_condition", condition=kind)
        return True

    def apply_conditional_inversion(
        self, result: ProbeResult, conditions: dict[str, Any], rule_name: str
    ) -> ProbeResult:
        if not self.matches_conditions(result, conditions):
            return result
        return self.apply_inversion(result, rule_name)

    def apply_multiple_inversions(self, result: ProbeResult, rule_names: Iterable[str]) -> ProbeResult:
        for name in rule_names:
            result = self.apply_inversion(result, name)
        return result

    def create_profile(self, name: str, rules: Iterable[tuple[ResultStatus | str, ResultStatus | str]]) -> None:
        """Register a rule from (from_status, to_status) pairs; first match wins."""
        table: dict[ResultStatus, ResultStatus] = {}
        for source, destination in rules:
            table.setdefault(coerce_status(source), coerce_status(destination))
        self.add_rule(name, table_rule(table))

    def batch_apply(self, results: dict[str, ProbeResult], rule_name: str) -> dict[str, ProbeResult]:
        return {key: self.apply_inversion(result, rule_name) for key, result in results.items()}

    @staticmethod
    def suggest_rule(result: ProbeResult, context: dict[str, Any] | None = None) -> str:
        """Pick a rule from the probe name and context."""
        name = result.probe_name.lower()
        context = context or {}
        if any(word in name for word in ("vulnerability", "exploit", "malware")):
            return "security_inverted"
        if "compliance_mode" in context:
            return "compliance_strict" if context["compliance_mode"] == "strict" else "compliance_lenient"
        if any(word in name for word in ("availability", "uptime", "response_time")):
            return "availability_inverted"
        return NO_INVERSION

    def apply_smart_inversion(self, result: ProbeResult, context: dict[str, Any] | None = None) -> ProbeResult:
        return self.apply_inversion(result, self.suggest_rule(result, context))

    @staticmethod
    def inversion_statistics(results: Iterable[ProbeResult]) -> dict[str, Any]:
        """Count inverted results, rules used and status changes."""
        results = list(results)
        stats: dict[str, Any] = {
            "total_results": len(results),
            "inversions_applied": 0,
            "status_changes": {},
            "inversion_modes_used": {},
        }
        for result in results:
            rule = result.data.get("inversion_applied")
            if not rule:
                continue
            stats["inversions_applied"] += 1
            stats["inversion_modes_used"][rule] = stats["inversion_modes_used"].get(rule, 0) + 1
            original = result.data.get("original_status")
            if original:
                key = f"{original}_to_{result.status.value}"
                stats["status_changes"][key] = stats["status_changes"].get(key, 0) + 1
        return stats

    def validate_configuration(self) -> list[str]:
        """Return a list of configuration problems (empty when valid)."""
        issues = [f"Missing required inversion rule: {name}" for name in REQUIRED_RULES if name not in self._rules]
        for name, rule in self._rules.items():
            for status in ResultStatus:
                try:
                    mapped = rule(status)
                except Exception as e:
                    issues.append(f"Invalid inversion rule '{name}': {e}")
                    break
                if not isinstance(mapped, ResultStatus):
                    issues.append(f"Invalid inversion rule '{name}': returned {mapped!r} for {status.value}")
                    break
        return issues
