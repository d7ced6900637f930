"""
Payload validation collaborator.

The gateway asks a validator about every payload whose source declares a
``data_kind``. Warnings are only logged; an invalid payload is rejected only
when its kind fails closed (tax rates: serving a malformed rate is worse than
serving nothing).
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    """Result of validating one payload."""
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    quality_score: float = 1.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "quality_score": round(self.quality_score, 4),
        }


class DataValidator(Protocol):
    """Capability the gateway needs from a validation collaborator."""

    def validate(self, kind: str, payload: Any) -> ValidationResult: ...

    def fails_closed(self, kind: str) -> bool: ...


@dataclass(frozen=True)
class RangeRule:
    field: str
    min_value: float
    max_value: float
    # Outside the range is an error when strict, a warning otherwise
    strict: bool = True


@dataclass(frozen=True)
class KindRules:
    required: Tuple[str, ...] = ()
    ranges: Tuple[RangeRule, ...] = ()


DEFAULT_RULES: Dict[str, KindRules] = {
    "housing": KindRules(
        required=("location.postalCode", "prices.averagePrice"),
        ranges=(
            RangeRule("prices.averagePrice", 0, 10_000_000),
            RangeRule("prices.medianPrice", 0, 10_000_000),
            RangeRule("rental.averageRent", 0, 20_000, strict=False),
            RangeRule("rental.vacancyRate", 0, 100),
        ),
    ),
    "economic_indicators": KindRules(
        required=("interestRates.policyRate",),
        ranges=(
            RangeRule("interestRates.policyRate", -1, 25),
            RangeRule("interestRates.primeRate", -1, 30),
            RangeRule("inflation.cpi", -10, 30, strict=False),
        ),
    ),
    "utility_rates": KindRules(
        required=("electricity.residentialRate",),
        ranges=(
            RangeRule("electricity.residentialRate", 0, 100),
            RangeRule("naturalGas.residentialRate", 0, 200, strict=False),
        ),
    ),
    "tax_rates": KindRules(
        required=("federal.gst",),
        ranges=(
            RangeRule("federal.gst", 0, 100),
            RangeRule("provincial.pst", 0, 100),
            RangeRule("provincial.hst", 0, 100),
            RangeRule("municipal.propertyTaxRate", 0, 100),
        ),
    ),
}

FAIL_CLOSED_KINDS = frozenset({"tax_rates"})

_ABSENT = object()


def _lookup(payload: Any, dotted: str) -> Any:
    """Resolve ``a.b.c`` against nested mappings; _ABSENT when missing."""
    current = payload
    for part in dotted.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return _ABSENT
        current = current[part]
    return current


class RuleValidator:
    """
    Validates payloads against required-field and numeric-range rules.

    Unknown kinds validate as-is with a warning.
    """

    def __init__(
        self,
        rules: Optional[Mapping[str, KindRules]] = None,
        fail_closed_kinds: Iterable[str] = FAIL_CLOSED_KINDS,
    ):
        self.rules: Dict[str, KindRules] = dict(rules if rules is not None else DEFAULT_RULES)
        self._fail_closed = frozenset(fail_closed_kinds)

    def fails_closed(self, kind: str) -> bool:
        return kind in self._fail_closed

    def validate(self, kind: str, payload: Any) -> ValidationResult:
        rules = self.rules.get(kind)
        if rules is None:
            return ValidationResult(is_valid=True, warnings=[f"No validation rules for kind '{kind}'"])

        if not isinstance(payload, Mapping):
            return ValidationResult(
                is_valid=False,
                errors=[f"Expected an object payload for '{kind}', got {type(payload).__name__}"],
                quality_score=0.0,
            )

        errors: List[str] = []
        warnings: List[str] = []
        checks = 0

        for path in rules.required:
            checks += 1
            value = _lookup(payload, path)
            if value is _ABSENT or value is None or value == "":
                errors.append(f"{path} is required")

        for rule in rules.ranges:
            value = _lookup(payload, rule.field)
            if value is _ABSENT or value is None:
                continue
            checks += 1
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                errors.append(f"{rule.field} must be numeric")
                continue
            if not rule.min_value <= value <= rule.max_value:
                message = (
                    f"{rule.field}={value} outside [{rule.min_value}, {rule.max_value}]"
                )
                if rule.strict:
                    errors.append(message)
                else:
                    warnings.append(message)

        failed = len(errors) + 0.5 * len(warnings)
        quality = max(0.0, 1.0 - failed / checks) if checks else 1.0
        return ValidationResult(
            is_valid=not errors,
            errors=errors,
            warnings=warnings,
            quality_score=quality,
        )
