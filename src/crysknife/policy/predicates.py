"""Predicates used by ``Crysknife.ini`` rules.

The predicate set is closed: each :class:`PredicateKind` maps to one
evaluation function in ``OPERAND_DISPATCH`` that inspects an explicit
:class:`FactSet`. Syntax inside a rule value::

    TargetExists:Path/A,!Path/B|IsTruthy:${Flag}|Conjunctions:Root

``|`` separates predicates, ``,`` separates operands, ``!`` negates a single
operand (or, in front of the predicate name, the whole predicate).
``Conjunctions`` switches combinations from OR to AND: ``Root`` for the
predicates of the rule, a predicate name for that predicate's operands,
``Predicates`` for every predicate's operands and ``All`` for everything.
"""

from __future__ import annotations

import fnmatch
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, Tuple

__all__ = [
    "CONJUNCTION_ALL",
    "CONJUNCTION_PREDICATES",
    "CONJUNCTION_ROOT",
    "FactSet",
    "Operand",
    "Predicate",
    "PredicateKind",
    "PredicateSyntaxError",
    "evaluate_predicate",
    "evaluate_predicates",
    "parse_predicates",
]

CONJUNCTION_ROOT = "Root"
CONJUNCTION_PREDICATES = "Predicates"
CONJUNCTION_ALL = "All"
TRUTHY_VALUES = frozenset({"1", "true", "yes", "on"})


class PredicateSyntaxError(ValueError):
    """Raised for malformed predicate lists; callers attach file/line info."""


class PredicateKind(str, Enum):
    """Closed set of predicates understood by the rule engine."""

    TARGET_EXISTS = "TargetExists"
    IS_TRUTHY = "IsTruthy"
    NAME_MATCHES = "NameMatches"
    ALWAYS = "Always"
    NEVER = "Never"
    CONJUNCTIONS = "Conjunctions"


_OPERANDLESS = {PredicateKind.ALWAYS, PredicateKind.NEVER}
_CONJUNCTION_NAMES = {CONJUNCTION_ROOT, CONJUNCTION_PREDICATES, CONJUNCTION_ALL} | {
    kind.value for kind in PredicateKind if kind is not PredicateKind.CONJUNCTIONS
}


@dataclass(slots=True, frozen=True)
class Operand:
    text: str
    negated: bool = False


@dataclass(slots=True, frozen=True)
class Predicate:
    kind: PredicateKind
    operands: Tuple[Operand, ...] = ()
    negated: bool = False


@dataclass(slots=True, frozen=True)
class FactSet:
    """Facts a predicate may consult while evaluating one target path."""

    destination_root: Path | None = None
    defines: Mapping[str, str] = field(default_factory=dict)
    target_path: str = ""
    file_name: str = ""

    def for_path(self, target_path: str) -> "FactSet":
        name = PurePosixPath(target_path).name if target_path else ""
        return replace(self, target_path=target_path, file_name=self.file_name or name)

    def target_exists(self, relative: str) -> bool:
        if self.destination_root is None or not relative:
            return False
        return (self.destination_root / relative.strip("/")).exists()

    def is_truthy(self, name: str) -> bool:
        value = self.defines.get(name, name)
        return str(value).strip().lower() in TRUTHY_VALUES


Substitute = Callable[[str], str]
OperandHandler = Callable[[str, FactSet], bool]


def _eval_target_exists(operand: str, facts: FactSet) -> bool:
    return facts.target_exists(operand)


def _eval_is_truthy(operand: str, facts: FactSet) -> bool:
    return facts.is_truthy(operand)


def _eval_name_matches(operand: str, facts: FactSet) -> bool:
    if "/" in operand:
        return fnmatch.fnmatchcase(facts.target_path, operand)
    return fnmatch.fnmatchcase(facts.file_name, operand)


OPERAND_DISPATCH: Dict[PredicateKind, OperandHandler] = {
    PredicateKind.TARGET_EXISTS: _eval_target_exists,
    PredicateKind.IS_TRUTHY: _eval_is_truthy,
    PredicateKind.NAME_MATCHES: _eval_name_matches,
}


def _split_negation(raw: str) -> tuple[str, bool]:
    text = raw.strip()
    negated = False
    while text.startswith("!"):
        negated = not negated
        text = text[1:].strip()
    return text, negated


def parse_predicates(value: str) -> Tuple[Predicate, ...]:
    """Parse ``Pred:op,op|Pred2`` into predicates, validating names."""

    predicates: list[Predicate] = []
    for chunk in value.split("|"):
        if not chunk.strip():
            raise PredicateSyntaxError(f"Empty predicate in '{value}'")
        head, _, tail = chunk.partition(":")
        name, negated = _split_negation(head)
        try:
            kind = PredicateKind(name)
        except ValueError as error:
            raise PredicateSyntaxError(f"Unknown predicate '{name}'") from error

        operands: list[Operand] = []
        if tail.strip():
            for raw_operand in tail.split(","):
                text, operand_negated = _split_negation(raw_operand)
                if not text:
                    raise PredicateSyntaxError(f"Empty operand in '{chunk.strip()}'")
                operands.append(Operand(text=text, negated=operand_negated))

        if kind in _OPERANDLESS and operands:
            raise PredicateSyntaxError(f"Predicate '{kind.value}' takes no operands")
        if kind not in _OPERANDLESS and not operands:
            raise PredicateSyntaxError(f"Predicate '{kind.value}' requires at least one operand")
        if kind is PredicateKind.CONJUNCTIONS:
            for operand in operands:
                if operand.negated or ("${" not in operand.text and operand.text not in _CONJUNCTION_NAMES):
                    raise PredicateSyntaxError(f"Unknown conjunction target '{operand.text}'")
        predicates.append(Predicate(kind=kind, operands=tuple(operands), negated=negated))
    return tuple(predicates)


def _identity(text: str) -> str:
    return text


def conjunction_targets(predicates: Iterable[Predicate], substitute: Substitute = _identity) -> set[str]:
    targets: set[str] = set()
    for predicate in predicates:
        if predicate.kind is PredicateKind.CONJUNCTIONS:
            targets.update(substitute(operand.text) for operand in predicate.operands)
    return targets


def evaluate_predicate(
    predicate: Predicate,
    facts: FactSet,
    substitute: Substitute = _identity,
    *,
    conjunctive: bool = False,
) -> bool:
    """Evaluate one predicate; operands combine with OR unless ``conjunctive``."""

    if predicate.kind is PredicateKind.ALWAYS:
        value = True
    elif predicate.kind is PredicateKind.NEVER:
        value = False
    else:
        handler = OPERAND_DISPATCH[predicate.kind]
        outcomes = [handler(substitute(operand.text), facts) != operand.negated for operand in predicate.operands]
        if not outcomes:
            value = False
        else:
            value = all(outcomes) if conjunctive else any(outcomes)
    return value != predicate.negated


def evaluate_predicates(
    predicates: Iterable[Predicate],
    facts: FactSet,
    substitute: Substitute = _identity,
) -> bool:
    """Evaluate a rule's predicate list honouring ``Conjunctions`` directives."""

    predicates = tuple(predicates)
    targets = conjunction_targets(predicates, substitute)
    everything = CONJUNCTION_ALL in targets
    root_and = everything or CONJUNCTION_ROOT in targets
    operands_and = everything or CONJUNCTION_PREDICATES in targets

    results: list[bool] = []
    for predicate in predicates:
        if predicate.kind is PredicateKind.CONJUNCTIONS:
            continue
        conjunctive = operands_and or predicate.kind.value in targets
        results.append(evaluate_predicate(predicate, facts, substitute, conjunctive=conjunctive))
    if not results:
        return False
    return all(results) if root_and else any(results)
