"""Scoped rule engine for ``Crysknife.ini`` configuration files.

A config file declares variables and rule lines grouped by path scopes::

    [Variables]
    Astc=ThirdParty/astcenc

    [Global]
    SkipIf=IsTruthy:${Disabled}

    [ThirdParty/astc-encoder|ThirdParty/astc-legacy]
    SkipIf=TargetExists:${Astc}
    +SkipIf=NameMatches:*.txt
    ^RemapIf=Always
    RemapTarget=ThirdParty/astcenc

Scopes form a tree keyed by path prefix. Resolving a path walks the tree from
``[Global]`` to the most specific scope and folds rule lines in that order:
plain lines replace, ``+`` lines append predicates, and ``^`` (BaseDomain)
rules can only be touched by other ``^`` lines.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional, Tuple

from ..errors import CrysknifeError
from .predicates import FactSet, Predicate, PredicateSyntaxError, evaluate_predicates, parse_predicates

LOGGER = logging.getLogger(__name__)

CONFIG_FILE_NAME = "Crysknife.ini"
LOCAL_CONFIG_FILE_NAME = "CrysknifeLocal.ini"
GLOBAL_SECTION = "Global"
VARIABLES_SECTION = "Variables"
_MAX_SUBSTITUTION_DEPTH = 16
_VARIABLE_PATTERN = re.compile(r"\$\{(?P<name>[^}]*)\}")


class ConfigParseError(CrysknifeError):
    """Raised for malformed config files; always fatal."""

    def __init__(self, message: str, *, source: str = "<config>", line: int | None = None) -> None:
        location = f"{source}:{line}" if line is not None else source
        super().__init__(f"{location}: {message}", details={"source": source, "line": line})
        self.source = source
        self.line = line


class VariableUndefinedError(ConfigParseError):
    """Raised when ``${Name}`` refers to a variable nobody declares."""

    def __init__(self, name: str, *, source: str = "<config>", line: int | None = None) -> None:
        super().__init__(f"Undefined variable '{name}'", source=source, line=line)
        self.name = name


class RuleKind(str, Enum):
    SKIP_IF = "SkipIf"
    REMAP_IF = "RemapIf"
    FLATTEN_IF = "FlattenIf"
    REMAP_TARGET = "RemapTarget"


@dataclass(slots=True, frozen=True)
class RuleLine:
    """Single ``Key=Value`` directive as written in a scope."""

    kind: RuleKind
    scope: str
    predicates: Tuple[Predicate, ...] = ()
    value: str = ""
    append: bool = False
    base_domain: bool = False
    source: str = "<config>"
    line: int = 0


@dataclass(slots=True, frozen=True)
class Rule:
    """Effective rule for one key after folding every line in a scope chain."""

    kind: RuleKind
    predicates: Tuple[Predicate, ...] = ()
    value: str = ""
    base_domain: bool = False
    scope: str = ""


@dataclass(slots=True, frozen=True)
class ScopeNode:
    prefix: str
    parent: Optional[int]
    lines: Tuple[RuleLine, ...] = ()

    @property
    def depth(self) -> int:
        return len(PurePosixPath(self.prefix).parts) if self.prefix else 0


@dataclass(slots=True, frozen=True)
class Resolution:
    """Outcome of evaluating the rules for one target path."""

    target_path: str
    destination: str
    skip: bool = False
    remap: bool = False
    flatten: bool = False


def normalise_scope_path(raw: str) -> str:
    cleaned = raw.strip().replace("\\", "/").strip("/")
    if not cleaned:
        return ""
    return PurePosixPath(cleaned).as_posix()


def _is_within(path: str, prefix: str) -> bool:
    if not prefix:
        return True
    return path == prefix or path.startswith(prefix + "/")


def _rebase(path: str, old_prefix: str, new_prefix: str) -> str:
    remainder = path[len(old_prefix):].strip("/") if old_prefix else path
    return "/".join(part for part in (new_prefix, remainder) if part)


@dataclass(slots=True)
class _ParseState:
    variables: Dict[str, str] = field(default_factory=dict)
    scopes: Dict[str, List[RuleLine]] = field(default_factory=dict)
    references: List[Tuple[str, str, int]] = field(default_factory=list)


class RuleEngine:
    """Immutable rule set built once per invocation and shared across files."""

    def __init__(
        self,
        variables: Mapping[str, str] | None = None,
        scopes: Sequence[ScopeNode] | None = None,
        *,
        defines: Mapping[str, str] | None = None,
    ) -> None:
        self._variables: Dict[str, str] = dict(variables or {})
        self._variables.update(defines or {})
        self._scopes: Tuple[ScopeNode, ...] = tuple(scopes or (ScopeNode(prefix="", parent=None),))

    @property
    def variables(self) -> Dict[str, str]:
        return dict(self._variables)

    @property
    def scopes(self) -> Tuple[ScopeNode, ...]:
        return self._scopes

    @classmethod
    def empty(cls, *, defines: Mapping[str, str] | None = None) -> "RuleEngine":
        return cls(defines=defines)

    @classmethod
    def from_text(
        cls,
        text: str,
        *,
        source: str = "<config>",
        defines: Mapping[str, str] | None = None,
    ) -> "RuleEngine":
        state = _ParseState()
        _parse_into(state, text, source)
        return cls._finalise(state, defines or {})

    @classmethod
    def from_files(
        cls,
        paths: Iterable[Path],
        *,
        defines: Mapping[str, str] | None = None,
    ) -> "RuleEngine":
        """Parse every existing file in order into one engine."""
        state = _ParseState()
        for path in paths:
            if not path.is_file():
                continue
            try:
                text = path.read_text(encoding="utf-8")
            except OSError as error:
                raise ConfigParseError(f"Unable to read config: {error}", source=str(path)) from error
            LOGGER.debug("Loading rules from %s", path)
            _parse_into(state, text, str(path))
        return cls._finalise(state, defines or {})

    @classmethod
    def _finalise(cls, state: _ParseState, defines: Mapping[str, str]) -> "RuleEngine":
        known = set(state.variables) | set(defines)
        for name, source, line in state.references:
            if name not in known:
                raise VariableUndefinedError(name, source=source, line=line)

        engine = cls(state.variables, defines=defines)
        resolved: Dict[str, List[RuleLine]] = {}
        for raw_prefix, lines in state.scopes.items():
            prefix = normalise_scope_path(engine.substitute(raw_prefix))
            bucket = resolved.setdefault(prefix, [])
            bucket.extend(RuleLine(
                kind=line.kind,
                scope=prefix,
                predicates=line.predicates,
                value=line.value,
                append=line.append,
                base_domain=line.base_domain,
                source=line.source,
                line=line.line,
            ) for line in lines)
        resolved.setdefault("", [])

        ordered = sorted(resolved, key=lambda prefix: (len(PurePosixPath(prefix).parts) if prefix else 0, prefix))
        nodes: list[ScopeNode] = []
        index_of: Dict[str, int] = {}
        for prefix in ordered:
            parent: Optional[int] = None
            if prefix:
                parent = 0
                for candidate, candidate_index in index_of.items():
                    if candidate and _is_within(prefix, candidate) and len(candidate) > len(nodes[parent].prefix):
                        parent = candidate_index
            index_of[prefix] = len(nodes)
            nodes.append(ScopeNode(prefix=prefix, parent=parent, lines=tuple(resolved[prefix])))
        engine._scopes = tuple(nodes)
        return engine

    def substitute(self, text: str) -> str:
        """Expand ``${Name}`` tokens, following variables that reference others."""

        def expand(value: str, depth: int) -> str:
            if depth > _MAX_SUBSTITUTION_DEPTH:
                raise ConfigParseError(f"Variable expansion too deep (cycle?) in '{text}'")

            def lookup(match: re.Match[str]) -> str:
                name = match.group("name")
                if name not in self._variables:
                    raise VariableUndefinedError(name)
                return expand(self._variables[name], depth + 1)

            return _VARIABLE_PATTERN.sub(lookup, value)

        return expand(text, 0)

    def chain(self, target_path: str) -> List[ScopeNode]:
        """Scope nodes applying to ``target_path``, Global first."""
        path = normalise_scope_path(target_path)
        best = 0
        for index, node in enumerate(self._scopes):
            if node.prefix and _is_within(path, node.prefix) and node.depth >= self._scopes[best].depth:
                best = index
        chain: list[ScopeNode] = []
        cursor: Optional[int] = best
        while cursor is not None:
            node = self._scopes[cursor]
            chain.append(node)
            cursor = node.parent
        chain.reverse()
        return chain

    def rules_for(self, target_path: str) -> Dict[RuleKind, Rule]:
        rules: Dict[RuleKind, Rule] = {}
        for node in self.chain(target_path):
            for line in node.lines:
                current = rules.get(line.kind)
                if current is not None and current.base_domain and not line.base_domain:
                    LOGGER.debug(
                        "Ignoring %s at %s:%d; BaseDomain rule from scope '%s' takes precedence",
                        line.kind.value,
                        line.source,
                        line.line,
                        current.scope,
                    )
                    continue
                if line.append and current is not None:
                    rules[line.kind] = Rule(
                        kind=line.kind,
                        predicates=current.predicates + line.predicates,
                        value=line.value or current.value,
                        base_domain=current.base_domain or line.base_domain,
                        scope=line.scope,
                    )
                else:
                    rules[line.kind] = Rule(
                        kind=line.kind,
                        predicates=line.predicates,
                        value=line.value,
                        base_domain=line.base_domain,
                        scope=line.scope,
                    )
        return rules

    def evaluate(self, target_path: str, facts: FactSet | None = None) -> Resolution:
        """Resolve skip/remap/flatten for ``target_path`` against ``facts``."""

        path = normalise_scope_path(target_path)
        facts = (facts or FactSet()).for_path(path)
        rules = self.rules_for(path)

        def holds(kind: RuleKind) -> bool:
            rule = rules.get(kind)
            return rule is not None and evaluate_predicates(rule.predicates, facts, self.substitute)

        if holds(RuleKind.SKIP_IF):
            return Resolution(target_path=path, destination=path, skip=True)

        remap = holds(RuleKind.REMAP_IF)
        flatten = holds(RuleKind.FLATTEN_IF)
        destination = path
        flatten_base = rules[RuleKind.FLATTEN_IF].scope if flatten else ""

        if remap:
            target = rules.get(RuleKind.REMAP_TARGET)
            if target is None or not target.value.strip():
                raise ConfigParseError(f"RemapIf holds for '{path}' but no RemapTarget is defined")
            new_prefix = normalise_scope_path(self.substitute(target.value))
            destination = _rebase(path, target.scope, new_prefix)
            if flatten:
                flatten_base = (
                    _rebase(flatten_base, target.scope, new_prefix)
                    if _is_within(flatten_base, target.scope)
                    else new_prefix
                )

        if flatten:
            destination = "/".join(part for part in (flatten_base, PurePosixPath(destination).name) if part)

        return Resolution(target_path=path, destination=destination, skip=False, remap=remap, flatten=flatten)


def _parse_key(raw_key: str) -> tuple[str, bool, bool]:
    key = raw_key.strip()
    append = base_domain = False
    while key[:1] in {"+", "^"}:
        if key[0] == "+":
            append = True
        else:
            base_domain = True
        key = key[1:].strip()
    return key, append, base_domain


def _parse_into(state: _ParseState, text: str, source: str) -> None:
    section: Optional[List[str]] = None
    in_variables = False

    for number, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith((";", "#")):
            continue

        if line.startswith("["):
            if not line.endswith("]"):
                raise ConfigParseError(f"Unterminated section header '{line}'", source=source, line=number)
            name = line[1:-1].strip()
            if not name:
                raise ConfigParseError("Empty section header", source=source, line=number)
            in_variables = name == VARIABLES_SECTION
            if in_variables:
                section = []
            elif name == GLOBAL_SECTION:
                section = [""]
            else:
                prefixes = [entry.strip() for entry in name.split("|")]
                if any(not entry for entry in prefixes):
                    raise ConfigParseError(f"Empty path in section '{name}'", source=source, line=number)
                section = prefixes
            for prefix in section:
                for reference in _VARIABLE_PATTERN.finditer(prefix):
                    state.references.append((reference.group("name"), source, number))
                state.scopes.setdefault(prefix, [])
            continue

        if "=" not in line:
            raise ConfigParseError(f"Expected 'Key=Value', got '{line}'", source=source, line=number)
        if section is None:
            raise ConfigParseError("Directive outside of any section", source=source, line=number)

        raw_key, _, raw_value = line.partition("=")
        value = raw_value.strip()
        for reference in _VARIABLE_PATTERN.finditer(value):
            state.references.append((reference.group("name"), source, number))

        if in_variables:
            name = raw_key.strip()
            if not name or _VARIABLE_PATTERN.search(name):
                raise ConfigParseError(f"Invalid variable name '{name}'", source=source, line=number)
            state.variables[name] = value
            continue

        key, append, base_domain = _parse_key(raw_key)
        try:
            kind = RuleKind(key)
        except ValueError as error:
            raise ConfigParseError(f"Unknown rule key '{key}'", source=source, line=number) from error

        predicates: Tuple[Predicate, ...] = ()
        if kind is RuleKind.REMAP_TARGET:
            if not value:
                raise ConfigParseError("RemapTarget requires a path", source=source, line=number)
        else:
            try:
                predicates = parse_predicates(value)
            except PredicateSyntaxError as error:
                raise ConfigParseError(str(error), source=source, line=number) from error

        for prefix in section:
            state.scopes[prefix].append(
                RuleLine(
                    kind=kind,
                    scope=prefix,
                    predicates=predicates,
                    value=value if kind is RuleKind.REMAP_TARGET else "",
                    append=append,
                    base_domain=base_domain,
                    source=source,
                    line=number,
                )
            )


def config_paths(patch_root: Path) -> List[Path]:
    """Config files consulted for a plugin, in override order."""
    return [patch_root / CONFIG_FILE_NAME, patch_root / LOCAL_CONFIG_FILE_NAME]


__all__ = [
    "CONFIG_FILE_NAME",
    "LOCAL_CONFIG_FILE_NAME",
    "ConfigParseError",
    "Resolution",
    "Rule",
    "RuleEngine",
    "RuleKind",
    "RuleLine",
    "ScopeNode",
    "VariableUndefinedError",
    "config_paths",
    "normalise_scope_path",
]
