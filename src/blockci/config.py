# config.py
"""
Pipeline document loading.

    parse(document) -> Pipeline          (raises ConfigError)
    load_pipeline(path) -> Pipeline

The document is YAML (or an already-loaded mapping). Shape is validated by
`blockci.schema`; everything that needs cross-field knowledge (duplicate
names, interpolation syntax, cache/service directives, matrix expansion)
happens here.
"""
from __future__ import annotations

import itertools
import logging
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import yaml
from pydantic import ValidationError

from .errors import ConfigError
from .model import (
    AgentSpec,
    Block,
    CacheRestore,
    CacheStore,
    Command,
    Directive,
    Epilogue,
    Job,
    Pipeline,
    Prologue,
    ServiceStart,
)
from .schema import AgentDoc, BlockDoc, CommandsDoc, EnvVarDoc, JobDoc, PipelineDoc

logger = logging.getLogger(__name__)

Document = Union[str, bytes, Mapping[str, Any]]


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def load_pipeline(path: str | Path) -> Pipeline:
    p = Path(path).expanduser()
    if not p.exists():
        raise ConfigError("configuration file not found", str(p))
    if not p.is_file():
        raise ConfigError("configuration path is not a file", str(p))
    return parse(p.read_text(encoding="utf-8"))


def parse(document: Document) -> Pipeline:
    """
    Parse a pipeline document into an immutable Pipeline graph.

    Nothing is executed here: `$VAR` interpolation is syntax-checked only,
    and cache/service commands are recognised but not run.
    """
    data = _load(document)

    try:
        doc = PipelineDoc.model_validate(data)
    except ValidationError as e:
        raise _config_error_from(e) from None

    block_names: set[str] = set()
    blocks: List[Block] = []
    for i, bdoc in enumerate(doc.blocks):
        block = _build_block(bdoc, i)
        if block.name in block_names:
            raise ConfigError(f"duplicate block name {block.name!r}", f"blocks[{i}].name")
        block_names.add(block.name)
        blocks.append(block)

    pipeline = Pipeline(
        version=doc.version,
        name=doc.name,
        blocks=tuple(blocks),
        agent=_agent(doc.agent),
        execution_time_limit=doc.execution_time_limit.seconds if doc.execution_time_limit else None,
        extras=doc.extras,
    )
    logger.debug("parsed pipeline %r with %d block(s)", pipeline.name, len(pipeline.blocks))
    return pipeline


# ----------------------------------------------------------------------
# Loading + pydantic error translation
# ----------------------------------------------------------------------

def _load(document: Document) -> Mapping[str, Any]:
    if isinstance(document, Mapping):
        return document

    if isinstance(document, bytes):
        document = document.decode("utf-8")

    try:
        data = yaml.safe_load(document)
    except yaml.YAMLError as e:
        mark = getattr(e, "problem_mark", None)
        location = f"line {mark.line + 1}, column {mark.column + 1}" if mark else "<document>"
        problem = getattr(e, "problem", None) or str(e)
        raise ConfigError(f"invalid YAML: {problem}", location) from None

    if data is None:
        raise ConfigError("document is empty")
    if not isinstance(data, Mapping):
        raise ConfigError(f"document must be a mapping, got {type(data).__name__}")
    return data


def _format_loc(loc: Iterable[Union[str, int]]) -> str:
    out = ""
    for part in loc:
        if isinstance(part, int):
            out += f"[{part}]"
        else:
            out += f".{part}" if out else str(part)
    return out or "<document>"


def _config_error_from(exc: ValidationError) -> ConfigError:
    errors = exc.errors()
    first = errors[0]
    reason = first.get("msg", "invalid value")
    if first.get("type") == "missing":
        reason = "missing required key"
    elif reason.startswith("Value error, "):
        reason = reason[len("Value error, "):]
    if len(errors) > 1:
        reason = f"{reason} (and {len(errors) - 1} more error(s))"
    return ConfigError(reason, _format_loc(first.get("loc", ())))


# ----------------------------------------------------------------------
# Interpolation syntax check
# ----------------------------------------------------------------------

_BRACED_BODY = re.compile(
    r"""
    ^(?:
        [#!]?[A-Za-z_][A-Za-z0-9_]*          # name, ${#name}, ${!name}
        (?:\[[^\]]*\])?                      # array index
        (?:(?::?[-=+?]|\#\#?|%%?|//?|:).*)?  # parameter expansion operator
      | ![A-Za-z_][A-Za-z0-9_]*[*@]          # names by prefix, ${!prefix*}
      | \d+                                  # positional
      | [@*\#?$!-]                           # special parameter
    )$
    """,
    re.VERBOSE | re.DOTALL,
)


def interpolation_problem(text: str) -> Optional[str]:
    """
    Return a description of the first malformed `${...}` reference, or None.

    `$NAME`, `$(...)` and `$$` are left to the shell.
    """
    i = 0
    n = len(text)
    while i < n:
        if text[i] != "$":
            i += 1
            continue
        if i + 1 < n and text[i + 1] == "$":
            i += 2
            continue
        if i + 1 < n and text[i + 1] == "{":
            depth = 1
            j = i + 2
            while j < n and depth:
                if text[j] == "{":
                    depth += 1
                elif text[j] == "}":
                    depth -= 1
                j += 1
            if depth:
                return f"unterminated '${{' at offset {i}"
            body = text[i + 2 : j - 1]
            if not body:
                return f"empty '${{}}' at offset {i}"
            if not _BRACED_BODY.match(body):
                return f"invalid variable reference '${{{body}}}'"
            i = j
            continue
        i += 1
    return None


def _check_interpolation(text: str, location: str) -> None:
    problem = interpolation_problem(text)
    if problem:
        raise ConfigError(f"unresolvable interpolation: {problem}", location)


# ----------------------------------------------------------------------
# Directives
# ----------------------------------------------------------------------

_SHELL_OPERATORS = ("&&", "||", ";", "|", ">", "<", "&")


def split_words(text: str) -> Optional[List[str]]:
    """
    Split a command line on whitespace, keeping quotes and `$(...)` together.

    Returns None if the line uses shell operators at top level, in which case
    it is not a plain directive and is left to the shell.
    """
    words: List[str] = []
    buf = ""
    quote: Optional[str] = None
    depth = 0
    i = 0
    while i < len(text):
        c = text[i]
        if quote:
            buf += c
            if c == quote:
                quote = None
        elif c in ("'", '"'):
            buf += c
            quote = c
        elif text.startswith("$(", i):
            buf += "$("
            depth += 1
            i += 1
        elif c == ")" and depth:
            buf += c
            depth -= 1
        elif depth:
            buf += c
        elif c.isspace():
            if buf:
                words.append(buf)
                buf = ""
        elif any(text.startswith(op, i) for op in _SHELL_OPERATORS):
            return None
        else:
            buf += c
        i += 1
    if quote or depth:
        return None
    if buf:
        words.append(buf)
    return words


def _unquote(word: str) -> str:
    if len(word) >= 2 and word[0] == word[-1] and word[0] in ("'", '"'):
        return word[1:-1]
    return word


def parse_directive(run: str, location: str) -> Optional[Directive]:
    words = split_words(run.strip())
    if not words or len(words) < 2:
        return None
    head, verb, args = words[0], words[1], [_unquote(w) for w in words[2:]]

    if head == "cache" and verb == "restore":
        keys = tuple(k for arg in args for k in arg.split(",") if k)
        return CacheRestore(keys=keys)

    if head == "cache" and verb == "store":
        if not args:
            return CacheStore()
        if len(args) != 2:
            raise ConfigError("'cache store' expects <key> <path>", location)
        return CacheStore(key=args[0], path=args[1])

    if head in ("sem-service", "service") and verb == "start":
        if not args:
            raise ConfigError(f"'{head} start' expects a service name", location)
        return ServiceStart(name=args[0], params=tuple(args[1:]))

    return None


# ----------------------------------------------------------------------
# Graph building
# ----------------------------------------------------------------------

def _agent(doc: Optional[AgentDoc]) -> Optional[AgentSpec]:
    if doc is None:
        return None
    return AgentSpec(
        machine_type=doc.machine.type,
        os_image=doc.machine.os_image or doc.os_image or "",
    )


def _commands(raw: Iterable[str], location: str) -> Tuple[Command, ...]:
    out: List[Command] = []
    for i, run in enumerate(raw):
        loc = f"{location}[{i}]"
        if not run.strip():
            raise ConfigError("command is empty", loc)
        _check_interpolation(run, loc)
        out.append(Command(run=run, directive=parse_directive(run, loc)))
    return tuple(out)


def _command_list(doc: Optional[CommandsDoc], location: str) -> Tuple[Command, ...]:
    if doc is None:
        return ()
    return _commands(doc.commands, f"{location}.commands")


def _env(env_vars: List[EnvVarDoc], location: str) -> Dict[str, str]:
    env: Dict[str, str] = {}
    for i, var in enumerate(env_vars):
        _check_interpolation(var.value, f"{location}[{i}].value")
        env[var.name] = var.value
    return env


def _expand(doc: JobDoc, job: Job) -> List[Job]:
    """Matrix / parallelism expansion of one declared job."""
    if doc.parallelism is not None:
        count = doc.parallelism
        out = []
        for idx in range(1, count + 1):
            name = job.name if count == 1 else f"{job.name} - {idx}/{count}"
            env = {**job.env, "BLOCKCI_JOB_INDEX": str(idx), "BLOCKCI_JOB_COUNT": str(count)}
            out.append(Job(name, job.commands, env, job.execution_time_limit, job.extras))
        return out

    if doc.matrix:
        axes = [(axis.env_var, [str(v) for v in axis.values]) for axis in doc.matrix]
        out = []
        for combo in itertools.product(*(values for _var, values in axes)):
            pairs = list(zip((var for var, _values in axes), combo))
            label = ", ".join(f"{k}={v}" for k, v in pairs)
            env = {**job.env, **dict(pairs)}
            out.append(Job(f"{job.name} - {label}", job.commands, env, job.execution_time_limit, job.extras))
        return out

    return [job]


def _build_block(doc: BlockDoc, index: int) -> Block:
    loc = f"blocks[{index}]"
    task = doc.task

    declared: set[str] = set()
    jobs: List[Job] = []
    for j, jdoc in enumerate(task.jobs):
        jloc = f"{loc}.task.jobs[{j}]"
        if jdoc.name in declared:
            raise ConfigError(f"duplicate job name {jdoc.name!r}", f"{jloc}.name")
        declared.add(jdoc.name)

        job = Job(
            name=jdoc.name,
            commands=_commands(jdoc.commands, f"{jloc}.commands"),
            env=_env(jdoc.env_vars, f"{jloc}.env_vars"),
            execution_time_limit=jdoc.execution_time_limit.seconds if jdoc.execution_time_limit else None,
            extras=jdoc.extras,
        )
        jobs.extend(_expand(jdoc, job))

    expanded = [job.name for job in jobs]
    dupes = sorted({n for n in expanded if expanded.count(n) > 1})
    if dupes:
        raise ConfigError(f"duplicate job names after expansion: {dupes}", f"{loc}.task.jobs")

    epilogue = Epilogue()
    if task.epilogue is not None:
        eloc = f"{loc}.task.epilogue"
        epilogue = Epilogue(
            always=_command_list(task.epilogue.always, f"{eloc}.always"),
            on_pass=_command_list(task.epilogue.on_pass, f"{eloc}.on_pass"),
            on_fail=_command_list(task.epilogue.on_fail, f"{eloc}.on_fail"),
        )

    extras = doc.extras
    if task.extras:
        extras["task"] = task.extras

    return Block(
        name=doc.name or f"Block #{index + 1}",
        jobs=tuple(jobs),
        prologue=Prologue(_command_list(task.prologue, f"{loc}.task.prologue")),
        epilogue=epilogue,
        agent=_agent(doc.agent),
        env=_env(task.env_vars, f"{loc}.task.env_vars"),
        execution_time_limit=doc.execution_time_limit.seconds if doc.execution_time_limit else None,
        extras=extras,
    )
