# config.py
from __future__ import annotations

import json
import re
import runpy
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .dsl import DEFAULT_CACHE_PATHS, DEFAULT_KEY_FILES, cmd, job, on, provision, sh, toolchain, use_cache, wf
from .errors import ConfigError
from .model import EventKind, Job, Step, Workflow

_ENV_REF = re.compile(r"\$\{\{\s*env\.([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


# ----------------------------------------------------------------------
# Document schema
# ----------------------------------------------------------------------

class _Doc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class ToolchainDoc(_Doc):
    name: str = "stable"
    profile: str = "minimal"
    components: List[str] = Field(default_factory=list)

    @field_validator("components", mode="before")
    @classmethod
    def _split_components(cls, v: Any) -> Any:
        # "rustfmt, clippy" is accepted as well as a list
        if isinstance(v, str):
            return [c.strip() for c in v.split(",") if c.strip()]
        return v


class StepDoc(_Doc):
    name: Optional[str] = None
    run: Optional[str] = None
    argv: Optional[List[str]] = None
    uses: Optional[Literal["cache", "toolchain"]] = None
    with_: Dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("with", "with_"))
    cwd: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    timeout: Optional[float] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _one_action(self) -> "StepDoc":
        given = [k for k in ("run", "argv", "uses") if getattr(self, k)]
        if len(given) != 1:
            raise ValueError(f"a step needs exactly one of run / argv / uses (got {given or 'none'})")
        return self


class TriggerDoc(_Doc):
    paths_ignore: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("paths_ignore", "paths-ignore"),
    )


class JobDoc(_Doc):
    name: str
    toolchain: Optional[ToolchainDoc] = None
    env: Dict[str, str] = Field(default_factory=dict)
    concurrency: Optional[int] = Field(default=None, ge=1)
    timeout: Optional[float] = Field(default=None, gt=0)
    steps: List[StepDoc] = Field(min_length=1)


class WorkflowDoc(_Doc):
    name: str = "CI"
    env: Dict[str, str] = Field(default_factory=dict)
    on: Dict[str, Optional[TriggerDoc]] = Field(
        default_factory=lambda: {"push": None, "pull_request": None, "manual": None}
    )
    jobs: List[JobDoc] = Field(min_length=1)

    @field_validator("on", mode="before")
    @classmethod
    def _on_list(cls, v: Any) -> Any:
        # on = ["push", "workflow_dispatch"]
        if isinstance(v, str):
            return {v: None}
        if isinstance(v, list):
            return {k: None for k in v}
        return v

    @field_validator("jobs", mode="before")
    @classmethod
    def _jobs_mapping(cls, v: Any) -> Any:
        # [jobs.lint] ... mapping form, name taken from the key
        if isinstance(v, dict):
            return [{"name": k, **(body or {})} for k, body in v.items()]
        return v


# ----------------------------------------------------------------------
# Document -> model
# ----------------------------------------------------------------------

def _substitute(value: str, env: Dict[str, str], where: str) -> str:
    def repl(m: re.Match) -> str:
        name = m.group(1)
        if name not in env:
            raise ConfigError(f"{where}: unknown variable env.{name}", variable=name)
        return env[name]
    return _ENV_REF.sub(repl, value)


def _step_from_doc(doc: StepDoc, job_doc: JobDoc, env: Dict[str, str], index: int) -> List[Step]:
    where = f"job '{job_doc.name}' step #{index + 1}"
    if doc.uses == "cache":
        w = doc.with_
        return use_cache(
            paths=_as_list(w.get("paths"), DEFAULT_CACHE_PATHS),
            key_files=_as_list(w.get("key_files") or w.get("key-files"), DEFAULT_KEY_FILES),
            prefix=w.get("prefix"),
            name=doc.name or "Use cache",
        )
    if doc.uses == "toolchain":
        try:
            tc_doc = ToolchainDoc.model_validate(doc.with_) if doc.with_ else (job_doc.toolchain or ToolchainDoc())
        except ValidationError as e:
            raise ConfigError(f"{where}: invalid toolchain: {e.errors()[0]['msg']}") from e
        return [provision(_toolchain_from_doc(tc_doc, env, where), name=doc.name)]

    step_env = {k: _substitute(v, env, where) for k, v in doc.env.items()}
    if doc.argv:
        argv = [_substitute(a, env, where) for a in doc.argv]
        return [cmd(doc.name or argv[0], *argv, cwd=doc.cwd, env=step_env, timeout=doc.timeout)]
    run = _substitute(doc.run or "", env, where)
    return [sh(doc.name or run, run, cwd=doc.cwd, env=step_env, timeout=doc.timeout)]


def _as_list(value: Any, default) -> List[str]:
    if value is None:
        return list(default)
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return [str(v) for v in value]


def _toolchain_from_doc(doc: ToolchainDoc, env: Dict[str, str], where: str):
    return toolchain(
        _substitute(doc.name, env, where),
        profile=_substitute(doc.profile, env, where),
        components=[_substitute(c, env, where) for c in doc.components],
    )


def workflow_from_dict(data: Dict[str, Any]) -> Workflow:
    """Validate a declarative document and turn it into a Workflow."""
    try:
        doc = WorkflowDoc.model_validate(data)
    except ValidationError as e:
        errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise ConfigError("invalid workflow document", errors=errors) from e

    triggers = []
    for kind, tdoc in doc.on.items():
        try:
            ek = EventKind.parse(kind)
        except ValueError:
            raise ConfigError(f"unknown event kind {kind!r}", event=kind) from None
        triggers.append(on(ek, paths_ignore=tdoc.paths_ignore if tdoc else ()))

    jobs: List[Job] = []
    for jdoc in doc.jobs:
        env = {**doc.env, **jdoc.env}
        # workflow-level env applies to every step of every job
        job_env = {k: _substitute(v, env, f"job '{jdoc.name}' env.{k}") for k, v in env.items()}
        steps: List[Step] = []
        for i, sdoc in enumerate(jdoc.steps):
            steps.extend(_step_from_doc(sdoc, jdoc, env, i))
        jobs.append(
            job(
                jdoc.name,
                *steps,
                toolchain=_toolchain_from_doc(jdoc.toolchain, env, f"job '{jdoc.name}'") if jdoc.toolchain else None,
                env=job_env,
                concurrency=jdoc.concurrency,
                timeout=jdoc.timeout,
            )
        )

    return wf(*jobs, name=doc.name, triggers=triggers)


# ----------------------------------------------------------------------
# Workflow loading (local file)
# ----------------------------------------------------------------------

def _load_python(wf_path: Path) -> Workflow:
    """
    The file must define either:
      - workflow() -> Workflow | List[Job]
      - WORKFLOW = Workflow(...)  /  JOBS = [Job, ...]
    """
    module_name = f"gateci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    obj = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            obj = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e) or "required" in str(e):
                raise ConfigError(
                    "Your workflow() is being called with arguments (name collision with the helper). "
                    "Use the 'wf' helper instead: `from gateci import wf, job, sh` then "
                    "`def workflow(): return wf(job(...), job(...))`"
                ) from e
            raise
    elif "WORKFLOW" in globals_dict:
        obj = globals_dict["WORKFLOW"]
    elif "JOBS" in globals_dict:
        obj = globals_dict["JOBS"]

    if isinstance(obj, Workflow):
        return obj
    if isinstance(obj, list) and obj and all(isinstance(j, Job) for j in obj):
        return wf(*obj, name=wf_path.stem)
    raise ConfigError(
        "Workflow must return/define a Workflow or a List[Job]. "
        "Define workflow() -> Workflow, WORKFLOW = wf(...) or JOBS = [Job, ...].",
        path=str(wf_path),
    )


def load_workflow(path: str | Path) -> Workflow:
    """
    Load a workflow from a .py, .json or .toml file.

    Raises ConfigError for anything that is not a usable workflow.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise ConfigError(f"Workflow file not found: {wf_path}", path=str(wf_path))

    suffix = wf_path.suffix.lower()
    if suffix == ".py":
        return _load_python(wf_path)
    try:
        if suffix == ".json":
            data = json.loads(wf_path.read_text(encoding="utf-8"))
        elif suffix == ".toml":
            data = tomllib.loads(wf_path.read_text(encoding="utf-8"))
        else:
            raise ConfigError(f"Workflow must be a .py, .json or .toml file, got: {wf_path.name}")
    except (json.JSONDecodeError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"could not parse {wf_path.name}: {e}", path=str(wf_path)) from e
    if not isinstance(data, dict):
        raise ConfigError(f"{wf_path.name} must contain a mapping at top level", path=str(wf_path))
    return workflow_from_dict(data)
