"""Multi-stage shell scripts that run as exactly one sandbox process.

The host never reclaims process handles on its own, so a sync that spawned
one process per mirror stage would leak handles on every run. A
``StagedScript`` compiles an optional guard, any number of independently
catchable stages, unconditional trailing commands, commands that run only
when every stage passed, and a final report command into one shell
program, and ``run`` issues a single ``exec``.

Output contract (stdout):

    SYNC_ERRORS: <tag> <tag> ...     only when at least one stage failed
    <report output>                  always the last non-empty line

Exit status is ``GUARD_EXIT_CODE`` only when the guard refused to run;
every other path ends with ``exit 0``, whatever the report command returns.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from moltkeeper.sandbox import ExecResult, Sandbox

ERROR_MARKER = "SYNC_ERRORS:"
GUARD_EXIT_CODE = 1
TIMESTAMP_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")

_ERRORS_VAR = "__stage_errors"


@dataclass(frozen=True)
class Stage:
    """One step whose failure is recorded under ``tag`` instead of aborting."""

    tag: str
    command: str


@dataclass
class StagedScript:
    guard: str | None = None
    stages: list[Stage] = field(default_factory=list)
    always: list[str] = field(default_factory=list)
    on_success: list[str] = field(default_factory=list)
    report: str | None = None

    def add_stage(self, tag: str, command: str) -> StagedScript:
        if any(s.tag == tag for s in self.stages):
            raise ValueError(f"Duplicate stage tag: {tag}")
        self.stages.append(Stage(tag, command))
        return self

    def render(self) -> str:
        """Compile to a single POSIX sh program.

        The guard runs first and must ``exit 1`` itself when the
        precondition fails. Stages run sequentially; ``always`` commands run
        regardless of stage outcomes, ``on_success`` commands only when no
        stage failed.
        """
        lines: list[str] = []
        if self.guard:
            lines.append(self.guard)
        lines.append(f'{_ERRORS_VAR}=""')
        for stage in self.stages:
            lines.append(f'{{ {stage.command}; }} || {_ERRORS_VAR}="${_ERRORS_VAR} {stage.tag}"')
        lines.extend(self.always)
        for command in self.on_success:
            lines.append(f'if [ -z "${_ERRORS_VAR}" ]; then {command}; fi')
        lines.append(
            f'if [ -n "${_ERRORS_VAR}" ]; then echo "{ERROR_MARKER}${_ERRORS_VAR}"; fi'
        )
        if self.report:
            lines.append(self.report)
        # The report's own status must never look like a guard refusal
        lines.append("exit 0")
        return "\n".join(lines)

    async def run(self, sandbox: Sandbox, *, timeout: float) -> ExecResult:
        """Execute the whole script as one sandbox process."""
        return await sandbox.exec(self.render(), timeout=timeout)


@dataclass
class ScriptOutput:
    failed_stages: list[str]
    last_line: str | None

    @classmethod
    def parse(cls, stdout: str) -> ScriptOutput:
        """Read the failure marker and the trailing report line."""
        lines = [line.strip() for line in stdout.splitlines() if line.strip()]
        failed: list[str] = []
        for line in lines:
            if line.startswith(ERROR_MARKER):
                failed = line[len(ERROR_MARKER) :].split()
                break
        return cls(failed_stages=failed, last_line=lines[-1] if lines else None)
