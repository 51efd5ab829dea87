"""Environment bootstrap for freshly provisioned worktrees.

Installs project dependencies in an explicit working directory before the
execution starts. Commands come from config when given, otherwise they are
detected from the lockfiles present in the checkout.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from codingbot.config import BootstrapConfig

logger = logging.getLogger(__name__)

# First match wins. Order matters: a JS project may carry both
# package.json and a more specific lockfile.
_LOCKFILE_COMMANDS: list[tuple[str, str]] = [
    ("bun.lockb", "bun install"),
    ("pnpm-lock.yaml", "pnpm install"),
    ("yarn.lock", "yarn install"),
    ("package.json", "npm install"),
    ("uv.lock", "uv sync"),
    ("requirements.txt", "pip install -r requirements.txt"),
]

_OUTPUT_LIMIT = 4000


class ProvisioningError(RuntimeError):
    """Workspace bootstrap failed; the session cannot run."""


@dataclass
class StepResult:
    name: str
    success: bool
    output: str = ""
    error: str | None = None


@dataclass
class BootstrapResult:
    success: bool
    steps: list[StepResult] = field(default_factory=list)

    @property
    def failed_step(self) -> StepResult | None:
        return next((s for s in self.steps if not s.success), None)


def detect_install_commands(cwd: str | Path) -> list[str]:
    """Return the dependency install commands implied by lockfiles in ``cwd``.

    At most one JavaScript and one Python command is returned.
    """
    root = Path(cwd)
    commands: list[str] = []
    js_found = py_found = False
    for filename, command in _LOCKFILE_COMMANDS:
        if not (root / filename).exists():
            continue
        is_js = command.split()[0] in ("bun", "pnpm", "yarn", "npm")
        if is_js and not js_found:
            commands.append(command)
            js_found = True
        elif not is_js and not py_found:
            commands.append(command)
            py_found = True
    return commands


async def bootstrap_environment(cwd: str | Path, config: BootstrapConfig) -> BootstrapResult:
    """Run the bootstrap commands in ``cwd``.

    A failing step marks the result unsuccessful and stops the remaining
    steps. Nothing to run is a success.
    """
    if not config.enabled:
        logger.info("Bootstrap disabled — skipping for %s", cwd)
        return BootstrapResult(success=True)

    commands = config.commands or detect_install_commands(cwd)
    if not commands:
        logger.info("No bootstrap commands detected in %s", cwd)
        return BootstrapResult(success=True)

    result = BootstrapResult(success=True)
    for command in commands:
        step = await _run_step(Path(cwd), command, config.timeout)
        result.steps.append(step)
        if not step.success:
            result.success = False
            logger.warning("Bootstrap step failed in %s: %s (%s)", cwd, command, step.error)
            break
        logger.info("Bootstrap step ok in %s: %s", cwd, command)
    return result


async def _run_step(cwd: Path, command: str, timeout: int) -> StepResult:
    try:
        proc = await asyncio.create_subprocess_exec(
            *shlex.split(command),
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as e:
        return StepResult(name=command, success=False, error=str(e))

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return StepResult(name=command, success=False, error=f"timed out after {timeout}s")
    except asyncio.CancelledError:
        proc.kill()
        await proc.wait()
        raise

    output = (stdout or b"").decode(errors="replace")[-_OUTPUT_LIMIT:]
    if proc.returncode != 0:
        return StepResult(
            name=command,
            success=False,
            output=output,
            error=f"exit code {proc.returncode}",
        )
    return StepResult(name=command, success=True, output=output)
