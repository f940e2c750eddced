"""
Built-in Handlers for Deployment Processes.

These handlers cover the steps of the multi-tier deployment demo: retrieving
an artifact version, installing it on every host of a tier, running commands
on the agent, running nested processes and redeploying the previous version
as compensation.
"""

from typing import Any, Dict, List, Optional, Union
import asyncio
import logging
import shlex
import threading

from deployflow.engine.errors import StepExecutionFailure
from deployflow.engine.executor import ExecutionEngine
from deployflow.engine.state import RunContext, RunState
from deployflow.handlers.registry import handler_registry, register_handler
from deployflow.storage.memory import pipeline_storage
from deployflow.storage.platform import artifact_repository, resource_inventory


logger = logging.getLogger(__name__)


def _checkpoint(cancel_event: Optional[threading.Event], what: str, **payload: Any) -> None:
    """Stop a sync handler whose step was cancelled before it does `what`."""
    if cancel_event is not None and cancel_event.is_set():
        logger.warning(f"Cancelled before {what}")
        raise StepExecutionFailure(f"Cancelled before {what}", payload=payload)


@register_handler(
    name="retrieve_artifact",
    kind="component-process",
    description="Resolve a component version in the artifact repository"
)
def retrieve_artifact(component: str, version: str = "latest") -> Dict[str, Any]:
    """
    Resolve `version` ('latest', exact or a glob) for a component.

    Returns:
        Dict with the resolved 'component', 'version' and 'location'
    """
    try:
        artifact = artifact_repository.resolve(component, version)
    except LookupError as e:
        raise StepExecutionFailure(str(e), payload={"component": component, "requested": version})

    logger.info(f"Resolved {component} {version} -> {artifact.version}")
    return {
        "component": artifact.name,
        "version": artifact.version,
        "location": artifact.location,
    }


@register_handler(
    name="install_component",
    kind="component-process",
    description="Install a component version on every host of a tier"
)
def install_component(
    component: str,
    version: str,
    tier: str,
    environment: str = "qa",
    cancel_event: Optional[threading.Event] = None
) -> Dict[str, Any]:
    """
    Install on each host of the tier, stopping at the first unavailable host
    or when the step is cancelled.

    Returns:
        Dict with the 'installed' hosts and the 'previous' version per host
    """
    hosts = resource_inventory.resources_for_tier(environment, tier)
    if not hosts:
        raise StepExecutionFailure(f"No hosts for tier '{tier}' in '{environment}'")

    installed: List[str] = []
    previous: Dict[str, Optional[str]] = {}
    for host in hosts:
        _checkpoint(cancel_event, f"installing on {host}", installed=installed, tier=tier)
        if not resource_inventory.is_available(host):
            raise StepExecutionFailure(
                f"Host '{host}' is unavailable",
                payload={"installed": installed, "failed_host": host, "tier": tier},
            )
        previous[host] = resource_inventory.installed_version(host, component)
        resource_inventory.record_install(host, component, version)
        installed.append(host)

    logger.info(f"Installed {component} {version} on {len(installed)} {tier} host(s)")
    return {
        "component": component,
        "version": version,
        "tier": tier,
        "installed": installed,
        "previous": previous,
    }


@register_handler(
    name="run_command",
    kind="command",
    description="Run a command on the agent"
)
async def run_command(
    command: Union[str, List[str]],
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None
) -> Dict[str, Any]:
    """
    Run a command without a shell. The process is killed if the step is cancelled.

    Returns:
        Dict with 'exit_code', 'stdout' and 'stderr'
    """
    argv = shlex.split(command) if isinstance(command, str) else [str(arg) for arg in command]
    if not argv:
        raise StepExecutionFailure("Empty command")

    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise StepExecutionFailure(f"Cannot start '{argv[0]}': {e}")

    try:
        stdout, stderr = await process.communicate()
    except asyncio.CancelledError:
        process.kill()
        await process.wait()
        raise

    payload = {
        "exit_code": process.returncode,
        "stdout": stdout.decode(errors="replace"),
        "stderr": stderr.decode(errors="replace"),
    }
    if process.returncode != 0:
        raise StepExecutionFailure(f"'{argv[0]}' exited with {process.returncode}", payload=payload)
    return payload


@register_handler(
    name="run_subprocess",
    kind="sub-process",
    description="Run another stored pipeline as a nested process"
)
async def run_subprocess(
    pipeline_id: str,
    properties: Optional[Dict[str, Any]] = None,
    context: Optional[RunContext] = None
) -> Dict[str, Any]:
    """
    Run a stored pipeline to completion and report its terminal state.

    The nested run inherits the parent's job properties, overridden by
    `properties`, and its rollback marker.
    """
    stored = await pipeline_storage.get(pipeline_id)
    if stored is None:
        raise StepExecutionFailure(f"Pipeline '{pipeline_id}' not found")

    inherited = dict(context.properties) if context else {}
    inherited.update(properties or {})
    engine = ExecutionEngine(
        stored.graph,
        handler_registry,
        rollback_of=context.rollback_of if context else None,
        properties=inherited,
    )
    result = await engine.run()

    payload = {"run_id": result.run_id, "pipeline_id": pipeline_id, "state": result.state.value}
    if result.state is not RunState.SUCCEEDED:
        raise StepExecutionFailure(
            f"Nested pipeline '{stored.name}' ended {result.state.value}", payload=payload
        )
    return payload


@register_handler(
    name="redeploy_previous",
    kind="rollback",
    description="Reinstall the previous version of a component on every tier"
)
def redeploy_previous(
    component: str,
    version: str,
    tiers: Union[str, List[str]],
    environment: str = "qa",
    cancel_event: Optional[threading.Event] = None
) -> Dict[str, Any]:
    """
    Put hosts running `version` back on the version before it.

    Hosts on another version, or with nothing older to go back to, are left untouched.
    """
    tier_names = [tiers] if isinstance(tiers, str) else list(tiers)
    previous = artifact_repository.previous(component, version)
    restored: Dict[str, str] = {}
    untouched: List[str] = []

    for tier in tier_names:
        for host in resource_inventory.resources_for_tier(environment, tier):
            _checkpoint(cancel_event, f"restoring {host}", restored=dict(restored))
            current = resource_inventory.installed_version(host, component)
            if previous is None or current != version:
                untouched.append(host)
                continue
            resource_inventory.record_install(host, component, previous.version)
            restored[host] = previous.version

    logger.warning(f"Redeployed previous {component} on {len(restored)} host(s)")
    return {"component": component, "restored": restored, "untouched": untouched}


# Default handlers for steps that do not name one
handler_registry.add(run_command, name="command", kind="command")
handler_registry.add(run_subprocess, name="sub-process", kind="sub-process")
handler_registry.add(redeploy_previous, name="rollback", kind="rollback")
