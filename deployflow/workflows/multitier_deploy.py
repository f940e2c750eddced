"""
Multi-Tier Deployment Process.

The sample process demonstrating the engine:
1. Retrieve the artifact version to deploy
2. Install it on the database, application and web tiers in parallel
3. Wait for a manual validation (skipped when replaying a rollback)
4. Redeploy the previous version if any install fails or validation is rejected
"""

from typing import Any, Dict, List, Optional, Sequence
import logging

from deployflow.engine.graph import ProcessGraph, build_graph
from deployflow.storage.memory import pipeline_storage
from deployflow.storage.platform import artifact_repository, resource_inventory


logger = logging.getLogger(__name__)

DEMO_PIPELINE_ID = "multitier-deploy-demo"

DEFAULT_TIERS = ("database", "application", "web")


def multitier_deploy_definition(
    tiers: Sequence[str] = DEFAULT_TIERS,
    validate: bool = True
) -> Dict[str, Any]:
    """
    Declarative definition of the multi-tier deployment.

    Process flow:
    ```
                  ┌─→ Install database ────┐
    Retrieve ─────┼─→ Install application ─┼─→ Validate (manual)
                  └─→ Install web ─────────┘
           any install or Validate fails ─.─→ Rollback
    ```

    Job properties used: component, version_range, environment.
    """
    steps: List[Dict[str, Any]] = [{
        "id": "Retrieve",
        "kind": "component-process",
        "parameters": {
            "handler": "retrieve_artifact",
            "component": "$[component]",
            "version": "$[version_range]",
        },
        "error_policy": "abortJob",
        "description": "Resolve the artifact version to deploy",
    }]
    edges: List[Dict[str, Any]] = []

    for tier in tiers:
        install = f"Install {tier}"
        steps.append({
            "id": install,
            "kind": "component-process",
            "parameters": {
                "handler": "install_component",
                "component": "$[component]",
                "version": "$[outputs.Retrieve.version]",
                "tier": tier,
                "environment": "$[environment]",
            },
            "description": f"Install on every {tier} host",
        })
        edges.append({"source": "Retrieve", "target": install, "branch_type": "ALWAYS"})
        edges.append({"source": install, "target": "Rollback", "branch_type": "ERROR"})
        if validate:
            edges.append({"source": install, "target": "Validate", "branch_type": "ALWAYS"})
            edges.append({
                "source": install,
                "target": "Validate",
                "branch_type": "CUSTOM",
                "branch_condition": "not_rollback_replay",
                "branch_condition_name": "not rollback replay",
            })

    if validate:
        steps.append({
            "id": "Validate",
            "kind": "manual",
            "parameters": {"instructions": "Check the deployment and approve or reject"},
            "description": "Manual validation of the deployment",
        })
        edges.append({"source": "Validate", "target": "Rollback", "branch_type": "ERROR"})

    steps.append({
        "id": "Rollback",
        "kind": "rollback",
        "parameters": {
            "handler": "redeploy_previous",
            "component": "$[component]",
            "version": "$[outputs.Retrieve.version]",
            "tiers": list(tiers),
            "environment": "$[environment]",
        },
        "description": "Redeploy the previous version on every tier",
    })

    return {
        "name": "Multi-Tier Deployment",
        "description": "Deploys a component to every tier, then waits for validation.",
        "steps": steps,
        "edges": edges,
    }


def create_multitier_deploy_process(
    tiers: Sequence[str] = DEFAULT_TIERS,
    validate: bool = True,
    graph_id: Optional[str] = None
) -> ProcessGraph:
    """
    Create the multi-tier deployment graph.

    Args:
        tiers: Tiers to install, in parallel
        validate: Whether to gate the deployment on a manual validation
        graph_id: Optional graph ID

    Returns:
        Validated ProcessGraph
    """
    definition = multitier_deploy_definition(tiers, validate)
    return build_graph(
        definition["steps"],
        definition["edges"],
        name=definition["name"],
        graph_id=graph_id,
        description=definition["description"],
    )


def seed_demo_platform(component: str = "web-store", environment: str = "qa") -> None:
    """Publish demo artifacts and hosts, with the oldest release installed everywhere."""
    for version in ("1.0.0", "1.1.0", "1.2.0"):
        artifact_repository.publish(component, version)

    hosts = {
        "database": ["db-01"],
        "application": ["app-01", "app-02"],
        "web": ["web-01"],
    }
    for tier, names in hosts.items():
        for host in names:
            resource_inventory.add_host(environment, tier, f"{environment}-{host}")
            resource_inventory.record_install(f"{environment}-{host}", component, "1.1.0")


async def register_multitier_deploy_process() -> ProcessGraph:
    """
    Register the multi-tier deployment in storage, with demo artifacts and hosts.

    This makes the process available immediately via the API
    without needing to create it first.
    """
    seed_demo_platform()
    graph = create_multitier_deploy_process(graph_id=DEMO_PIPELINE_ID)
    await pipeline_storage.save(graph, multitier_deploy_definition())

    logger.info(f"Registered multi-tier deployment with ID: {DEMO_PIPELINE_ID}")
    return graph


# ============================================================
# Example Usage
# ============================================================

async def run_multitier_deploy_demo(approve: bool = True):
    """Run the demo end to end, answering the manual gate automatically."""
    import asyncio

    from deployflow.engine.executor import ExecutionEngine
    from deployflow.engine.gates import Decision, gate_controller
    from deployflow.handlers import handler_registry

    seed_demo_platform()
    graph = create_multitier_deploy_process()
    engine = ExecutionEngine(
        graph,
        handler_registry,
        properties={"component": "web-store", "version_range": "1.2.*", "environment": "qa"},
    )

    print("Starting deployment...")
    run = asyncio.create_task(engine.run())
    while not gate_controller.is_waiting(engine.run_id, "Validate"):
        if run.done():
            break
        await asyncio.sleep(0.01)
    engine.submit_decision(
        "Validate", Decision.APPROVE if approve else Decision.REJECT, "demo-operator"
    )
    result = await run

    print(f"\nRun State: {result.state.value}")
    print(f"Total Duration: {result.total_duration_ms:.2f}ms")
    for step_id, record in result.job_run.steps.items():
        print(f"  - {step_id}: {record.status.value}")
    if result.triggered_by:
        print(f"\nTriggered by: {result.triggered_by}")

    return result


if __name__ == "__main__":
    import asyncio
    asyncio.run(run_multitier_deploy_demo())
