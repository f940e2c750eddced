"""
Workflows package - Sample process definitions.
"""

from deployflow.workflows.multitier_deploy import (
    DEMO_PIPELINE_ID,
    create_multitier_deploy_process,
    multitier_deploy_definition,
    register_multitier_deploy_process,
)

__all__ = [
    "DEMO_PIPELINE_ID",
    "create_multitier_deploy_process",
    "multitier_deploy_definition",
    "register_multitier_deploy_process",
]
