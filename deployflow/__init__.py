"""
DeployFlow - An async process-graph engine for multi-tier deployment pipelines.

Model deployments as steps joined by on-success, error and custom-predicate
edges, with manual approval gates and a rollback branch.
"""

__version__ = "1.0.0"
