"""
CI/CD Dispatch: Unified CI/CD Dispatch and Orchestration Engine

Decides, for each repository event, which pipelines and jobs to run across
languages, services and deployment targets. Change detection and stack
detection feed a pure dispatcher; the resulting job DAGs are executed with
bounded concurrency, retries and supersede-aware cancellation, and results
are aggregated into an auditable report.
"""

__version__ = "1.0.0"
__author__ = "CI/CD Dispatch Team"
__description__ = "Unified CI/CD Dispatch and Orchestration Engine"
