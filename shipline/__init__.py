"""Shipline: build, stage and promote independently versioned services.

A three-stage delivery pipeline for a fixed set of services:
  - Build + unit tests per service, producing content-addressed artifacts
  - Idempotent publication to an artifact registry
  - Acceptance tests on an ephemeral staging environment per run
  - Human-gated, health-verified promotion to production
  - Append-only, hash-chained run ledger for every transition
"""

__version__ = "0.1.0"
__description__ = "Multi-stage delivery pipeline with ephemeral staging and health-gated promotion"

from shipline.core.orchestrator import DeploymentOrchestrator
from shipline.monitor.projection import RunProjection
from shipline.cli.app import app as cli

__all__ = ["DeploymentOrchestrator", "RunProjection", "cli", "__version__"]
