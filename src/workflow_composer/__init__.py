"""Multi-category workflow composition and deployment package.

Objective:
    Turn a business's selected service categories into one deployable
    email-automation graph and push it to an external execution engine:
    - Score how compatible the selected categories are.
    - Merge their label taxonomies and behavior rules into a composite
      template using a unified, hybrid or modular strategy.
    - Inject tenant-specific label ids, credential references and business
      facts into the template.
    - Deploy idempotently with activation verification, an append-only audit
      ledger and rollback.

Key modules:
    - :mod:`src.workflow_composer.scorer`:
        Pairwise compatibility scoring.
    - :mod:`src.workflow_composer.builder`:
        Strategy selection, taxonomy merge, conflict resolution, graph layout.
    - :mod:`src.workflow_composer.injector`:
        Placeholder substitution and label binding validation.
    - :mod:`src.workflow_composer.deployer`:
        Single-flight, idempotent deployment with retries and rollback.
    - :mod:`src.workflow_composer.ledger`:
        Deployment history.
    - :mod:`src.workflow_composer.pipeline`:
        End-to-end ``compose_and_deploy`` / ``rollback`` / ``get_history``.
    - :mod:`src.workflow_composer.cli` / :mod:`src.workflow_composer.webapp`:
        User-facing entrypoints.
"""

__version__ = "0.1.0"
