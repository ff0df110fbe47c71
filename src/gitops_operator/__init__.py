# ABOUTME: GitOps operator package initialization
# ABOUTME: Exposes version information; components are imported from their modules

"""
gitops-operator - pull-mode GitOps reconciler for Kubernetes Deployments.

=============================================================================
WHAT DOES IT DO?
=============================================================================

Deployments opt in with annotations under the `gitops.operator.` prefix.
Each annotated Deployment names two git repositories:

- the APPLICATION repository, whose branch tip is the version that should
  be running (commits are built into images tagged with their SHA)
- the MANIFEST repository, holding the YAML that declares what does run

On every trigger the operator compares the tag running in the cluster with
the application branch tip. When they differ it rewrites the image tag in
the manifest repository and pushes a commit. Whatever applies manifests to
the cluster (Argo CD, Flux, a CI job) then rolls the Deployment forward.

=============================================================================
PACKAGE STRUCTURE OVERVIEW
=============================================================================

gitops_operator/
├── __init__.py          <- YOU ARE HERE: Package entry point
├── annotations.py       <- Annotation map -> DeploymentConfig or SkipReason
├── config.py            <- Operator settings and retry policy
├── errors.py            <- Error taxonomy
├── models.py            <- Deployments, configs, states, results
├── reconciler.py        <- One reconciliation pass over all Deployments
├── server.py            <- MCP tools and HTTP routes that trigger a pass
└── utils/
    ├── cluster.py       <- Kubernetes API: Deployments and Secrets
    ├── git_sync.py      <- ls-remote, clone, commit, push
    ├── locks.py         <- Per-repository mutual exclusion
    ├── logging.py       <- structlog setup, correlation IDs, audit trail
    ├── manifest.py      <- Byte-preserving image tag rewrite
    ├── notifications.py <- Webhook notifications
    └── registry.py      <- Registry image existence check
"""

__version__ = "0.9.0"

__all__ = ["__version__"]
