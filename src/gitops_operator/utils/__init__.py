# ABOUTME: Utilities package initialization for the GitOps operator
# ABOUTME: I/O collaborators of the reconciler: cluster, git, registry, webhooks

"""
GitOps Operator Utilities Package

Shared utilities:
    - cluster.py: Kubernetes API access with retry and error mapping
    - git_sync.py: Remote head lookup and manifest update commits
    - locks.py: Per-repository locks for manifest updates
    - logging.py: Structured logging with correlation IDs
    - manifest.py: Image tag rewriting that preserves the rest of the file
    - notifications.py: Best-effort webhook notifications
    - registry.py: Docker Registry v2 existence checks
"""
