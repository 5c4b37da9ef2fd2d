# ABOUTME: gitops-promoter package initialization
# ABOUTME: Exposes version information

"""
gitops-promoter - environment promotion, rollback and secret sync for a GitOps repository.

=============================================================================
WHAT DOES IT DO?
=============================================================================

A GitOps repository holds the desired state of every service in every
environment. ArgoCD watches that repository and makes the clusters match it.
Deploying therefore means CHANGING A FILE IN GIT, and this package is the
tool that makes those changes safely:

1. PROMOTE an image tag from one environment tier to the next
   (dev -> staging -> prod), checking the registry, the source tier and an
   operator approval along the way
2. WAIT for ArgoCD to report the change as Synced and Healthy
3. ROLL BACK a service to an earlier tag, commit or number of steps
4. SYNC service secrets into Vault for an environment

Every change is one commit with a structured trailer block, so the git log
doubles as the promotion history.

=============================================================================
PACKAGE STRUCTURE OVERVIEW
=============================================================================

gitops_promoter/
├── __init__.py          <- YOU ARE HERE
├── models.py            <- Services, tiers, records, events, statuses
├── errors.py            <- Error taxonomy with CLI exit codes
├── config.py            <- Settings from the environment
├── store.py             <- Git-backed desired-state records, publish with CAS
├── history.py           <- Promotion events as commit trailers
├── registry.py          <- Image existence check
├── promotion.py         <- Promotion Engine
├── rollback.py          <- Rollback Resolver
├── sync_monitor.py      <- Wait for ArgoCD convergence
├── secrets.py           <- Secret catalog and Vault synchronizer
├── cli.py               <- `gitops-promote` command line
├── server.py            <- `gitops-promoter-mcp` MCP tool server
└── utils/
    ├── client.py        <- ArgoCD REST client, secret masking
    ├── vault.py         <- Vault KV v2 REST client
    ├── logging.py       <- structlog setup, audit trail
    └── safety.py        <- Approvals, read-only mode, rate limiting
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
