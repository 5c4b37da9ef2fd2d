# ABOUTME: Utilities package initialization for gitops-promoter
# ABOUTME: HTTP clients for ArgoCD and Vault, structured logging and safety guards

"""
gitops-promoter utilities package

Shared utilities:
    - client.py: ArgoCD API client (read-only) and secret masking
    - vault.py: Vault KV v2 client
    - safety.py: Approval requests, read-only mode and rate limiting
    - logging.py: Structured logging with correlation IDs and audit trail
"""
