# ABOUTME: clustersync package initialization
# ABOUTME: Exposes version information for the adapter and diff/sync core

"""
clustersync - compare and propagate configuration between app instances.

=============================================================================
WHAT IS THIS PACKAGE?
=============================================================================

An "app instance" is a (cluster, namespace) pair. Operators keep several of
them (dev, staging, production...) and want to know how they differ and push
selected changes from one to another:

1. CONTAINER IMAGES: which image each Deployment/DaemonSet/StatefulSet runs
2. CONFIGMAPS: which keys exist and which values changed
3. SECRETS: which keys exist and whether values match (never the values)

Clusters are reached either through a Rancher management plane (proxied) or
directly with a kubeconfig (direct). Image metadata comes from Harbor
(project-scoped registry) or DockerHub (flat registry).

=============================================================================
PACKAGE STRUCTURE OVERVIEW
=============================================================================

clustersync/
├── __init__.py          <- YOU ARE HERE: Package entry point
├── config.py            <- Configuration management (env vars, settings)
├── errors.py            <- AdapterError taxonomy
├── models.py            <- Dataclasses shared by every layer
├── images.py            <- Image reference parsing and kind normalization
├── store.py             <- Persistence protocol + in-memory inventory store
├── compare.py           <- Generic keyed diff engine and calculators
├── sync.py              <- Sync orchestrator with per-item history
├── server.py            <- MCP server exposing the core as tools
├── adapters/
│   ├── base.py          <- Shared HTTP plumbing and adapter protocols
│   ├── kubernetes.py    <- Kubernetes resource logic shared by cluster adapters
│   ├── proxied.py       <- Rancher-proxied cluster adapter
│   ├── direct.py        <- kubeconfig cluster adapter
│   ├── harbor.py        <- Project-scoped registry adapter
│   ├── dockerhub.py     <- Flat registry adapter
│   └── factory.py       <- Site/image-reference to adapter resolution
└── utils/
    ├── logging.py       <- Structured logging with audit trails
    └── safety.py        <- Read-only guard and rate limiting
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
