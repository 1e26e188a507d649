"""
sol-deploy - typed deployment orchestration for a Docker Compose homelab.

Replaces the homelab's shell scripts with pipelines of named, idempotent
steps that validate the ``.env`` and compose files, catch port collisions,
reconcile the Cloudflare tunnel configuration, run ``docker compose`` and
probe every service afterwards.
"""

__version__ = "0.3.0"
