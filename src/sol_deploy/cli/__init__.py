"""
CLI layer for sol-deploy.

A Typer application whose commands delegate to the deploy layer
(``sol_deploy.deploy``). Business logic lives there; this package only
parses arguments, prompts, and renders Rich tables or JSON.

Entry point::

    sol-deploy --help
"""

from sol_deploy.cli.app import app

__all__ = ["app"]
