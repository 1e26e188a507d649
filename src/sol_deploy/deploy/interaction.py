"""Operator interaction.

Library code never reads stdin. Anything that needs a human decision
(re-use an existing tunnel? roll back now?) goes through an
:class:`Operator`, so the same code path runs interactively, under
``--yes`` in cron, and in tests with scripted answers.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from rich.console import Console
from rich.prompt import Confirm, Prompt


@runtime_checkable
class Operator(Protocol):
    """Source of answers to confirmation and input prompts."""

    def confirm(self, prompt: str, default: bool = False) -> bool: ...

    def prompt(self, label: str, default: str | None = None) -> str: ...

    def prompt_secret(self, label: str) -> str: ...


class ConsoleOperator:
    """Asks the person at the terminal using rich prompts."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def confirm(self, prompt: str, default: bool = False) -> bool:
        return Confirm.ask(prompt, default=default, console=self.console)

    def prompt(self, label: str, default: str | None = None) -> str:
        if default is None:
            return Prompt.ask(label, console=self.console)
        return Prompt.ask(label, default=default, console=self.console)

    def prompt_secret(self, label: str) -> str:
        return Prompt.ask(label, password=True, console=self.console)


class AssumeYesOperator:
    """Non-interactive operator for ``--yes``.

    Confirms everything and accepts defaults. A prompt without a default
    cannot be answered and raises ``RuntimeError``.
    """

    def confirm(self, prompt: str, default: bool = False) -> bool:
        return True

    def prompt(self, label: str, default: str | None = None) -> str:
        if default is None:
            raise RuntimeError(f"Input required but running non-interactively: {label}")
        return default

    def prompt_secret(self, label: str) -> str:
        raise RuntimeError(f"Secret required but running non-interactively: {label}")
