"""Environment resolution for the homelab ``.env``.

Builds the resolved ``docker/.env`` from ``docker/env.template``: every key
the template declares ends up in the result, values the operator already
set are kept, and keys marked with the password sentinel get a freshly
generated secret.

Why This Matters — Homelab Operations:
    The template ships ``N8N_PASSWORD=<generate_secure_password_here>``.
    If that literal string reaches Grafana or n8n, the service starts
    with a guessable password; if a key is silently dropped, compose
    substitutes an empty string and the container crash-loops. Both are
    caught here, before ``docker compose up``.

Key Concepts:
    EnvironmentConfig: Read-only ordered mapping of resolved values, plus
        which keys were generated in this resolution.
    EnvironmentResolver: ``resolve()``, ``validate()``, ``write()``,
        ``rotate()``.
    ValidationResult: Every problem found, never just the first.
    generate_password(): ``secrets``-based, alphanumeric only so the value
        is safe unquoted in shell, YAML and ``.env`` files.

Precedence (highest first):
    1. ``overrides`` supplied by the operator
    2. values already in the existing ``.env`` (unless still the sentinel)
    3. generated secrets for sentinel / ``generated_keys`` entries
    4. the template value

Related Modules:
    - :mod:`sol_deploy.deploy.envfile` — comment-preserving .env model
    - :mod:`sol_deploy.deploy.pipelines` — resolve/validate steps

Tags:
    environment, dotenv, secrets, template, validation
"""

from __future__ import annotations

import os
import re
import secrets
import string
import tempfile
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from sol_deploy.core.errors import ConfigError, ErrorKind
from sol_deploy.deploy.envfile import EnvDocument
from sol_deploy.logging import get_logger

logger = get_logger(__name__)

#: Template marker meaning "generate a secret here".
PASSWORD_SENTINEL = "<generate_secure_password_here>"

#: Letters and digits only: survives shell, YAML and dotenv unquoted.
PASSWORD_ALPHABET = string.ascii_letters + string.digits

_PLACEHOLDER_RE = re.compile(r"^<[^<>]+>$")


def is_placeholder(value: str | None) -> bool:
    """True for the sentinel and any other ``<...>`` template marker."""
    if value is None:
        return False
    return value == PASSWORD_SENTINEL or bool(_PLACEHOLDER_RE.match(value.strip()))


def generate_password(length: int = 24, alphabet: str = PASSWORD_ALPHABET) -> str:
    """Return a cryptographically random password of *length* characters."""
    if length < 1:
        raise ValueError("password length must be positive")
    return "".join(secrets.choice(alphabet) for _ in range(length))


def write_private(path: Path, text: str, mode: int = 0o600) -> None:
    """Atomically replace *path* with *text*, readable only by the owner."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------


class EnvironmentConfig(Mapping[str, str]):
    """Resolved environment: ordered ``name -> value`` mapping."""

    def __init__(
        self,
        values: Mapping[str, str],
        *,
        template_keys: Iterable[str] = (),
        generated: Iterable[str] = (),
    ) -> None:
        self._values = dict(values)
        self.template_keys: tuple[str, ...] = tuple(template_keys)
        self.generated: tuple[str, ...] = tuple(generated)

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"EnvironmentConfig(keys={list(self._values)}, generated={list(self.generated)})"

    def as_dict(self) -> dict[str, str]:
        return dict(self._values)


@dataclass(frozen=True)
class EnvProblem:
    """One problem with one key."""

    key: str
    kind: ErrorKind
    message: str


@dataclass
class ValidationResult:
    """Complete list of problems found in an environment."""

    problems: list[EnvProblem] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.problems

    @property
    def messages(self) -> list[str]:
        return [p.message for p in self.problems]

    def raise_for_problems(self, source: Path | None = None) -> None:
        """Raise one ConfigError carrying every problem, if there are any."""
        if self.ok:
            return
        where = f" in {source}" if source else ""
        error = ConfigError(
            f"{len(self.problems)} environment problem(s){where}",
            kind=self.problems[0].kind,
            problems=self.messages,
            remediation="Edit the .env file or run 'sol-deploy env init' to fill generated secrets",
        )
        if source is not None:
            error.with_context(path=str(source))
        raise error


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class EnvironmentResolver:
    """Resolves, validates and writes the homelab environment file.

    Parameters
    ----------
    password_length:
        Length of generated secrets.
    generated_keys:
        Keys that get a generated secret when their template value is a
        placeholder or empty (keys holding the sentinel always do).
    """

    def __init__(
        self,
        password_length: int = 24,
        generated_keys: Iterable[str] = ("N8N_PASSWORD", "GRAFANA_ADMIN_PASSWORD"),
    ) -> None:
        self.password_length = password_length
        self.generated_keys = frozenset(generated_keys)

    def _should_generate(self, key: str, template_value: str) -> bool:
        if template_value == PASSWORD_SENTINEL:
            return True
        return key in self.generated_keys and (not template_value or is_placeholder(template_value))

    def resolve(
        self,
        template_path: Path,
        existing_path: Path | None = None,
        overrides: Mapping[str, str] | None = None,
    ) -> EnvironmentConfig:
        """Resolve the environment from *template_path*.

        Raises
        ------
        ConfigError
            Kind MISSING_TEMPLATE if the template does not exist.
        """
        if not template_path.is_file():
            raise ConfigError(
                f"Environment template not found: {template_path}",
                kind=ErrorKind.MISSING_TEMPLATE,
                remediation="Restore docker/env.template from version control",
            ).with_context(path=str(template_path))

        template = EnvDocument.load(template_path)
        existing: dict[str, str] = {}
        if existing_path is not None and existing_path.is_file():
            existing = EnvDocument.load(existing_path).to_dict()
        supplied = {k: v for k, v in (overrides or {}).items() if v != PASSWORD_SENTINEL}

        values: dict[str, str] = {}
        generated: list[str] = []
        for key in template.keys():
            template_value = template.get(key) or ""
            if key in supplied:
                values[key] = supplied[key]
                continue
            current = existing.get(key)
            generatable = self._should_generate(key, template_value)
            stale = (
                current is None
                or current == PASSWORD_SENTINEL
                or (generatable and (not current or is_placeholder(current)))
            )
            if current is not None and not stale:
                values[key] = current
                continue
            if generatable:
                values[key] = generate_password(self.password_length)
                generated.append(key)
                continue
            values[key] = template_value

        # Keys the operator added by hand survive resolution.
        for key, value in existing.items():
            if key not in values and value != PASSWORD_SENTINEL:
                values[key] = value
        for key, value in supplied.items():
            values.setdefault(key, value)

        logger.info(
            "environment.resolved",
            template=str(template_path),
            keys=len(values),
            generated=generated,
            existing=bool(existing),
        )
        return EnvironmentConfig(values, template_keys=template.keys(), generated=generated)

    def load(self, path: Path, template_path: Path | None = None) -> EnvironmentConfig:
        """Load an existing ``.env`` without resolving anything."""
        template_keys: list[str] = []
        if template_path is not None and template_path.is_file():
            template_keys = EnvDocument.load(template_path).keys()
        return EnvironmentConfig(EnvDocument.load(path).to_dict(), template_keys=template_keys)

    def validate(self, config: Mapping[str, str], required_keys: Iterable[str] | None = None) -> ValidationResult:
        """Enumerate every missing or placeholder-valued required key.

        ``required_keys=None`` requires every key the template declared.
        Placeholders in optional keys are reported as warnings.
        """
        if required_keys is None:
            required = list(getattr(config, "template_keys", ()) or config.keys())
        else:
            required = list(required_keys)

        result = ValidationResult()
        for key in required:
            value = config.get(key)
            if value is None or value.strip() == "":
                result.problems.append(
                    EnvProblem(key, ErrorKind.MISSING_REQUIRED_KEY, f"{key}: required key is missing or empty")
                )
            elif is_placeholder(value):
                result.problems.append(
                    EnvProblem(
                        key,
                        ErrorKind.PLACEHOLDER_VALUE_REMAINS,
                        f"{key}: still holds template placeholder {value}",
                    )
                )
        for key, value in config.items():
            if key not in required and is_placeholder(value):
                result.warnings.append(f"{key}: optional key still holds placeholder {value}")
        return result

    def write(self, config: Mapping[str, str], template_path: Path, target_path: Path) -> Path:
        """Render *config* into a ``.env`` at *target_path* (mode 0600).

        The existing target (or else the template) provides the layout, so
        comments and ordering survive. The file is replaced atomically.
        """
        base = target_path if target_path.is_file() else template_path
        document = EnvDocument.load(base) if base.is_file() else EnvDocument()
        for key, value in config.items():
            document.set(key, value)

        write_private(target_path, document.render())

        logger.info("environment.written", path=str(target_path), keys=len(config))
        return target_path

    def rotate(self, path: Path, keys: Iterable[str]) -> list[str]:
        """Replace *keys* in the ``.env`` at *path* with new secrets."""
        if not path.is_file():
            raise ConfigError(
                f"Environment file not found: {path}",
                kind=ErrorKind.MISSING_REQUIRED_KEY,
                remediation="Run 'sol-deploy env init' first",
            ).with_context(path=str(path))
        document = EnvDocument.load(path)
        rotated = []
        for key in keys:
            document.set(key, generate_password(self.password_length))
            rotated.append(key)
        write_private(path, document.render())
        logger.info("environment.rotated", path=str(path), keys=rotated)
        return rotated
