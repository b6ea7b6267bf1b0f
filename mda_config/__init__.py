"""
mda_config -- single public entrypoint for posting configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  Returns a ``ConfigurationSnapshot``: the
    chart of accounts, jurisdiction tax tables, posting rules keyed by
    smart code, organization profiles and engine settings, all frozen.

Architecture position:
    Configuration -- sits above ``mda_kernel`` and below ``mda_services``.
    The kernel MUST NEVER import from ``mda_config``; the orchestrator
    receives a snapshot by injection.

Invariants enforced:
    - Single entrypoint: runtime configuration flows through
      ``get_active_config()`` (or ``build_snapshot()`` for in-memory sets).
    - Deterministic: the same YAML always yields the same checksum.

Failure modes:
    - ``FileNotFoundError`` -- the requested configuration set is missing.
    - ``ConfigurationError`` -- structural or cross-reference problem.

Audit relevance:
    Every successful load emits a ``config_loaded`` log entry with the
    config id, version and checksum.  Posted transactions record the
    snapshot's ``version_label``, tying each journal to the configuration
    that produced it.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any
from uuid import UUID

from mda_config.loader import build_snapshot as _build_snapshot
from mda_config.loader import load_yaml_file
from mda_config.schema import (
    ConfigurationSnapshot,
    EngineSettings,
    OrganizationProfile,
    RetrySettings,
)
from mda_kernel.logging_config import get_logger

_logger = get_logger("config")

# Default configuration sets directory
_DEFAULT_CONFIG_DIR = Path(__file__).parent / "sets"
DEFAULT_SET_NAME = "default"


def get_active_config(
    organization_id: UUID | None = None,
    config_dir: Path | None = None,
    set_name: str = DEFAULT_SET_NAME,
) -> ConfigurationSnapshot:
    """The ONLY public configuration entrypoint.

    Non-goals:
        Does NOT cache snapshots across calls; callers hold the returned
        snapshot for the lifetime of a posting session.

    Args:
        organization_id: Organization the caller is about to post for.
            Only used for the trace; every snapshot covers all organizations.
        config_dir: Override path to the configuration sets directory.
        set_name: File stem of the set to load.

    Raises:
        FileNotFoundError: If the set does not exist.
        ConfigurationError: If the set fails validation.
    """
    sets_dir = Path(config_dir) if config_dir is not None else _DEFAULT_CONFIG_DIR
    path = sets_dir / f"{set_name}.yaml"
    if not path.is_file():
        raise FileNotFoundError(f"Configuration set not found: {path}")

    snapshot = _build_snapshot(load_yaml_file(path))
    _trace(snapshot, organization_id, source=str(path))
    return snapshot


def build_snapshot(data: dict[str, Any]) -> ConfigurationSnapshot:
    """Build a snapshot from an in-memory configuration dict (tests, tooling)."""
    snapshot = _build_snapshot(data)
    _trace(snapshot, None, source="memory")
    return snapshot


def _trace(snapshot: ConfigurationSnapshot, organization_id: UUID | None, source: str) -> None:
    profile = snapshot.profile_for(organization_id)
    _logger.info(
        "config_loaded",
        extra={
            "config_id": snapshot.config_id,
            "config_version": snapshot.version,
            "checksum": snapshot.checksum,
            "source": source,
            "scope_organization": str(organization_id) if organization_id else None,
            "scope_jurisdiction": profile.jurisdiction,
            "rule_count": len(snapshot.rule_book.default_rules),
            "organization_count": len(snapshot.profiles),
        },
    )


__all__ = [
    "ConfigurationSnapshot",
    "EngineSettings",
    "OrganizationProfile",
    "RetrySettings",
    "build_snapshot",
    "get_active_config",
]
