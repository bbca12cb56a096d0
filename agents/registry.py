"""Registry of peer deal agents keyed by company id."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from services.deal_errors import AgentNotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentEndpoint:
    """Where a company's deal agent can be reached."""

    company_id: str
    base_url: str
    display_name: str

    def url_for(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"


class AgentRegistry(dict):
    """Read-only, dictionary-like lookup of :class:`AgentEndpoint` entries.

    The registry is loaded once when the process starts (from the
    ``AGENT_REGISTRY`` JSON string or the registry file written after a
    deployment) and never mutated afterwards.  Lookups fall back to a
    case-insensitive match so ``Dummy-Company-Alpha`` resolves the same agent
    as ``dummy-company-alpha``.
    """

    def __init__(self, entries: Optional[Mapping[str, AgentEndpoint]] = None) -> None:
        super().__init__(entries or {})
        self._folded: Dict[str, str] = {str(key).lower(): key for key in self}

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------
    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]]) -> "AgentRegistry":
        """Build a registry from ``{company_id: {url, company_name}}`` data.

        ``base_url``/``display_name`` are accepted as alternative keys.
        Entries without a URL are skipped with a warning.
        """

        entries: Dict[str, AgentEndpoint] = {}
        for company_id, value in (raw or {}).items():
            key = str(company_id).strip()
            if not key:
                continue
            if isinstance(value, str):
                value = {"url": value}
            if not isinstance(value, Mapping):
                logger.warning("Ignoring malformed registry entry for %s", key)
                continue
            url = str(value.get("url") or value.get("base_url") or "").strip()
            if not url:
                logger.warning("Registry entry for %s has no URL; skipping", key)
                continue
            if not url.startswith("http"):
                url = f"http://{url}"
            name = str(value.get("company_name") or value.get("display_name") or key).strip()
            entries[key] = AgentEndpoint(company_id=key, base_url=url.rstrip("/"), display_name=name)
        return cls(entries)

    @classmethod
    def from_json(cls, text: Optional[str]) -> "AgentRegistry":
        if not text or not text.strip():
            return cls()
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError("Agent registry must be a JSON object") from exc
        if not isinstance(parsed, dict):
            raise ValueError("Agent registry must be a JSON object")
        return cls.from_mapping(parsed)

    @classmethod
    def from_file(cls, path: str) -> "AgentRegistry":
        with open(path, "r", encoding="utf-8") as handle:
            return cls.from_json(handle.read())

    @classmethod
    def from_settings(cls, settings: Any) -> "AgentRegistry":
        """Load from ``AGENT_REGISTRY`` first, then from the registry file."""

        inline = getattr(settings, "agent_registry", None)
        if inline:
            registry = cls.from_json(inline)
            logger.info("Loaded %d agent(s) from AGENT_REGISTRY", len(registry))
            return registry
        path = getattr(settings, "agent_registry_path", None)
        if path and os.path.exists(path):
            registry = cls.from_file(path)
            logger.info("Loaded %d agent(s) from %s", len(registry), path)
            return registry
        logger.info("No agent registry configured; peer lookups will fail")
        return cls()

    # ------------------------------------------------------------------
    # Lookup helpers
    # ------------------------------------------------------------------
    def _resolve_key(self, key: Any) -> Optional[str]:
        if key is None:
            return None
        if super().__contains__(key):
            return key
        if isinstance(key, str):
            return self._folded.get(key.strip().lower())
        return None

    def __contains__(self, key: object) -> bool:  # type: ignore[override]
        return self._resolve_key(key) is not None

    def __getitem__(self, key: Any) -> AgentEndpoint:  # type: ignore[override]
        resolved = self._resolve_key(key)
        if resolved is None:
            raise KeyError(key)
        return super().__getitem__(resolved)

    def get(self, key: Any, default: Any = None) -> Any:  # type: ignore[override]
        resolved = self._resolve_key(key)
        if resolved is None:
            return default
        return super().get(resolved, default)

    def resolve(self, company_id: str) -> AgentEndpoint:
        """Return the endpoint for ``company_id`` or raise ``AgentNotFoundError``."""

        endpoint = self.get(company_id)
        if endpoint is None:
            raise AgentNotFoundError(company_id)
        return endpoint

    def describe(self, *, exclude: Optional[str] = None) -> List[Dict[str, str]]:
        """List ``{id, company_name}`` pairs, optionally omitting one company."""

        skip = self._resolve_key(exclude) if exclude else None
        return [
            {"id": endpoint.company_id, "company_name": endpoint.display_name}
            for key, endpoint in super().items()
            if key != skip
        ]

    # ------------------------------------------------------------------
    # The registry is immutable at runtime
    # ------------------------------------------------------------------
    def _readonly(self, *_args, **_kwargs):
        raise TypeError("AgentRegistry is read-only once loaded")

    __setitem__ = _readonly
    __delitem__ = _readonly
    clear = _readonly
    pop = _readonly
    popitem = _readonly
    setdefault = _readonly
    update = _readonly
