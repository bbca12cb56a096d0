"""Company profiles used to address deal confirmations."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)


@dataclass
class CompanyContext:
    id: str
    email: str = ""
    company_name: str = ""
    short_term_goals: List[str] = field(default_factory=list)
    long_term_goals: List[str] = field(default_factory=list)
    domains: List[str] = field(default_factory=list)
    policies: List[str] = field(default_factory=list)
    pricing_model: str = ""
    services: List[str] = field(default_factory=list)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _ensure_list(value: Any) -> List[str]:
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value]
    if value is None:
        return []
    return [str(value)]


def _first(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return value
    return None


def company_context_from_api_payload(
    raw: Mapping[str, Any], id_value: Optional[str] = None
) -> CompanyContext:
    """Normalise an onboarding payload (snake_case or camelCase) into a context."""

    now = datetime.now(timezone.utc).isoformat()
    return CompanyContext(
        id=str(id_value if id_value is not None else raw.get("id") or ""),
        email=str(raw.get("email") or ""),
        company_name=str(_first(raw, "company_name", "companyName") or ""),
        short_term_goals=_ensure_list(_first(raw, "short_term_goals", "shortTermGoals")),
        long_term_goals=_ensure_list(_first(raw, "long_term_goals", "longTermGoals")),
        domains=_ensure_list(raw.get("domains")),
        policies=_ensure_list(raw.get("policies")),
        pricing_model=str(_first(raw, "pricing_model", "pricingModel") or ""),
        services=_ensure_list(raw.get("services")),
        created_at=str(_first(raw, "created_at", "createdAt") or now),
        updated_at=now,
        source=raw.get("source"),
    )


class CompanyContextRepository:
    """Reads ``<contexts_dir>/<company_id>.json`` profile files."""

    def __init__(self, contexts_dir: str) -> None:
        self.contexts_dir = contexts_dir

    def _path(self, company_id: str) -> str:
        return os.path.join(self.contexts_dir, f"{company_id}.json")

    def load(self, company_id: str) -> Optional[CompanyContext]:
        if not company_id:
            return None
        path = self._path(company_id)
        try:
            with open(path, "r", encoding="utf-8") as handle:
                raw = json.load(handle)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError):
            logger.warning("Unreadable company context at %s", path, exc_info=True)
            return None
        if not isinstance(raw, dict):
            logger.warning("Company context at %s is not a JSON object", path)
            return None
        return CompanyContext(
            id=str(raw.get("id") or company_id),
            email=str(raw.get("email") or ""),
            company_name=str(raw.get("company_name") or ""),
            short_term_goals=_ensure_list(raw.get("short_term_goals")),
            long_term_goals=_ensure_list(raw.get("long_term_goals")),
            domains=_ensure_list(raw.get("domains")),
            policies=_ensure_list(raw.get("policies")),
            pricing_model=str(raw.get("pricing_model") or ""),
            services=_ensure_list(raw.get("services")),
            created_at=raw.get("created_at"),
            updated_at=raw.get("updated_at"),
            source=raw.get("source"),
        )

    def list_ids(self) -> List[str]:
        if not os.path.isdir(self.contexts_dir):
            return []
        return sorted(
            name[: -len(".json")]
            for name in os.listdir(self.contexts_dir)
            if name.endswith(".json") and os.path.isfile(os.path.join(self.contexts_dir, name))
        )

    def list_contexts(self) -> List[CompanyContext]:
        contexts = []
        for company_id in self.list_ids():
            context = self.load(company_id)
            if context is not None:
                contexts.append(context)
        return contexts

    def save(self, context: CompanyContext) -> str:
        os.makedirs(self.contexts_dir, exist_ok=True)
        path = self._path(context.id)
        with open(path, "w", encoding="utf-8") as handle:
            json.dump(context.to_dict(), handle, indent=2)
        return path
