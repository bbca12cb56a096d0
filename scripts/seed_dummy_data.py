"""Write dummy company contexts and a local agent registry for development."""
from __future__ import annotations

import json
import logging
import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from config.settings import settings
from services.company_context import CompanyContextRepository, company_context_from_api_payload

logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))

DUMMY_COMPANIES = [
    {
        "id": "dummy-company-alpha",
        "email": "alpha@example.com",
        "company_name": "Alpha Consulting",
        "short_term_goals": ["Close 3 partnerships this quarter", "Launch new advisory service"],
        "long_term_goals": ["Become top-5 in the region", "Expand to two new domains"],
        "domains": ["consulting", "strategy", "advisory"],
        "policies": ["No exclusivity beyond 12 months", "Payment net-30 only"],
        "pricing_model": "Retainer + success fee",
        "services": ["Strategy workshops", "Due diligence", "Integration support"],
        "source": "dummy",
    },
    {
        "id": "dummy-company-beta",
        "email": "beta@example.com",
        "company_name": "Beta Labs",
        "short_term_goals": ["Ship API v2", "Onboard 10 pilot customers"],
        "long_term_goals": ["Open-source core stack", "Reach 100 enterprise customers"],
        "domains": ["SaaS", "developer-tools", "APIs"],
        "policies": ["No custom one-off contracts under 6 months", "SLAs only for enterprise tier"],
        "pricing_model": "Usage-based + enterprise flat fee",
        "services": ["API access", "Dedicated support", "Custom integrations"],
        "source": "dummy",
    },
]

LOCAL_PORTS = {"dummy-company-alpha": 3001, "dummy-company-beta": 3002}


def seed(contexts_dir: str, registry_path: str) -> None:
    repository = CompanyContextRepository(contexts_dir)
    registry = {}
    for raw in DUMMY_COMPANIES:
        context = company_context_from_api_payload(raw)
        path = repository.save(context)
        logging.info("Wrote %s", path)
        registry[context.id] = {
            "url": f"http://localhost:{LOCAL_PORTS[context.id]}",
            "company_name": context.company_name,
        }

    os.makedirs(os.path.dirname(registry_path), exist_ok=True)
    with open(registry_path, "w", encoding="utf-8") as handle:
        json.dump(registry, handle, indent=2)
    logging.info("Wrote %s", registry_path)


if __name__ == "__main__":
    seed(settings.contexts_dir, settings.agent_registry_path)
