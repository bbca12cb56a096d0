"""Run a peer-to-peer deal between two local agent processes.

Starts Alpha (port 3001) and Beta (port 3002) with mirrored registries, then
runs list_bots, propose (Alpha -> Beta), accept (Beta), accept (Alpha) and
checks that both copies end in ``accepted_by_both``.
"""
from __future__ import annotations

import json
import logging
import os
import subprocess
import sys
import time
from typing import Any, Dict, List, Optional

import requests

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

ALPHA_ID = "dummy-company-alpha"
BETA_ID = "dummy-company-beta"
ALPHA_PORT = 3001
BETA_PORT = 3002
ALPHA_URL = f"http://localhost:{ALPHA_PORT}"
BETA_URL = f"http://localhost:{BETA_PORT}"

logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
logger = logging.getLogger("two_agent_demo")


def _start_agent(company_id: str, company_name: str, port: int, registry: Dict[str, Any]) -> subprocess.Popen:
    env = dict(os.environ)
    env.update(
        {
            "DEAL_MODE": "peer",
            "COMPANY_ID": company_id,
            "COMPANY_NAME": company_name,
            "AGENT_REGISTRY": json.dumps(registry),
        }
    )
    return subprocess.Popen(
        [sys.executable, "-m", "uvicorn", "api.main:app", "--port", str(port), "--log-level", "warning"],
        cwd=ROOT,
        env=env,
    )


def _wait_for(url: str, label: str, attempts: int = 50) -> None:
    for _ in range(attempts):
        try:
            if requests.get(f"{url}/health", timeout=1).ok:
                return
        except requests.RequestException:
            pass
        time.sleep(0.2)
    raise RuntimeError(f"{label} did not become ready at {url}")


def _deal(agent_url: str, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    response = requests.post(
        f"{agent_url}/deal", json={"method": method, "params": params or {}}, timeout=10
    )
    if not response.ok:
        raise RuntimeError(f"{method} failed: {response.status_code} {response.text}")
    return response.json()


def run_demo() -> None:
    children: List[subprocess.Popen] = [
        _start_agent(ALPHA_ID, "Alpha Consulting", ALPHA_PORT, {BETA_ID: {"url": BETA_URL, "company_name": "Beta Labs"}}),
        _start_agent(BETA_ID, "Beta Labs", BETA_PORT, {ALPHA_ID: {"url": ALPHA_URL, "company_name": "Alpha Consulting"}}),
    ]
    try:
        _wait_for(ALPHA_URL, "Alpha")
        _wait_for(BETA_URL, "Beta")

        bots = _deal(ALPHA_URL, "list_bots")["bots"]
        if not any(bot["id"] == BETA_ID for bot in bots):
            raise RuntimeError(f"Alpha list_bots should include Beta: {bots}")
        logger.info("Bots visible to Alpha: %s", ", ".join(bot["id"] for bot in bots))

        proposed = _deal(ALPHA_URL, "propose", {"to_company_id": BETA_ID, "terms": {"amount": 100, "description": "Test deal"}})
        proposal_id = proposed["proposal_id"]
        logger.info("Alpha proposed %s", proposal_id)

        beta = _deal(BETA_URL, "accept_deal", {"proposal_id": proposal_id, "as_company_id": BETA_ID})
        logger.info("Beta accepted: %s", beta["status"])
        time.sleep(0.6)

        alpha = _deal(ALPHA_URL, "accept_deal", {"proposal_id": proposal_id, "as_company_id": ALPHA_ID})
        logger.info("Alpha accepted: %s (%s)", alpha["status"], alpha.get("message", ""))
        if alpha["status"] != "accepted_by_both":
            raise RuntimeError(f"Expected accepted_by_both, got {alpha['status']}")

        time.sleep(0.6)
        mirrored = _deal(BETA_URL, "get_proposal_status", {"proposal_id": proposal_id})
        if mirrored["status"] != "accepted_by_both":
            raise RuntimeError(f"Beta copy did not converge: {mirrored['status']}")
        logger.info("Alpha and Beta completed deal %s", proposal_id)
    finally:
        for child in children:
            child.terminate()
        for child in children:
            child.wait(timeout=10)


if __name__ == "__main__":
    run_demo()
