import sys, os, uvicorn, logging
from contextlib import asynccontextmanager
from typing import Any, Optional, Protocol, cast

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from config.settings import Settings, get_settings
from agents.registry import AgentRegistry
from services.company_context import CompanyContextRepository
from services.deal_finalizer import DealFinalizer
from services.email_service import EmailService
from services.negotiation_engine import NegotiationEngine
from services.peer_notifier import PeerNotifier
from services.proposal_store import ProposalStore
from api.middleware.request_ids import RequestIdMiddleware
from api.routers import deals, peer

_settings = get_settings()
LOG_DIR = _settings.log_dir
os.makedirs(LOG_DIR, exist_ok=True)
logging.basicConfig(level=getattr(logging, _settings.log_level.upper(), logging.INFO),
                    format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
                    handlers=[logging.StreamHandler(), logging.FileHandler(os.path.join(LOG_DIR, "deal-agent.log"))])
logger = logging.getLogger(__name__)


class DealAppState(Protocol):
    settings: Settings
    registry: Optional[AgentRegistry]
    contexts: Optional[CompanyContextRepository]
    notifier: Optional[PeerNotifier]
    finalizer: Optional[DealFinalizer]
    engine: Optional[NegotiationEngine]


def build_services(settings: Settings, *, sender: Any = None) -> dict:
    """Wire the registry, store, notifier, finalizer and engine for ``settings``."""

    registry = AgentRegistry.from_settings(settings) if settings.is_peer else None
    contexts = CompanyContextRepository(settings.contexts_dir)
    notifier = None
    if settings.is_peer:
        notifier = PeerNotifier(
            sender_id=settings.company_id,
            timeout=settings.peer_push_timeout,
        )
    finalizer = DealFinalizer(
        sender or EmailService(settings),
        contexts=contexts,
        registry=registry,
        notify_scope=settings.notify_scope,
        own_company_id=settings.company_id,
    )
    engine = NegotiationEngine(
        ProposalStore(),
        company_id=settings.company_id if settings.is_peer else None,
        registry=registry,
        notifier=notifier,
        finalizer=finalizer,
        contexts=contexts,
    )
    return {
        "registry": registry,
        "contexts": contexts,
        "notifier": notifier,
        "finalizer": finalizer,
        "engine": engine,
    }


def create_app(settings: Optional[Settings] = None, *, sender: Any = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        state = cast(DealAppState, app.state)
        state.settings = settings
        logger.info(
            "Deal agent starting (mode=%s, company=%s, name=%s)",
            settings.deal_mode,
            settings.company_id or "-",
            settings.company_name or "-",
        )
        try:
            services = build_services(settings, sender=sender)
            for name, value in services.items():
                setattr(state, name, value)
            logger.info("Deal services initialized.")
        except Exception as e:
            logger.critical(f"FATAL: Deal service initialization failed: {e}", exc_info=True)
            state.registry = None
            state.contexts = None
            state.notifier = None
            state.finalizer = None
            state.engine = None
        yield
        notifier = getattr(state, "notifier", None)
        if notifier is not None:
            try:
                notifier.shutdown(wait=True)
            except Exception:  # pragma: no cover - shutdown path
                logger.exception("Failed to stop peer notifier during shutdown")
        state.notifier = None
        state.engine = None
        state.finalizer = None
        logger.info("Deal agent shutting down.")

    title = (
        f"Deal Agent ({settings.company_name or settings.company_id})"
        if settings.is_peer
        else "Deal Hub"
    )
    app = FastAPI(title=title, version="1.0", lifespan=lifespan)
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_credentials=True, allow_methods=["*"], allow_headers=["*"])
    app.add_middleware(RequestIdMiddleware)
    app.include_router(deals.router)
    app.include_router(peer.router)
    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run("api.main:app", host=_settings.deal_api_host, port=_settings.deal_api_port)
