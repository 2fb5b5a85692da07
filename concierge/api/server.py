"""
Concierge HTTP API.

Endpoints:
- POST /sessions                      start a session
- POST /sessions/{token}/messages     add a shopper message
- POST /sessions/{token}/process      run the pipeline over posted catalog
                                      payloads, or over the shop's catalog
                                      when no payloads are posted
- GET  /sessions/{token}              poll for results (delivery + billing)
- GET  /health

Every response carries an X-Request-ID header (taken from the request when
present) and every log line written while serving it carries the same id.
"""

from contextlib import asynccontextmanager
from typing import Callable, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware

from concierge.api.models import (
    DeliveryResponse,
    MessageRequest,
    ProcessRequest,
    ProcessResponse,
    SessionResponse,
    StartSessionRequest,
)
from concierge.billing.coordinator import DeliveryCoordinator
from concierge.catalog.decoders import decode_catalog_products
from concierge.catalog.models import CandidateProduct
from concierge.catalog.source import CatalogClient, CatalogSourceError, catalog_client_from_env
from concierge.db.database import init_db
from concierge.sessions.service import SessionService, SessionStateError
from concierge.utils.logger import REQUEST_ID_HEADER, bind_shop, get_logger, request_context

logger = get_logger("api.server")

CatalogFactory = Callable[[str], Optional[CatalogClient]]


def _session_token_from_path(path: str) -> Optional[str]:
    parts = path.strip("/").split("/")
    if len(parts) >= 2 and parts[0] == "sessions":
        return parts[1]
    return None


def create_app(
    service: Optional[SessionService] = None,
    coordinator: Optional[DeliveryCoordinator] = None,
    database_url: Optional[str] = None,
    catalog_factory: Optional[CatalogFactory] = None,
) -> FastAPI:
    """Build the FastAPI app. Services default to the module-level database."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if service is None or coordinator is None:
            init_db(database_url)
        yield

    app = FastAPI(title="Concierge API", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[REQUEST_ID_HEADER],
    )

    sessions = service or SessionService()
    delivery = coordinator or DeliveryCoordinator()
    catalog_for_shop = catalog_factory or catalog_client_from_env

    @app.middleware("http")
    async def bind_request_context(request: Request, call_next):
        session_token = _session_token_from_path(request.url.path)
        with request_context(request.headers.get(REQUEST_ID_HEADER), session=session_token) as request_id:
            response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    async def fetch_shop_catalog(token: str) -> List[CandidateProduct]:
        session = await run_in_threadpool(sessions.get_session, token)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        client = catalog_for_shop(session["shop_id"])
        if client is None:
            raise HTTPException(
                status_code=400,
                detail="No catalog credentials configured for this shop; post product payloads instead",
            )
        try:
            return await client.fetch_products()
        except CatalogSourceError as e:
            logger.error(f"Catalog fetch failed for {session['shop_id']}: {e}")
            raise HTTPException(status_code=502, detail="Catalog unavailable")

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.post("/sessions", response_model=SessionResponse)
    def start_session(request: StartSessionRequest):
        bind_shop(request.shop_id)
        try:
            return sessions.start_session(request.shop_id, request.experience_id, request.result_count)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    @app.post("/sessions/{token}/messages", response_model=SessionResponse)
    def add_message(token: str, request: MessageRequest):
        try:
            session = sessions.add_message(token, request.text, request.role)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except SessionStateError as e:
            raise HTTPException(status_code=409, detail=str(e))
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return session

    @app.post("/sessions/{token}/process", response_model=ProcessResponse)
    async def process_session(token: str, request: ProcessRequest):
        if request.products is None:
            candidates = await fetch_shop_catalog(token)
        else:
            candidates = decode_catalog_products(request.products)
        try:
            result = await sessions.process_session(token, candidates)
        except SessionStateError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except Exception as e:
            logger.error(f"Processing failed for {token}: {e}")
            raise HTTPException(status_code=500, detail="Processing failed")
        if result is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return ProcessResponse(
            token=token,
            status="COMPLETE",
            product_count=len(result.handles),
            source=result.source,
            intent_used=result.intent_used,
            relaxation=result.relaxation,
            suggestions=result.suggestions,
        )

    @app.get("/sessions/{token}", response_model=DeliveryResponse)
    def get_results(token: str):
        delivered = delivery.deliver(token)
        if delivered is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return DeliveryResponse(
            token=token,
            status=delivered.status,
            product_handles=delivered.handles,
            reasoning=delivered.reasoning,
            error=delivered.error,
            charged=delivered.charged,
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("concierge.api.server:app", host="0.0.0.0", port=8000)
