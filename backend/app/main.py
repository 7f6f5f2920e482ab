from __future__ import annotations

import hmac
from typing import Annotated, Any, Callable

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import HTMLResponse, JSONResponse
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from integrations.ledger import LedgerError
from integrations.neynar import CastNotFoundError, NeynarError
from integrations.service import session_scope

from pipelines.context import PipelineContext
from pipelines.index_run import IndexPipeline
from pipelines.resolution_run import ResolutionPipeline
from pipelines.sync_run import SyncPipeline

from . import schemas
from .db import get_db
from .models import MarketStatus
from .repositories import MarketIndexRepository
from .services import frames
from .services.market_service import MarketQuery, MarketService
from .services.sync_service import MarketNotFoundError, SettlementSyncService, SyncRejected
from .services.transactions import TransactionBuilder, TransactionRejected
from .services.webhook_service import WebhookService, decode_payload, validate_signature

router = APIRouter()


def _context(request: Request) -> PipelineContext:
    return request.app.state.context


@router.get("/healthz", tags=["system"])
def healthcheck() -> dict[str, str]:
    """Basic readiness probe consumed by infrastructure monitors."""

    return {"status": "ok"}


# ----------------------------------------------------------------------
# Cache reads


def _market_query(
    *,
    status: Annotated[str | None, Query(description="Market status filter", example="active")] = None,
    author: Annotated[str | None, Query(description="Cast author username")] = None,
    sort: Annotated[
        str,
        Query(
            description="Field to sort by",
            pattern="^(deadline|likes_count|created_at|market_id)$",
        ),
    ] = "deadline",
    order: Annotated[
        str,
        Query(description="Sort order (asc|desc)", pattern="^(asc|desc)$", min_length=3, max_length=4),
    ] = "asc",
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> MarketQuery:
    """Normalize shared market listing query parameters."""

    return MarketQuery(
        status=status,
        author=author,
        sort=sort,
        order=order,
        limit=limit,
        offset=offset,
    )


def _market_service(db=Depends(get_db)) -> MarketService:
    """Provide the market service wired with a SQLAlchemy session."""

    return MarketService(db)


@router.get("/api/markets", response_model=schemas.MarketList, tags=["markets"])
def list_markets(
    *,
    query: MarketQuery = Depends(_market_query),
    service: MarketService = Depends(_market_service),
):
    """List cached markets; soft-cancelled markets are hidden unless requested."""

    result = service.list_markets(query)
    return schemas.MarketList(total=result.total, items=list(result.markets))


@router.get("/api/markets/{market_id}", response_model=schemas.MarketIndexEntry, tags=["markets"])
def get_market(market_id: int, service: MarketService = Depends(_market_service)):
    market = service.get_market(market_id)
    if not market:
        raise HTTPException(status_code=404, detail="Market not found")
    return market


@router.get(
    "/api/markets/{market_id}/bets/{address}",
    response_model=schemas.UserBetView,
    tags=["markets"],
)
def get_user_bet(market_id: int, address: str, context: PipelineContext = Depends(_context)):
    """Read a wallet's position straight from the ledger."""

    try:
        bet = context.ledger.get_user_bet(market_id, address)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except LedgerError as exc:
        logger.error("User bet lookup failed for {} on #{}: {}", address, market_id, exc)
        raise HTTPException(status_code=502, detail="Ledger unavailable") from exc
    return schemas.UserBetView(
        market_id=market_id,
        address=address,
        moon_amount=bet.moon_amount,
        doom_amount=bet.doom_amount,
        claimed=bet.claimed,
    )


@router.get("/api/live-score", tags=["markets"])
def live_score(
    hash: Annotated[str | None, Query(description="Cast hash or URL")] = None,
    context: PipelineContext = Depends(_context),
):
    if not hash:
        raise HTTPException(status_code=400, detail="Invalid Identifier")
    try:
        cast = context.neynar.fetch_cast(hash)
    except CastNotFoundError:
        return {"likes": 0, "status": "not_found"}
    except NeynarError as exc:
        logger.error("Live score lookup failed for {}: {}", hash, exc)
        raise HTTPException(status_code=502, detail="Neynar Error") from exc

    payload = schemas.LiveScore(
        likes=cast.likes_count,
        timestamp=int(context.now().timestamp() * 1000),
    )
    return JSONResponse(
        payload.model_dump(exclude_none=True),
        headers={"Cache-Control": "public, s-maxage=10, stale-while-revalidate=59"},
    )


# ----------------------------------------------------------------------
# Frames and transactions


def _app_url(context: PipelineContext) -> str:
    return context.settings.app_url.rstrip("/")


def _untrusted(payload: dict[str, Any] | None) -> dict[str, Any]:
    data = (payload or {}).get("untrustedData")
    return data if isinstance(data, dict) else {}


@router.get("/api/frame", tags=["frames"])
def frame_info() -> dict[str, str]:
    return {"message": "Frame endpoint - use POST"}


@router.post("/api/frame", response_class=HTMLResponse, tags=["frames"])
def frame_market(
    market_id: Annotated[int, Query(alias="marketId", ge=1)] = 1,
    payload: Annotated[dict[str, Any] | None, Body()] = None,
    service: MarketService = Depends(_market_service),
    context: PipelineContext = Depends(_context),
):
    data = _untrusted(payload)
    logger.info("Frame request: market=#{} fid={} button={}", market_id, data.get("fid"), data.get("buttonIndex"))
    return frames.market_frame(_app_url(context), market_id, service.get_market(market_id))


@router.post("/api/frame/bet", response_class=HTMLResponse, tags=["frames"])
def frame_bet(
    market_id: Annotated[int | None, Query(alias="marketId", ge=1)] = None,
    payload: Annotated[dict[str, Any] | None, Body()] = None,
    context: PipelineContext = Depends(_context),
):
    data = _untrusted(payload)
    button_index = data.get("buttonIndex")
    logger.info("Frame bet: market=#{} fid={} button={}", market_id, data.get("fid"), button_index)
    return frames.bet_confirmation_frame(_app_url(context), market_id, button_index)


@router.post("/api/frame/claim", response_class=HTMLResponse, tags=["frames"])
def frame_claim(
    market_id: Annotated[int, Query(alias="marketId", ge=1)],
    context: PipelineContext = Depends(_context),
):
    return frames.claim_frame(_app_url(context), market_id)


@router.post("/api/frame/create", response_class=HTMLResponse, tags=["frames"])
def frame_create(context: PipelineContext = Depends(_context)):
    return frames.create_frame(_app_url(context))


def _tx_builder(context: PipelineContext = Depends(_context)) -> TransactionBuilder:
    try:
        return TransactionBuilder(context.ledger, context.settings)
    except LedgerError as exc:
        logger.error("Transaction builder unavailable: {}", exc)
        raise HTTPException(status_code=503, detail="Ledger not configured") from exc


def _build_tx(build: Callable[[], Any]) -> Any:
    try:
        return build()
    except TransactionRejected as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except LedgerError as exc:
        logger.error("Transaction error: {}", exc)
        raise HTTPException(status_code=500, detail="Failed to create transaction") from exc


@router.get("/api/tx", tags=["transactions"])
def tx_info():
    return JSONResponse({"error": "Use POST method"}, status_code=405)


@router.post("/api/tx", tags=["transactions"])
def frame_transaction(
    market_id: Annotated[int, Query(alias="marketId", ge=1)],
    action: Annotated[str, Query(pattern="^(bet|claim)$")] = "bet",
    is_moon: Annotated[bool, Query(alias="isMoon")] = False,
    builder: TransactionBuilder = Depends(_tx_builder),
):
    tx = _build_tx(lambda: builder.frame_transaction(market_id, action=action, is_moon=is_moon))
    return tx.model_dump(by_alias=True)


@router.post("/api/tx/bet", tags=["transactions"])
def bet_transaction(
    request: schemas.BetTxRequest,
    builder: TransactionBuilder = Depends(_tx_builder),
    context: PipelineContext = Depends(_context),
):
    calls = _build_tx(
        lambda: builder.bet_calls(
            request.market_id, is_moon=request.is_moon, amount=request.amount, now=context.now()
        )
    )
    return calls.model_dump(by_alias=True)


@router.post("/api/tx/create", tags=["transactions"])
def create_transaction(
    request: schemas.CreateTxRequest,
    builder: TransactionBuilder = Depends(_tx_builder),
    context: PipelineContext = Depends(_context),
):
    calls = _build_tx(
        lambda: builder.create_calls(
            request.cast_url,
            threshold=request.threshold,
            duration_hours=request.duration_hours,
            now=context.now(),
        )
    )
    return calls.model_dump(by_alias=True)


@router.post("/api/tx/claim", tags=["transactions"])
def claim_transaction(
    request: schemas.ClaimTxRequest,
    builder: TransactionBuilder = Depends(_tx_builder),
):
    calls = _build_tx(lambda: builder.claim_calls(request.market_id))
    return calls.model_dump(by_alias=True)


# ----------------------------------------------------------------------
# Reconciliation and admin


def _sync_service(context: PipelineContext = Depends(_context)) -> SettlementSyncService:
    try:
        ledger = context.ledger
    except LedgerError as exc:
        logger.error("Sync unavailable: {}", exc)
        raise HTTPException(status_code=503, detail="Ledger not configured") from exc
    return SettlementSyncService(
        ledger=ledger, neynar=context.neynar, session_factory=context.session_factory
    )


@router.post("/api/sync/market", tags=["sync"])
def sync_market(
    request: schemas.SyncMarketRequest,
    service: SettlementSyncService = Depends(_sync_service),
):
    """Mirror a freshly created market into the cache from its creation receipt."""

    try:
        return service.sync_created_market(request.tx_hash)
    except SyncRejected as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except LedgerError as exc:
        logger.error("Market sync for {} failed: {}", request.tx_hash, exc)
        raise HTTPException(status_code=502, detail="Ledger unavailable") from exc
    except SQLAlchemyError as exc:
        logger.error("Market sync for {} could not write the cache: {}", request.tx_hash, exc)
        raise HTTPException(status_code=500, detail="Failed to update cache") from exc


@router.post("/api/sync/resolution", tags=["sync"])
def sync_resolution(
    request: schemas.SyncResolutionRequest,
    service: SettlementSyncService = Depends(_sync_service),
):
    """Copy an on-chain settlement into the cache."""

    try:
        return service.sync_resolution(request.market_id)
    except MarketNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except LedgerError as exc:
        logger.error("Resolution sync for #{} failed: {}", request.market_id, exc)
        raise HTTPException(status_code=502, detail="Ledger unavailable") from exc
    except SQLAlchemyError as exc:
        logger.error("Resolution sync for #{} could not write the cache: {}", request.market_id, exc)
        raise HTTPException(status_code=500, detail="Failed to update cache") from exc


@router.post("/api/admin/cancel", tags=["admin"])
def admin_cancel(
    request: schemas.AdminCancelRequest,
    context: PipelineContext = Depends(_context),
):
    """Soft-cancel a market: hide it from listings without touching the ledger."""

    address = (request.address or "").lower()
    if not address or address not in context.settings.admin_wallets:
        raise HTTPException(status_code=403, detail="Not an Admin")
    try:
        with session_scope(context.session_factory) as session:
            found = MarketIndexRepository(session).set_status(
                request.market_id, MarketStatus.ADMIN_CANCELLED.value
            )
    except SQLAlchemyError as exc:
        logger.error("Admin cancel of #{} failed: {}", request.market_id, exc)
        raise HTTPException(status_code=500, detail="Failed") from exc
    if not found:
        raise HTTPException(status_code=404, detail="Market not found")
    logger.info("Market #{} soft-cancelled by {}", request.market_id, address)
    return {"success": True, "message": "Market Cancelled"}


# ----------------------------------------------------------------------
# Webhook


@router.get("/api/webhook", tags=["webhook"])
def webhook_health(context: PipelineContext = Depends(_context)) -> dict[str, str]:
    return {
        "status": "ok",
        "service": "Based or Erased Webhook",
        "timestamp": context.now().isoformat(),
    }


@router.post("/api/webhook", tags=["webhook"])
async def webhook(request: Request, context: PipelineContext = Depends(_context)):
    """Always answers 200 so the sender never retries a delivery."""

    raw_body = await request.body()
    signature = request.headers.get("X-Neynar-Signature")
    if not validate_signature(raw_body, signature, context.settings.neynar_webhook_secret):
        logger.error("[Webhook] Invalid signature")
        return {"success": False, "error": "Invalid signature"}

    payload = decode_payload(raw_body)
    if payload is None:
        logger.error("[Webhook] Body is not a JSON object")
        return {"success": False, "error": "Invalid payload"}

    try:
        service = WebhookService(
            settings=context.settings,
            ledger=context.ledger,
            neynar=context.neynar,
            session_factory=context.session_factory,
            clock=context.now,
        )
        return await run_in_threadpool(service.handle, payload)
    except Exception as exc:
        logger.exception("[Webhook] Error handling delivery")
        return {"success": False, "error": str(exc) or exc.__class__.__name__}


# ----------------------------------------------------------------------
# Scheduled jobs


def _require_cron_secret(request: Request, context: PipelineContext = Depends(_context)) -> None:
    expected = context.settings.cron_secret
    if not expected:
        logger.warning("CRON_SECRET not configured, skipping auth for {}", request.url.path)
        return

    header = request.headers.get("authorization", "")
    candidates = [request.query_params.get("secret")]
    if header.lower().startswith("bearer "):
        candidates.append(header[7:].strip())
    if not any(candidate and hmac.compare_digest(candidate, expected) for candidate in candidates):
        raise HTTPException(status_code=401, detail="Unauthorized")


def _run_job(name: str, job: Callable[[], Any]) -> dict[str, Any]:
    try:
        summary = job()
    except Exception as exc:
        logger.exception("{} job failed", name)
        return {"success": False, "error": str(exc) or exc.__class__.__name__}
    return {"success": True, **summary.to_dict()}


@router.api_route(
    "/api/cron/index",
    methods=["GET", "POST"],
    tags=["jobs"],
    dependencies=[Depends(_require_cron_secret)],
)
def cron_index(context: PipelineContext = Depends(_context)):
    return _run_job("Index", lambda: IndexPipeline(context).run())


@router.api_route(
    "/api/cron/resolve",
    methods=["GET", "POST"],
    tags=["jobs"],
    dependencies=[Depends(_require_cron_secret)],
)
def cron_resolve(context: PipelineContext = Depends(_context)):
    return _run_job("Resolution", lambda: ResolutionPipeline(context).run())


@router.api_route(
    "/api/cron/sync",
    methods=["GET", "POST"],
    tags=["jobs"],
    dependencies=[Depends(_require_cron_secret)],
)
def cron_sync(context: PipelineContext = Depends(_context)):
    return _run_job("Sync", lambda: SyncPipeline(context).run())


def create_app(context: PipelineContext | None = None) -> FastAPI:
    context = context or PipelineContext()
    app = FastAPI(title="Based or Erased API", version="0.1.0", debug=context.settings.debug)
    app.state.context = context

    @app.on_event("startup")
    def on_startup() -> None:
        """Initialize database connections when the API boots."""

        context.open_database()

    @app.on_event("shutdown")
    def on_shutdown() -> None:
        context.close()

    app.include_router(router)
    return app


app = create_app()
