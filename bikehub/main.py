# bikehub/main.py
import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from . import schemas as s
from .auth import Actor, actor_from_headers, get_current_actor, require_role
from .config import Settings
from .database import get_session, init_db, make_engine
from .engine import BookingEngine
from .errors import BookingError
from .events import EventHub
from .gateway import PaymentGateway, StripeCheckoutGateway
from .models import BookingStatus, PartnerStatus, PaymentKind, UserRole

APP_VERSION = "1.0.0"

logger = logging.getLogger(__name__)


def get_engine(request: Request, session: Session = Depends(get_session)) -> BookingEngine:
    st = request.app.state
    return BookingEngine(session, st.hub, st.gateway, st.settings, st.now)


def create_app(
    settings: Optional[Settings] = None,
    db: Optional[Engine] = None,
    gateway: Optional[PaymentGateway] = None,
    now: Callable[[], datetime] = datetime.utcnow,
) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(level=settings.log_level)

    db = db or make_engine(settings.database_url, settings.database_sslmode)
    gateway = gateway or StripeCheckoutGateway(
        api_key=settings.gateway_api_key,
        base_url=settings.gateway_base_url,
        success_url=settings.checkout_success_url,
        cancel_url=settings.checkout_cancel_url,
    )

    app = FastAPI(title="BikeHub Booking API", version=APP_VERSION)
    app.state.settings = settings
    app.state.engine = db
    app.state.gateway = gateway
    app.state.now = now
    app.state.hub = EventHub(lambda: Session(db), now)
    app.state.scheduler = None

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(BookingError)
    def _booking_error(request: Request, exc: BookingError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.reason, "code": exc.code})

    @app.exception_handler(SQLAlchemyError)
    def _storage_error(request: Request, exc: SQLAlchemyError):
        logger.exception("Storage error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"detail": "Something went wrong, please try again"})

    @app.on_event("startup")
    def _startup():
        init_db(db)
        if settings.enable_scheduler:
            from .scheduler import start_scheduler
            app.state.scheduler = start_scheduler(db, app.state.hub, gateway, settings)

    @app.on_event("shutdown")
    def _shutdown():
        if app.state.scheduler is not None:
            app.state.scheduler.shutdown(wait=False)

    # ---------------- Health ----------------
    @app.get("/api/health")
    def health():
        return {"status": "ok", "version": APP_VERSION}

    # ---------------- Partners --------------
    @app.post("/api/partners", response_model=s.PartnerRead, status_code=201)
    def register_partner(payload: s.PartnerCreate, engine: BookingEngine = Depends(get_engine)):
        with engine.transaction():
            partner = engine.partners.register(payload)
        return s.PartnerRead.model_validate(partner)

    @app.get("/api/partners/{partner_id}", response_model=s.PartnerRead)
    def get_partner(partner_id: int, engine: BookingEngine = Depends(get_engine)):
        return s.PartnerRead.model_validate(engine.partners.get(partner_id))

    # ---------------- Bikes -----------------
    @app.post("/api/bikes", response_model=s.BikeRead, status_code=201)
    def create_bike(
        payload: s.BikeCreate,
        actor: Actor = Depends(get_current_actor),
        engine: BookingEngine = Depends(get_engine),
    ):
        with engine.transaction():
            bike = engine.partners.add_bike(actor, payload)
        return s.BikeRead.model_validate(bike)

    @app.get("/api/partner/bikes", response_model=List[s.BikeRead])
    def partner_bikes(
        actor: Actor = Depends(get_current_actor),
        engine: BookingEngine = Depends(get_engine),
    ):
        require_role(actor, UserRole.PARTNER)
        return [s.BikeRead.model_validate(b) for b in engine.partners.bikes_of(actor.user_id)]

    @app.get("/api/bikes/{bike_id}", response_model=s.BikeRead)
    def get_bike(bike_id: int, engine: BookingEngine = Depends(get_engine)):
        return s.BikeRead.model_validate(engine.ledger.get_bike(bike_id))

    @app.patch("/api/bikes/{bike_id}/availability", response_model=s.BikeRead)
    def update_availability(
        bike_id: int,
        payload: s.AvailabilityUpdate,
        actor: Actor = Depends(get_current_actor),
        engine: BookingEngine = Depends(get_engine),
    ):
        bike = engine.set_availability(bike_id, actor, payload)
        return s.BikeRead.model_validate(bike)

    # ---------------- Bookings (rider) ------
    @app.post("/api/bookings", response_model=s.BookingRead, status_code=201)
    def create_booking(
        payload: s.BookingCreate,
        actor: Actor = Depends(get_current_actor),
        engine: BookingEngine = Depends(get_engine),
    ):
        booking = engine.create_booking(actor, payload)
        return s.BookingRead.model_validate(booking)

    @app.get("/api/bookings", response_model=List[s.BookingRead])
    def my_bookings(
        actor: Actor = Depends(get_current_actor),
        engine: BookingEngine = Depends(get_engine),
    ):
        require_role(actor, UserRole.RIDER)
        return [s.BookingRead.model_validate(b) for b in engine.bookings.for_rider(actor.user_id)]

    @app.get("/api/bookings/{booking_id}", response_model=s.BookingDetail)
    def get_booking(
        booking_id: int,
        actor: Actor = Depends(get_current_actor),
        engine: BookingEngine = Depends(get_engine),
    ):
        return engine.detail(engine.visible_booking(booking_id, actor))

    @app.post("/api/bookings/{booking_id}/cancel", response_model=s.BookingRead)
    def cancel_booking(
        booking_id: int,
        payload: Optional[s.ReasonBody] = None,
        actor: Actor = Depends(get_current_actor),
        engine: BookingEngine = Depends(get_engine),
    ):
        booking = engine.cancel(booking_id, actor, payload.reason if payload else None)
        return s.BookingRead.model_validate(booking)

    # ---------------- Bookings (partner) ----
    @app.get("/api/partner/bookings", response_model=List[s.BookingRead])
    def partner_bookings(
        side: str = Query("pickup", pattern="^(pickup|dropoff)$"),
        actor: Actor = Depends(get_current_actor),
        engine: BookingEngine = Depends(get_engine),
    ):
        require_role(actor, UserRole.PARTNER)
        return [s.BookingRead.model_validate(b) for b in engine.bookings.for_partner(actor.user_id, side)]

    @app.post("/api/bookings/{booking_id}/accept", response_model=s.BookingDetail)
    def accept_booking(
        booking_id: int,
        actor: Actor = Depends(get_current_actor),
        engine: BookingEngine = Depends(get_engine),
    ):
        return engine.detail(engine.accept(booking_id, actor))

    @app.post("/api/bookings/{booking_id}/reject", response_model=s.BookingRead)
    def reject_booking(
        booking_id: int,
        payload: Optional[s.ReasonBody] = None,
        actor: Actor = Depends(get_current_actor),
        engine: BookingEngine = Depends(get_engine),
    ):
        booking = engine.reject(booking_id, actor, payload.reason if payload else None)
        return s.BookingRead.model_validate(booking)

    @app.post("/api/bookings/{booking_id}/assessment", response_model=s.AssessmentRead, status_code=201)
    def submit_assessment(
        booking_id: int,
        payload: s.AssessmentCreate,
        actor: Actor = Depends(get_current_actor),
        engine: BookingEngine = Depends(get_engine),
    ):
        record, _ = engine.submit_assessment(booking_id, actor, payload)
        return s.AssessmentRead.model_validate(record)

    @app.post("/api/bookings/{booking_id}/complete", response_model=s.BookingRead)
    def complete_booking(
        booking_id: int,
        actor: Actor = Depends(get_current_actor),
        engine: BookingEngine = Depends(get_engine),
    ):
        return s.BookingRead.model_validate(engine.complete(booking_id, actor))

    # ---------------- Payments --------------
    @app.get("/api/bookings/{booking_id}/payments", response_model=List[s.PaymentRequestRead])
    def booking_payments(
        booking_id: int,
        actor: Actor = Depends(get_current_actor),
        engine: BookingEngine = Depends(get_engine),
    ):
        engine.visible_booking(booking_id, actor)
        return [s.PaymentRequestRead.model_validate(r) for r in engine.payments.for_booking(booking_id)]

    @app.post("/api/bookings/{booking_id}/payments/{kind}", response_model=s.PaymentRequestRead, status_code=201)
    def open_payment(
        booking_id: int,
        kind: PaymentKind,
        actor: Actor = Depends(get_current_actor),
        engine: BookingEngine = Depends(get_engine),
    ):
        return s.PaymentRequestRead.model_validate(engine.open_payment(booking_id, kind, actor))

    @app.post("/api/payments/{request_id}/checkout", response_model=s.CheckoutSession)
    def start_checkout(
        request_id: int,
        payload: s.CheckoutRequest,
        actor: Actor = Depends(get_current_actor),
        engine: BookingEngine = Depends(get_engine),
    ):
        r = engine.begin_checkout(request_id, actor, payload.method)
        return s.CheckoutSession(
            request_id=r.id, method=r.method, status=r.status,
            session_id=r.session_id, checkout_url=r.checkout_url,
        )

    @app.post("/api/payments/{request_id}/cash", response_model=s.PaymentRequestRead)
    def confirm_cash(
        request_id: int,
        actor: Actor = Depends(get_current_actor),
        engine: BookingEngine = Depends(get_engine),
    ):
        return s.PaymentRequestRead.model_validate(engine.confirm_cash(request_id, actor))

    @app.get("/api/payments/sessions/{session_id}", response_model=s.CheckoutStatus)
    def poll_checkout(
        session_id: str,
        actor: Actor = Depends(get_current_actor),
        engine: BookingEngine = Depends(get_engine),
    ):
        request = engine.payments.by_session(session_id)
        engine.visible_booking(request.booking_id, actor)
        r = engine.poll_checkout(session_id)
        return s.CheckoutStatus(
            request_id=r.id, status=r.status, transaction_id=r.transaction_id, poll_attempts=r.poll_attempts,
        )

    @app.post("/api/payments/webhook", response_model=s.CheckoutStatus)
    def gateway_webhook(payload: s.GatewayNotification, engine: BookingEngine = Depends(get_engine)):
        r = engine.gateway_notification(payload.session_id, payload.status)
        return s.CheckoutStatus(
            request_id=r.id, status=r.status, transaction_id=r.transaction_id, poll_attempts=r.poll_attempts,
        )

    # ---------------- Admin -----------------
    @app.post("/api/admin/partners/{partner_id}/{action}", response_model=s.PartnerRead)
    def partner_action(
        partner_id: int,
        action: str,
        actor: Actor = Depends(get_current_actor),
        engine: BookingEngine = Depends(get_engine),
    ):
        with engine.transaction():
            partner = engine.partners.apply(partner_id, action, actor)
        return s.PartnerRead.model_validate(partner)

    @app.get("/api/admin/partners", response_model=List[s.PartnerRead])
    def list_partners(
        status: Optional[PartnerStatus] = None,
        actor: Actor = Depends(get_current_actor),
        engine: BookingEngine = Depends(get_engine),
    ):
        require_role(actor, UserRole.ADMIN)
        return [s.PartnerRead.model_validate(p) for p in engine.partners.list(status)]

    @app.get("/api/admin/bookings", response_model=List[s.BookingRead])
    def all_bookings(
        status: Optional[BookingStatus] = None,
        actor: Actor = Depends(get_current_actor),
        engine: BookingEngine = Depends(get_engine),
    ):
        require_role(actor, UserRole.ADMIN)
        return [s.BookingRead.model_validate(b) for b in engine.bookings.all(status)]

    @app.get("/api/admin/events/stats", response_model=s.EventStats)
    def event_stats(actor: Actor = Depends(get_current_actor)):
        require_role(actor, UserRole.ADMIN)
        return s.EventStats(**app.state.hub.stats())

    @app.post("/api/admin/events/cleanup")
    def event_cleanup(payload: s.EventCleanup, actor: Actor = Depends(get_current_actor)):
        require_role(actor, UserRole.ADMIN)
        deleted = app.state.hub.cleanup(payload.older_than_days)
        return {"deleted_count": deleted}

    # ---------------- Events ----------------
    @app.get("/api/events", response_model=List[s.EventRead])
    def poll_events(
        after_id: Optional[int] = None,
        limit: int = Query(50, ge=1, le=500),
        actor: Actor = Depends(get_current_actor),
    ):
        return app.state.hub.pending(actor.user_id, actor.role, after_id=after_id, limit=limit)

    @app.post("/api/events/{event_id}/processed")
    def mark_processed(event_id: int, actor: Actor = Depends(get_current_actor)):
        if not app.state.hub.mark_processed(event_id, user_id=actor.user_id):
            raise HTTPException(404, "Event not found")
        return {"ok": True}

    @app.websocket("/api/events/ws")
    async def event_stream(websocket: WebSocket):
        try:
            actor = actor_from_headers(websocket.headers)
        except HTTPException:
            await websocket.close(code=1008)
            return
        await websocket.accept()

        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        hub: EventHub = app.state.hub
        # replaying the backlog hits the database
        sub_id = await run_in_threadpool(
            hub.subscribe,
            actor.user_id,
            actor.role,
            lambda event: loop.call_soon_threadsafe(queue.put_nowait, event),
        )

        async def pump():
            while True:
                event = await queue.get()
                await websocket.send_json(event.model_dump(mode="json", by_alias=True))

        sender = asyncio.create_task(pump())
        try:
            # clients acknowledge with {"ack": <event id>}
            while True:
                message = await websocket.receive_json()
                if isinstance(message, dict) and message.get("ack"):
                    await run_in_threadpool(hub.mark_processed, int(message["ack"]), actor.user_id)
        except WebSocketDisconnect:
            pass
        finally:
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Event stream for %s/%s stopped sending", actor.role.value, actor.user_id)
            hub.unsubscribe(sub_id)

    return app


app = create_app()
