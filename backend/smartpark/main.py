# backend/smartpark/main.py
import asyncio
import json
import logging
import time
import uuid
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import func
from sqlmodel import Session, select

from . import config
from .auth import (
    Identity, check_password, create_access_token, create_refresh_token,
    get_current_user, hash_password, require_roles, verify_refresh_token, verify_token,
)
from .broadcast import BroadcastHub
from .db import (
    ParkingLot, ParkingSlot, Reservation, SlotEvent, User, engine, get_session, init_db, isoformat, utcnow,
)
from .errors import Forbidden, InvalidInput, NotFound, ParkingError, Unauthorized
from .ratelimit import RateLimiter
from .reservations import cancel_reservation, create_reservation
from .schemas import (
    LoginIn, LotIn, LotOut, LotUpdateIn, RefreshIn, RegisterIn, ReservationIn, ReservationOut,
    SlotEventOut, SlotOut, SlotUpdateIn, UserOut, UserUpdateIn, dump, dump_all,
)
from .slot_state import SlotStateStore
from .transitions import SlotStatus

logger = logging.getLogger(__name__)
logger.info("MAIN.PY: Module loading.")

API = "/api/v1"

app = FastAPI(title="Smart Parking API")

hub = BroadcastHub()
store = SlotStateStore(engine, hub=hub)
rate_limiter = RateLimiter(config.RATE_LIMIT_WINDOW_SECONDS, config.RATE_LIMIT_MAX_REQUESTS)
reconcile_task: Optional[asyncio.Task] = None
db_tables_initialized = False


def ok(data=None, status_code: int = 200, **extra):
    body = {"success": True, "data": data}
    body.update(extra)
    return JSONResponse(status_code=status_code, content=body)


# --- Error handling ---
@app.exception_handler(ParkingError)
async def parking_error_handler(request: Request, exc: ParkingError):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()]
    logger.info(f"API: Invalid input on {request.method} {request.url.path}: {errors}")
    return JSONResponse(status_code=400, content={"success": False, "message": "Invalid input", "errors": errors})


@app.middleware("http")
async def rate_limit(request: Request, call_next):
    client = request.client.host if request.client else "unknown"
    if not rate_limiter.hit(client):
        return JSONResponse(status_code=429,
                            content={"success": False, "message": "Too many requests, please try again later"})
    return await call_next(request)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    logger.info(f"API: {request.method} {request.url.path} -> {response.status_code} "
                f"({(time.perf_counter() - start) * 1000:.1f}ms)")
    return response


# --- Startup / shutdown ---
async def initialize_database():
    global db_tables_initialized
    for attempt in range(config.DB_INIT_MAX_RETRIES):
        try:
            logger.info(f"INIT_DEPS: DB table init attempt {attempt + 1}/{config.DB_INIT_MAX_RETRIES}...")
            await asyncio.get_running_loop().run_in_executor(None, init_db)
            db_tables_initialized = True
            return
        except Exception as e:
            logger.error(f"INIT_DEPS: Error DB table init attempt {attempt + 1}: {e}", exc_info=True)
            if attempt < config.DB_INIT_MAX_RETRIES - 1:
                await asyncio.sleep(config.DB_INIT_RETRY_DELAY)
    logger.critical("INIT_DEPS: Max DB table init retries reached.")


async def reconcile_counters_task():
    logger.info(f"BACKGROUND_TASK: Counter reconciliation every {config.RECONCILE_INTERVAL_SECONDS}s.")
    while True:
        try:
            await asyncio.sleep(config.RECONCILE_INTERVAL_SECONDS)
            await asyncio.get_running_loop().run_in_executor(None, store.reconcile_all)
        except asyncio.CancelledError:
            logger.info("BACKGROUND_TASK: Counter reconciliation cancelled.")
            break
        except Exception as e:
            logger.error(f"BACKGROUND_TASK: Error in counter reconciliation: {e}", exc_info=True)


@app.on_event("startup")
async def startup_event():
    global reconcile_task
    logger.info("STARTUP_EVENT: Initializing database.")
    await initialize_database()
    if config.RECONCILE_INTERVAL_SECONDS > 0:
        reconcile_task = asyncio.create_task(reconcile_counters_task())


@app.on_event("shutdown")
async def shutdown_event():
    global reconcile_task
    logger.info("SHUTDOWN_EVENT: Initiated...")
    if reconcile_task is not None:
        reconcile_task.cancel()
        reconcile_task = None
    logger.info("SHUTDOWN_EVENT: Complete.")


@app.get("/health")
async def health_check():
    return {
        "status": "OK",
        "timestamp": isoformat(utcnow()),
        "database": "connected" if db_tables_initialized else "initializing",
    }


# --- Auth ---
def auth_payload(user: User):
    return {
        "user": {"id": user.id, "email": user.email, "name": user.name, "role": user.role},
        "token": create_access_token(user),
        "refreshToken": user.refresh_token,
    }


@app.post(f"{API}/auth/register")
def register(payload: RegisterIn, db: Session = Depends(get_session)):
    if db.exec(select(User).where(User.email == payload.email)).first():
        raise InvalidInput("User already exists")
    if payload.role != "user":
        logger.info(f"API: Registration for {payload.email} asked for role '{payload.role}', assigning 'user'.")
    user = User(email=payload.email, password_hash=hash_password(payload.password),
                name=payload.name, phone=payload.phone, role="user")
    db.add(user)
    db.flush()
    user.refresh_token = create_refresh_token(user)
    db.commit()
    db.refresh(user)
    return ok(auth_payload(user), status_code=201)


@app.post(f"{API}/auth/login")
def login(payload: LoginIn, db: Session = Depends(get_session)):
    user = db.exec(select(User).where(User.email == payload.email)).first()
    if user is None or not check_password(payload.password, user.password_hash):
        raise Unauthorized("Invalid credentials")
    if not user.is_active:
        raise Forbidden("Account is disabled")
    user.refresh_token = create_refresh_token(user)
    user.updated_at = utcnow()
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"API: {user.email} logged in ({user.role}).")
    return ok(auth_payload(user))


@app.post(f"{API}/auth/refresh")
def refresh(payload: RefreshIn, db: Session = Depends(get_session)):
    user_id = verify_refresh_token(payload.refresh_token)
    user = db.exec(select(User).where(User.id == user_id, User.refresh_token == payload.refresh_token)).first()
    if user is None:
        raise Unauthorized("Invalid refresh token")
    return ok({"token": create_access_token(user)})


# --- Users ---
@app.get(f"{API}/users/me")
def get_me(identity: Identity = Depends(get_current_user), db: Session = Depends(get_session)):
    user = db.get(User, identity.id)
    if user is None:
        raise NotFound("User not found")
    return ok(dump(UserOut, user))


@app.put(f"{API}/users/me")
def update_me(payload: UserUpdateIn, identity: Identity = Depends(get_current_user),
                    db: Session = Depends(get_session)):
    user = db.get(User, identity.id)
    if user is None:
        raise NotFound("User not found")
    for key, value in payload.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(user, key, value)
    user.updated_at = utcnow()
    db.add(user)
    db.commit()
    db.refresh(user)
    return ok(dump(UserOut, user))


@app.get(f"{API}/users")
def list_users(role: Optional[str] = Query(default=None),
               page: int = Query(default=1, ge=1),
               limit: int = Query(default=20, ge=1, le=200),
               identity: Identity = Depends(require_roles("admin")),
               db: Session = Depends(get_session)):
    conditions = [User.role == role] if role else []
    total = db.exec(select(func.count()).select_from(User).where(*conditions)).one()
    users = db.exec(
        select(User).where(*conditions).order_by(User.id)
        .offset((page - 1) * limit).limit(limit)
    ).all()
    return ok(dump_all(UserOut, users), total=total, page=page, limit=limit)


# --- Lots ---
def get_lot_or_404(db: Session, lot_id: int) -> ParkingLot:
    lot = db.get(ParkingLot, lot_id)
    if lot is None:
        raise NotFound("Parking lot not found")
    return lot


@app.get(f"{API}/lots")
def list_lots(lot_status: Optional[str] = Query(default=None, alias="status"),
                    db: Session = Depends(get_session)):
    statement = select(ParkingLot).order_by(ParkingLot.id)
    if lot_status:
        statement = statement.where(ParkingLot.status == lot_status)
    lots = db.exec(statement).all()
    return ok(dump_all(LotOut, lots), total=len(lots))


@app.get(API + "/lots/{lot_id}")
def get_lot(lot_id: int, db: Session = Depends(get_session)):
    return ok(dump(LotOut, get_lot_or_404(db, lot_id)))


@app.get(API + "/lots/{lot_id}/slots")
def list_lot_slots(lot_id: int,
                         slot_status: Optional[SlotStatus] = Query(default=None, alias="status"),
                         min_confidence: Optional[float] = Query(default=None, alias="minConfidence", ge=0, le=1),
                         page: int = Query(default=1, ge=1),
                         limit: int = Query(default=100, ge=1, le=1000),
                         db: Session = Depends(get_session)):
    get_lot_or_404(db, lot_id)
    conditions = [ParkingSlot.lot_id == lot_id]
    if slot_status is not None:
        conditions.append(ParkingSlot.status == slot_status.value)
    if min_confidence is not None:
        conditions.append(ParkingSlot.confidence >= min_confidence)
    total = db.exec(select(func.count()).select_from(ParkingSlot).where(*conditions)).one()
    slots = db.exec(
        select(ParkingSlot).where(*conditions).order_by(ParkingSlot.slot_number)
        .offset((page - 1) * limit).limit(limit)
    ).all()
    return ok(dump_all(SlotOut, slots), total=total, page=page, limit=limit)


@app.post(f"{API}/lots")
def create_lot(payload: LotIn, identity: Identity = Depends(require_roles("admin")),
                     db: Session = Depends(get_session)):
    values = payload.model_dump(exclude_none=True)
    values.setdefault("hourly_rate", config.DEFAULT_HOURLY_RATE)
    lot = ParkingLot(**values, available_slots=payload.total_slots)
    db.add(lot)
    db.flush()
    # slots are provisioned with the lot and start out available
    for number in range(1, payload.total_slots + 1):
        db.add(ParkingSlot(lot_id=lot.id, slot_number=number))
    db.commit()
    db.refresh(lot)
    logger.info(f"API: Lot {lot.id} '{lot.name}' created with {lot.total_slots} slots by {identity.email}.")
    return ok(dump(LotOut, lot), status_code=201)


@app.put(API + "/lots/{lot_id}")
def update_lot(lot_id: int, payload: LotUpdateIn, identity: Identity = Depends(require_roles("admin")),
                     db: Session = Depends(get_session)):
    lot = get_lot_or_404(db, lot_id)
    for key, value in payload.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(lot, key, value)
    lot.updated_at = utcnow()
    db.add(lot)
    db.commit()
    db.refresh(lot)
    return ok(dump(LotOut, lot))


@app.post(API + "/lots/{lot_id}/reconcile")
def reconcile_lot(lot_id: int, identity: Identity = Depends(require_roles("admin")),
                        db: Session = Depends(get_session)):
    corrected = store.reconcile_lot(db, lot_id) is not None
    db.commit()
    lot = get_lot_or_404(db, lot_id)
    return ok(dump(LotOut, lot), corrected=corrected)


# --- Slots ---
@app.get(API + "/slots/{slot_id}")
def get_slot(slot_id: int, db: Session = Depends(get_session)):
    slot = db.get(ParkingSlot, slot_id)
    if slot is None:
        raise NotFound("Parking slot not found")
    return ok(dump(SlotOut, slot))


@app.put(API + "/slots/{slot_id}")
async def update_slot(slot_id: int, payload: SlotUpdateIn,
                      identity: Identity = Depends(require_roles("admin", "staff"))):
    transition = await store.apply_transition(slot_id, payload.to_updates(), source="api", actor_id=identity.id)
    return ok(dump(SlotOut, transition.slot))


# --- Reservations ---
@app.get(f"{API}/reservations/me")
def my_reservations(reservation_status: Optional[str] = Query(default=None, alias="status"),
                          page: int = Query(default=1, ge=1),
                          limit: int = Query(default=20, ge=1, le=200),
                          identity: Identity = Depends(get_current_user),
                          db: Session = Depends(get_session)):
    conditions = [Reservation.user_id == identity.id]
    if reservation_status:
        conditions.append(Reservation.status == reservation_status)
    total = db.exec(select(func.count()).select_from(Reservation).where(*conditions)).one()
    reservations = db.exec(
        select(Reservation).where(*conditions).order_by(Reservation.created_at.desc())
        .offset((page - 1) * limit).limit(limit)
    ).all()
    return ok(dump_all(ReservationOut, reservations), total=total, page=page, limit=limit)


@app.post(f"{API}/reservations")
async def reserve_slot(payload: ReservationIn, identity: Identity = Depends(get_current_user)):
    reservation, _ = await create_reservation(store, identity.id, payload.slot_id,
                                              payload.start_time, payload.end_time)
    return ok(dump(ReservationOut, reservation), status_code=201)


@app.delete(API + "/reservations/{reservation_id}")
async def cancel_my_reservation(reservation_id: int, identity: Identity = Depends(get_current_user)):
    reservation, _ = await cancel_reservation(store, identity.id, reservation_id)
    return ok(dump(ReservationOut, reservation), message="Reservation cancelled successfully")


# --- Slot event log ---
@app.get(f"{API}/slot-events")
def list_slot_events(lot_id: Optional[int] = Query(default=None, alias="lotId"),
                           slot_id: Optional[int] = Query(default=None, alias="slotId"),
                           event_status: Optional[str] = Query(default=None, alias="status"),
                           page: int = Query(default=1, ge=1),
                           limit: int = Query(default=50, ge=1, le=500),
                           identity: Identity = Depends(require_roles("admin", "staff")),
                           db: Session = Depends(get_session)):
    conditions = []
    if lot_id is not None:
        conditions.append(SlotEvent.lot_id == lot_id)
    if slot_id is not None:
        conditions.append(SlotEvent.slot_id == slot_id)
    if event_status:
        conditions.append(SlotEvent.status == event_status)
    total = db.exec(select(func.count()).select_from(SlotEvent).where(*conditions)).one()
    events = db.exec(
        select(SlotEvent).where(*conditions).order_by(SlotEvent.timestamp.desc(), SlotEvent.id.desc())
        .offset((page - 1) * limit).limit(limit)
    ).all()
    return ok(dump_all(SlotEventOut, events), total=total, page=page, limit=limit)


# --- WebSocket ---
def websocket_token(websocket: WebSocket) -> Optional[str]:
    token = websocket.query_params.get("token")
    if token:
        return token
    header = websocket.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return None


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    try:
        identity = verify_token(websocket_token(websocket))
    except Unauthorized as e:
        logger.info(f"WS: Rejected {websocket.client}: {e.message}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=e.message)
        return

    await websocket.accept()
    connection_id = uuid.uuid4().hex
    await hub.connect(connection_id, websocket)
    logger.info(f"WS: {identity.email} connected as {connection_id}")
    try:
        await websocket.send_text(json.dumps({"event": "connected", "data": {"connectionId": connection_id}}))
        while True:
            try:
                raw = await asyncio.wait_for(websocket.receive_text(), timeout=config.WS_IDLE_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                await websocket.send_text(json.dumps({"event": "ping"}))
                continue
            reply = await hub.handle_message(connection_id, raw)
            await websocket.send_text(json.dumps(reply, default=str))
    except WebSocketDisconnect:
        logger.info(f"WS: Client {connection_id} disconnected")
    except Exception as e:
        if connection_id not in hub.active_connections:
            logger.info(f"WS: Connection {connection_id} was dropped by the hub")
        else:
            logger.error(f"WS: Error for {connection_id}: {e}", exc_info=True)
    finally:
        await hub.disconnect(connection_id)


app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.CLIENT_URL] if config.CLIENT_URL != "*" else ["*"],
    allow_credentials=True, allow_methods=["*"], allow_headers=["*"],
)
