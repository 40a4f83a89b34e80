import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv

load_dotenv()

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.middleware.sessions import SessionMiddleware

from equipment_rental.db.deps import get_rental_db
from equipment_rental.db.session import init_db
from equipment_rental.models.rental_models import Customer, RentalStatus
from equipment_rental.schemas.auth import AuthLoginRequest
from equipment_rental.schemas.customers import CustomerUpsert
from equipment_rental.schemas.equipment import EquipmentCreate, EquipmentUpsert
from equipment_rental.schemas.rentals import ExtendRentalRequest, IssueRentalRequest, ReturnRentalRequest
from equipment_rental.services import access_policy
from equipment_rental.services.access_policy import Actor
from equipment_rental.services.customer_service import (
    authenticate_customer,
    create_customer,
    delete_customer,
    get_customer,
    list_customers,
    serialize_customer,
    update_customer,
)
from equipment_rental.services.equipment_service import (
    create_equipment,
    delete_equipment,
    get_equipment,
    list_equipment,
    list_equipment_by_availability,
    serialize_equipment,
    update_equipment,
)
from equipment_rental.services.errors import RentalError
from equipment_rental.services.rental_service import (
    cancel_rental,
    extend_rental,
    get_active_rental_for_customer,
    get_rental,
    issue_rental,
    list_rentals,
    list_rentals_by_status,
    list_rentals_for_equipment,
    return_rental,
    serialize_rental,
)
from equipment_rental.services.user_access_service import create_session, get_session, remove_session, session_secret


logging.basicConfig(
    level=(os.environ.get("LOG_LEVEL") or "INFO").strip().upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
AUTH_LOGGER = logging.getLogger("equipment_rental.auth")


@asynccontextmanager
async def lifespan(_app: FastAPI):
    init_db()
    yield


app = FastAPI(title="Equipment Rental", lifespan=lifespan)


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5173,http://localhost:5173",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(
    SessionMiddleware,
    secret_key=session_secret(),
    session_cookie="equipment_rental_session",
    same_site="lax",
    https_only=False,
)


def _to_http_error(exc: RentalError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.message)


def _invalid_login_error() -> HTTPException:
    return HTTPException(status_code=401, detail="Invalid credentials.")


def _get_active_session(request: Request, session_token: str | None) -> dict | None:
    session_from_token = get_session(session_token)
    if session_from_token:
        request.session["user"] = dict(session_from_token)
        return dict(session_from_token)
    session_from_cookie = request.session.get("user")
    if isinstance(session_from_cookie, dict):
        return dict(session_from_cookie)
    return None


def _actor_from_session(db: Session, session: dict | None) -> Actor | None:
    if not session:
        return None
    try:
        customer_id = int(session.get("customerID") or 0)
    except (TypeError, ValueError):
        return None
    customer = db.get(Customer, customer_id) if customer_id > 0 else None
    if customer is None:
        return None
    # Role comes from the customer row so role changes apply to live sessions.
    return Actor(customer_id=customer.CustomerID, role=access_policy.normalize_role(customer.Role))


def get_optional_actor(
    request: Request,
    db: Session = Depends(get_rental_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
) -> Actor | None:
    return _actor_from_session(db, _get_active_session(request, x_session_token))


def get_current_actor(actor: Actor | None = Depends(get_optional_actor)) -> Actor:
    if actor is None:
        raise HTTPException(status_code=401, detail="Not logged in.")
    return actor


def _session_payload(customer: Customer) -> dict:
    return {
        "customerID": customer.CustomerID,
        "name": customer.Name,
        "username": customer.Username,
        "email": customer.Email,
        "role": access_policy.normalize_role(customer.Role),
    }


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_rental_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.post("/api/auth/login")
def auth_login(payload: dict, request: Request, db: Session = Depends(get_rental_db)):
    try:
        parsed = AuthLoginRequest.model_validate(payload)
    except ValidationError:
        raise HTTPException(status_code=400, detail="Invalid login request.")

    username = str(parsed.username or "").strip()
    if not username or not parsed.password:
        raise HTTPException(status_code=400, detail="Invalid login request.")

    customer = authenticate_customer(db, username, parsed.password)
    if customer is None:
        AUTH_LOGGER.warning("Login failed username=%s", username)
        raise _invalid_login_error()

    session_payload = _session_payload(customer)
    token = create_session(session_payload)
    request.session["user"] = dict(session_payload)
    AUTH_LOGGER.info("Login success customer_id=%s role=%s", customer.CustomerID, customer.Role)
    return {"sessionToken": token, "user": session_payload}


@app.post("/api/auth/logout")
def auth_logout(request: Request, x_session_token: str | None = Header(None, alias="X-Session-Token")):
    request.session.clear()
    remove_session(x_session_token)
    return {"ok": True}


@app.get("/api/auth/me")
def auth_me(actor: Actor = Depends(get_current_actor), db: Session = Depends(get_rental_db)):
    customer = db.get(Customer, actor.customer_id)
    return {"user": _session_payload(customer)}


@app.get("/api/equipment")
def get_all_equipment(db: Session = Depends(get_rental_db), actor: Actor = Depends(get_current_actor)):
    try:
        access_policy.authorize(actor, access_policy.EQUIPMENT_READ)
    except RentalError as exc:
        raise _to_http_error(exc) from exc
    return [serialize_equipment(item) for item in list_equipment(db)]


@app.get("/api/equipment/available")
def get_available_equipment(db: Session = Depends(get_rental_db), actor: Actor = Depends(get_current_actor)):
    try:
        access_policy.authorize(actor, access_policy.EQUIPMENT_READ)
    except RentalError as exc:
        raise _to_http_error(exc) from exc
    return [serialize_equipment(item) for item in list_equipment_by_availability(db, True)]


@app.get("/api/equipment/rented")
def get_rented_equipment(db: Session = Depends(get_rental_db), actor: Actor = Depends(get_current_actor)):
    try:
        access_policy.authorize(actor, access_policy.EQUIPMENT_READ_RENTED)
    except RentalError as exc:
        raise _to_http_error(exc) from exc
    return [serialize_equipment(item) for item in list_equipment_by_availability(db, False)]


@app.get("/api/equipment/{equipment_id}")
def get_equipment_item(equipment_id: int, db: Session = Depends(get_rental_db), actor: Actor = Depends(get_current_actor)):
    try:
        access_policy.authorize(actor, access_policy.EQUIPMENT_READ)
        equipment = get_equipment(db, equipment_id)
    except RentalError as exc:
        raise _to_http_error(exc) from exc
    return serialize_equipment(equipment)


@app.post("/api/equipment", status_code=201)
def create_equipment_item(
    payload: EquipmentCreate,
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_current_actor),
):
    try:
        access_policy.authorize(actor, access_policy.EQUIPMENT_WRITE)
        equipment = create_equipment(db, payload)
    except RentalError as exc:
        raise _to_http_error(exc) from exc
    return serialize_equipment(equipment)


@app.put("/api/equipment/{equipment_id}")
def update_equipment_item(
    equipment_id: int,
    payload: EquipmentUpsert,
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_current_actor),
):
    try:
        access_policy.authorize(actor, access_policy.EQUIPMENT_WRITE)
        equipment = update_equipment(db, equipment_id, payload)
    except RentalError as exc:
        raise _to_http_error(exc) from exc
    return serialize_equipment(equipment)


@app.delete("/api/equipment/{equipment_id}")
def delete_equipment_item(equipment_id: int, db: Session = Depends(get_rental_db), actor: Actor = Depends(get_current_actor)):
    try:
        access_policy.authorize(actor, access_policy.EQUIPMENT_WRITE)
        delete_equipment(db, equipment_id)
    except RentalError as exc:
        raise _to_http_error(exc) from exc
    return {"message": "Deleted"}


@app.get("/api/customer")
def get_all_customers(db: Session = Depends(get_rental_db), actor: Actor = Depends(get_current_actor)):
    try:
        access_policy.authorize(actor, access_policy.CUSTOMER_LIST)
    except RentalError as exc:
        raise _to_http_error(exc) from exc
    return [serialize_customer(item) for item in list_customers(db)]


@app.get("/api/customer/{customer_id}")
def get_customer_item(customer_id: int, db: Session = Depends(get_rental_db), actor: Actor = Depends(get_current_actor)):
    try:
        access_policy.authorize(actor, access_policy.CUSTOMER_READ, owner_id=customer_id)
        customer = get_customer(db, customer_id)
    except RentalError as exc:
        raise _to_http_error(exc) from exc
    return serialize_customer(customer)


@app.get("/api/customer/{customer_id}/rentals")
def get_customer_rentals(customer_id: int, db: Session = Depends(get_rental_db), actor: Actor = Depends(get_current_actor)):
    try:
        access_policy.authorize(actor, access_policy.CUSTOMER_RENTALS, owner_id=customer_id)
        get_customer(db, customer_id)
    except RentalError as exc:
        raise _to_http_error(exc) from exc
    return [serialize_rental(rental) for rental in list_rentals(db, customer_id=customer_id)]


@app.get("/api/customer/{customer_id}/active-rental")
def get_customer_active_rental(customer_id: int, db: Session = Depends(get_rental_db), actor: Actor = Depends(get_current_actor)):
    try:
        access_policy.authorize(actor, access_policy.CUSTOMER_RENTALS, owner_id=customer_id)
        get_customer(db, customer_id)
    except RentalError as exc:
        raise _to_http_error(exc) from exc
    rental = get_active_rental_for_customer(db, customer_id)
    return serialize_rental(rental) if rental else None


@app.post("/api/customer", status_code=201)
def create_customer_item(
    payload: CustomerUpsert,
    db: Session = Depends(get_rental_db),
    actor: Actor | None = Depends(get_optional_actor),
):
    try:
        customer = create_customer(
            db,
            name=payload.name,
            username=payload.username,
            password=payload.password,
            email=payload.email,
            role=payload.role,
            actor=actor,
        )
    except RentalError as exc:
        raise _to_http_error(exc) from exc
    return serialize_customer(customer)


@app.put("/api/customer/{customer_id}")
def update_customer_item(
    customer_id: int,
    payload: CustomerUpsert,
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_current_actor),
):
    try:
        customer = update_customer(db, customer_id, payload, actor)
    except RentalError as exc:
        raise _to_http_error(exc) from exc
    return serialize_customer(customer)


@app.delete("/api/customer/{customer_id}")
def delete_customer_item(customer_id: int, db: Session = Depends(get_rental_db), actor: Actor = Depends(get_current_actor)):
    try:
        access_policy.authorize(actor, access_policy.CUSTOMER_DELETE)
        delete_customer(db, customer_id)
    except RentalError as exc:
        raise _to_http_error(exc) from exc
    return {"message": "Deleted"}


@app.get("/api/rental")
def get_all_rentals(db: Session = Depends(get_rental_db), actor: Actor = Depends(get_current_actor)):
    try:
        customer_id = access_policy.scope_customer_id(actor, access_policy.RENTAL_LIST)
    except RentalError as exc:
        raise _to_http_error(exc) from exc
    return [serialize_rental(rental) for rental in list_rentals(db, customer_id=customer_id)]


@app.get("/api/rental/active")
def get_active_rentals(db: Session = Depends(get_rental_db), actor: Actor = Depends(get_current_actor)):
    try:
        customer_id = access_policy.scope_customer_id(actor, access_policy.RENTAL_LIST)
    except RentalError as exc:
        raise _to_http_error(exc) from exc
    rentals = list_rentals_by_status(db, RentalStatus.ACTIVE, customer_id=customer_id)
    return [serialize_rental(rental) for rental in rentals]


@app.get("/api/rental/completed")
def get_completed_rentals(db: Session = Depends(get_rental_db), actor: Actor = Depends(get_current_actor)):
    try:
        customer_id = access_policy.scope_customer_id(actor, access_policy.RENTAL_LIST)
    except RentalError as exc:
        raise _to_http_error(exc) from exc
    rentals = list_rentals_by_status(db, RentalStatus.COMPLETED, customer_id=customer_id)
    return [serialize_rental(rental) for rental in rentals]


@app.get("/api/rental/overdue")
def get_overdue_rentals(db: Session = Depends(get_rental_db), actor: Actor = Depends(get_current_actor)):
    try:
        access_policy.authorize(actor, access_policy.RENTAL_OVERDUE)
    except RentalError as exc:
        raise _to_http_error(exc) from exc
    return [serialize_rental(rental) for rental in list_rentals_by_status(db, RentalStatus.OVERDUE)]


@app.get("/api/rental/equipment/{equipment_id}")
def get_equipment_rental_history(equipment_id: int, db: Session = Depends(get_rental_db), actor: Actor = Depends(get_current_actor)):
    try:
        access_policy.authorize(actor, access_policy.RENTAL_EQUIPMENT_HISTORY)
        rentals = list_rentals_for_equipment(db, equipment_id)
    except RentalError as exc:
        raise _to_http_error(exc) from exc
    return [serialize_rental(rental) for rental in rentals]


@app.get("/api/rental/{rental_id}")
def get_rental_item(rental_id: int, db: Session = Depends(get_rental_db), actor: Actor = Depends(get_current_actor)):
    try:
        rental = get_rental(db, rental_id)
        access_policy.authorize(actor, access_policy.RENTAL_READ, owner_id=rental.CustomerID)
    except RentalError as exc:
        raise _to_http_error(exc) from exc
    return serialize_rental(rental)


@app.post("/api/rental/issue", status_code=201)
def issue_equipment(
    payload: IssueRentalRequest,
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_current_actor),
):
    try:
        rental = issue_rental(
            db,
            equipment_id=payload.equipmentID,
            customer_id=payload.customerID,
            due_date=payload.dueDate,
            actor=actor,
        )
    except RentalError as exc:
        raise _to_http_error(exc) from exc
    return serialize_rental(rental)


@app.post("/api/rental/return")
def return_equipment(
    payload: ReturnRentalRequest,
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_current_actor),
):
    try:
        rental = return_rental(
            db,
            rental_id=payload.rentalID,
            condition_on_return=payload.conditionOnReturn,
            notes=payload.notes,
            actor=actor,
        )
    except RentalError as exc:
        raise _to_http_error(exc) from exc
    return {"message": "Equipment returned successfully", "rental": serialize_rental(rental)}


@app.put("/api/rental/{rental_id}")
def extend_rental_item(
    rental_id: int,
    payload: ExtendRentalRequest,
    db: Session = Depends(get_rental_db),
    actor: Actor = Depends(get_current_actor),
):
    try:
        rental = extend_rental(db, rental_id=rental_id, new_due_date=payload.newDueDate, actor=actor)
    except RentalError as exc:
        raise _to_http_error(exc) from exc
    return {"message": "Rental extended successfully", "rental": serialize_rental(rental)}


@app.delete("/api/rental/{rental_id}")
def cancel_rental_item(rental_id: int, db: Session = Depends(get_rental_db), actor: Actor = Depends(get_current_actor)):
    try:
        cancel_rental(db, rental_id=rental_id, actor=actor)
    except RentalError as exc:
        raise _to_http_error(exc) from exc
    return {"message": "Rental cancelled successfully"}
