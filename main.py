import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Type

from bson import ObjectId
from fastapi import Body, Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pymongo.errors import PyMongoError

import config
from auth import (
    get_current_user, require_admin_or_manager, require_event_manager,
    token_for, verify_password, get_password_hash,
)
from database import DocumentStore, get_store, mask_credentials
from errors import (
    DuplicateField, NotFound, Unauthenticated,
    failure_boundary, register_error_handlers,
)
from schemas import Document, Donation, Event, LoginPayload, Principal, Project, Token, User
from validation import check_reference_format, prepare

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("ngo")


@asynccontextmanager
async def lifespan(app: FastAPI):
    store = app.dependency_overrides.get(get_store, get_store)()
    try:
        store.ensure_indexes()
        logger.info("MongoDB connected: %s", mask_credentials(config.DATABASE_URL))
    except PyMongoError as e:
        logger.error("MongoDB connection error: %s", e)
        logger.warning("Server will continue running without database connection")
    yield


app = FastAPI(title="NGO Project API", version="1.0.0", docs_url="/api-docs", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_error_handlers(app)


def serialize_doc(doc):
    """Make a stored document JSON ready: ObjectIds as strings, datetimes in UTC."""
    if isinstance(doc, list):
        return [serialize_doc(d) for d in doc]
    if isinstance(doc, dict):
        return {k: serialize_doc(v) for k, v in doc.items() if k != "password"}
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, datetime):
        return doc.replace(tzinfo=timezone.utc).isoformat() if doc.tzinfo is None else doc.isoformat()
    return doc


def get_or_404(store: DocumentStore, model: Type[Document], id: str) -> dict:
    doc = store.find_by_id(model.collection, id)
    if doc is None:
        raise NotFound(f"{model.__name__} not found")
    return doc


def populated(store: DocumentStore, model: Type[Document], docs: List[dict]) -> List[dict]:
    for field in model.references:
        docs = store.populate(docs, field)
    return docs


def respond(store: DocumentStore, model: Type[Document], doc: dict):
    return serialize_doc(populated(store, model, [doc])[0])


def list_all(store: DocumentStore, model: Type[Document]):
    return serialize_doc(populated(store, model, store.find_many(model.collection)))


def list_by_reference(store: DocumentStore, model: Type[Document], field: str, ref_id: str):
    check_reference_format(model, field, ref_id)
    if store.find_by_id("user", ref_id) is None:
        raise NotFound(f"{model.references[field]} not found")
    docs = store.find_many(model.collection, {field: ObjectId(ref_id)})
    return serialize_doc(populated(store, model, docs))


def create(store: DocumentStore, model: Type[Document], payload: Dict[str, Any]):
    document = prepare(store, model, payload)
    return respond(store, model, store.create(model.collection, document))


def update(store: DocumentStore, model: Type[Document], id: str, payload: Dict[str, Any]):
    existing = get_or_404(store, model, id)
    changes = prepare(store, model, payload, existing=existing)
    updated = store.update_by_id(model.collection, existing["_id"], changes)
    if updated is None:
        raise NotFound(f"{model.__name__} not found")
    return respond(store, model, updated)


def delete(store: DocumentStore, model: Type[Document], id: str):
    deleted = store.delete_by_id(model.collection, id)
    if deleted is None:
        raise NotFound(f"{model.__name__} not found")
    return {
        "message": f"{model.__name__} deleted successfully",
        model.collection: serialize_doc(deleted),
    }


@app.get("/")
def read_root():
    return {"message": "NGO Project API is running!"}


@app.get("/test")
def test_database(store: DocumentStore = Depends(get_store)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if config.DATABASE_URL else "❌ Not Set",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        response["database_name"] = store.name
        response["collections"] = store.list_collection_names()[:10]
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
    except PyMongoError as e:
        logger.warning("Database check failed: %s", e)
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# ===== Auth =====
@app.post("/auth/login", response_model=Token, tags=["Auth"])
def login(payload: LoginPayload, store: DocumentStore = Depends(get_store)):
    with failure_boundary("Login failed"):
        user = store.find_one("user", {"email": payload.email.strip().lower()})
        if not user or not user.get("password") or not verify_password(payload.password, user["password"]):
            raise Unauthenticated("Invalid credentials")
        logger.info("User %s logged in", user["_id"])
        return {"access_token": token_for(user), "token_type": "bearer", "user": serialize_doc(user)}


@app.get("/auth/me", response_model=Principal, tags=["Auth"])
def read_users_me(principal: Principal = Depends(get_current_user)):
    return principal


# ===== Users =====
def _hash_password(changes: Dict[str, Any]) -> Dict[str, Any]:
    if changes.get("password"):
        changes["password"] = get_password_hash(changes["password"])
    return changes


@app.get("/users", tags=["Users"])
def list_users(store: DocumentStore = Depends(get_store)):
    with failure_boundary("Failed to fetch users"):
        return serialize_doc(store.find_many(User.collection))


@app.get("/users/{user_id}", tags=["Users"])
def get_user(user_id: str, store: DocumentStore = Depends(get_store)):
    with failure_boundary("Failed to fetch user", invalid_id="Invalid user ID"):
        return serialize_doc(get_or_404(store, User, user_id))


@app.post("/users", status_code=201, tags=["Users"])
def create_user(payload: Dict[str, Any] = Body(...), store: DocumentStore = Depends(get_store)):
    with failure_boundary("Failed to create user"):
        document = _hash_password(prepare(store, User, payload))
        if store.find_one(User.collection, {"email": document["email"]}):
            raise DuplicateField("User with this email already exists")
        return serialize_doc(store.create(User.collection, document))


@app.put("/users/{user_id}", tags=["Users"])
def update_user(user_id: str, payload: Dict[str, Any] = Body(...),
                      store: DocumentStore = Depends(get_store)):
    with failure_boundary("Failed to update user", invalid_id="Invalid user ID"):
        existing = get_or_404(store, User, user_id)
        changes = _hash_password(prepare(store, User, payload, existing=existing))
        if changes.get("email"):
            taken = store.find_one(
                User.collection,
                {"email": changes["email"], "_id": {"$ne": existing["_id"]}},
            )
            if taken:
                raise DuplicateField("Email is already taken by another user")
        updated = store.update_by_id(User.collection, existing["_id"], changes)
        if updated is None:
            raise NotFound("User not found")
        return serialize_doc(updated)


@app.delete("/users/{user_id}", tags=["Users"])
def delete_user(user_id: str, store: DocumentStore = Depends(get_store)):
    with failure_boundary("Failed to delete user", invalid_id="Invalid user ID"):
        return delete(store, User, user_id)


# ===== Donations =====
@app.get("/donations", tags=["Donations"])
def list_donations(store: DocumentStore = Depends(get_store)):
    with failure_boundary("Failed to fetch donations"):
        return list_all(store, Donation)


@app.get("/donations/donor/{donor_id}", tags=["Donations"])
def list_donations_by_donor(donor_id: str, store: DocumentStore = Depends(get_store)):
    with failure_boundary("Failed to fetch donations", invalid_id="Invalid donor ID"):
        return list_by_reference(store, Donation, "donorId", donor_id)


@app.get("/donations/{donation_id}", tags=["Donations"])
def get_donation(donation_id: str, store: DocumentStore = Depends(get_store)):
    with failure_boundary("Failed to fetch donation", invalid_id="Invalid donation ID"):
        return respond(store, Donation, get_or_404(store, Donation, donation_id))


@app.post("/donations", status_code=201, tags=["Donations"])
def create_donation(payload: Dict[str, Any] = Body(...), store: DocumentStore = Depends(get_store)):
    with failure_boundary("Failed to create donation", invalid_id="Invalid donor ID format"):
        return create(store, Donation, payload)


@app.put("/donations/{donation_id}", tags=["Donations"])
def update_donation(donation_id: str, payload: Dict[str, Any] = Body(...),
                          store: DocumentStore = Depends(get_store)):
    with failure_boundary("Failed to update donation", invalid_id="Invalid donation ID"):
        return update(store, Donation, donation_id, payload)


@app.delete("/donations/{donation_id}", tags=["Donations"])
def delete_donation(donation_id: str, store: DocumentStore = Depends(get_store)):
    with failure_boundary("Failed to delete donation", invalid_id="Invalid donation ID"):
        return delete(store, Donation, donation_id)


# ===== Projects =====
@app.get("/projects", tags=["Projects"])
def list_projects(store: DocumentStore = Depends(get_store)):
    with failure_boundary("Failed to fetch projects"):
        return list_all(store, Project)


@app.get("/projects/manager/{manager_id}", tags=["Projects"])
def list_projects_by_manager(manager_id: str, store: DocumentStore = Depends(get_store)):
    with failure_boundary("Failed to fetch projects", invalid_id="Invalid manager ID"):
        return list_by_reference(store, Project, "managerId", manager_id)


@app.get("/projects/{project_id}", tags=["Projects"])
def get_project(project_id: str, store: DocumentStore = Depends(get_store)):
    with failure_boundary("Failed to fetch project", invalid_id="Invalid project ID"):
        return respond(store, Project, get_or_404(store, Project, project_id))


@app.post("/projects", status_code=201, tags=["Projects"])
def create_project(payload: Dict[str, Any] = Body(...),
                         _: Principal = Depends(require_admin_or_manager),
                         store: DocumentStore = Depends(get_store)):
    with failure_boundary("Failed to create project", invalid_id="Invalid date format or ObjectId"):
        return create(store, Project, payload)


@app.put("/projects/{project_id}", tags=["Projects"])
def update_project(project_id: str, payload: Dict[str, Any] = Body(...),
                         _: Principal = Depends(require_admin_or_manager),
                         store: DocumentStore = Depends(get_store)):
    with failure_boundary("Failed to update project", invalid_id="Invalid project ID"):
        return update(store, Project, project_id, payload)


@app.delete("/projects/{project_id}", tags=["Projects"])
def delete_project(project_id: str, store: DocumentStore = Depends(get_store)):
    with failure_boundary("Failed to delete project", invalid_id="Invalid project ID"):
        return delete(store, Project, project_id)


# ===== Events =====
@app.get("/events", tags=["Events"])
def list_events(store: DocumentStore = Depends(get_store)):
    with failure_boundary("Failed to fetch events"):
        return list_all(store, Event)


@app.get("/events/organizer/{organizer_id}", tags=["Events"])
def list_events_by_organizer(organizer_id: str, store: DocumentStore = Depends(get_store)):
    with failure_boundary("Failed to fetch events", invalid_id="Invalid organizer ID"):
        return list_by_reference(store, Event, "organizerId", organizer_id)


@app.get("/events/{event_id}", tags=["Events"])
def get_event(event_id: str, store: DocumentStore = Depends(get_store)):
    with failure_boundary("Failed to fetch event", invalid_id="Invalid event ID"):
        return respond(store, Event, get_or_404(store, Event, event_id))


@app.post("/events", status_code=201, tags=["Events"])
def create_event(payload: Dict[str, Any] = Body(...),
                       _: Principal = Depends(require_event_manager),
                       store: DocumentStore = Depends(get_store)):
    with failure_boundary("Failed to create event", invalid_id="Invalid date format or ObjectId"):
        return create(store, Event, payload)


@app.put("/events/{event_id}", tags=["Events"])
def update_event(event_id: str, payload: Dict[str, Any] = Body(...),
                       _: Principal = Depends(require_event_manager),
                       store: DocumentStore = Depends(get_store)):
    with failure_boundary("Failed to update event", invalid_id="Invalid event ID"):
        return update(store, Event, event_id, payload)


@app.delete("/events/{event_id}", tags=["Events"])
def delete_event(event_id: str, store: DocumentStore = Depends(get_store)):
    with failure_boundary("Failed to delete event", invalid_id="Invalid event ID"):
        return delete(store, Event, event_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
